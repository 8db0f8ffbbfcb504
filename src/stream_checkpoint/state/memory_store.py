from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, List, Mapping, Optional

from stream_checkpoint.core.ledger import copy_snapshot, same_snapshot
from stream_checkpoint.core.models import (
    BatchTime,
    CommitOutcome,
    CommitRecord,
    OffsetSnapshot,
    PartitionOffset,
    SourceKey,
)
from stream_checkpoint.utils.time import utc_now_iso


class InMemoryProgressStore:
    """Process-local progress store. Nothing survives a restart."""

    def __init__(self):
        self._lock = threading.Lock()
        self._commits: Dict[BatchTime, CommitRecord] = {}
        self._staged: Dict[BatchTime, OffsetSnapshot] = {}

    def stage_progress(
        self,
        batch_time: BatchTime,
        source: SourceKey,
        partial_offsets: Mapping[str, PartitionOffset],
    ) -> None:
        with self._lock:
            batch = self._staged.setdefault(int(batch_time), {})
            batch.setdefault(source, {}).update(partial_offsets)

    def drain_staged(self, batch_time: BatchTime) -> OffsetSnapshot:
        with self._lock:
            return self._staged.pop(int(batch_time), {})

    def discard_staged_before(self, batch_time: BatchTime) -> int:
        with self._lock:
            stale = [t for t in self._staged if t < int(batch_time)]
            for t in stale:
                del self._staged[t]
            return len(stale)

    def commit(self, batch_time: BatchTime, snapshot: OffsetSnapshot) -> CommitOutcome:
        with self._lock:
            existing = self._commits.get(int(batch_time))
            if existing is not None:
                if same_snapshot(existing.snapshot, snapshot):
                    return CommitOutcome.ALREADY_COMMITTED
                return CommitOutcome.CONFLICT

            self._commits[int(batch_time)] = CommitRecord(
                batch_time=int(batch_time),
                snapshot=copy_snapshot(snapshot),
                committed_at_utc=utc_now_iso(),
            )
            return CommitOutcome.COMMITTED

    def read(self, batch_time: BatchTime) -> Optional[CommitRecord]:
        with self._lock:
            return _detached(self._commits.get(int(batch_time)))

    def read_latest(self) -> Optional[CommitRecord]:
        with self._lock:
            if not self._commits:
                return None
            return _detached(self._commits[max(self._commits)])

    def history(self, limit: Optional[int] = None) -> List[CommitRecord]:
        with self._lock:
            times = sorted(self._commits, reverse=True)
            if limit is not None:
                times = times[: max(0, int(limit))]
            return [_detached(self._commits[t]) for t in times]

    def prune(self, keep_latest: int) -> int:
        keep = max(1, int(keep_latest))
        with self._lock:
            times = sorted(self._commits, reverse=True)
            doomed = times[keep:]
            for t in doomed:
                del self._commits[t]
            if times:
                floor = times[: keep][-1]
                for t in [t for t in self._staged if t <= floor]:
                    del self._staged[t]
            return len(doomed)

    def close(self) -> None:
        return None


def _detached(record: Optional[CommitRecord]) -> Optional[CommitRecord]:
    # Callers get their own snapshot dicts; stored history stays as committed.
    if record is None:
        return None
    return replace(record, snapshot=copy_snapshot(record.snapshot))
