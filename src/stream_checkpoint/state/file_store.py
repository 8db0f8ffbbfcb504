"""
Directory-backed progress store.

Layout under the progress directory:

    commits/<batch_time>.json       one immutable commit record per batch
    LATEST                          batch time of the newest commit
    staging/<batch_time>/<source>.json
                                    partial progress staged by tasks

Commit files are published with a hard link from a fully written temp file,
so a reader sees either the whole record or no file at all, and a second
writer for the same batch time fails instead of overwriting.
"""

from __future__ import annotations

import json
import os
import shutil
import threading
import uuid
from pathlib import Path
from typing import List, Mapping, Optional
from urllib.parse import quote

from stream_checkpoint.core.errors import StoreReadFailure, StoreWriteFailure
from stream_checkpoint.core.ledger import same_snapshot
from stream_checkpoint.core.models import (
    BatchTime,
    CommitOutcome,
    CommitRecord,
    OffsetSnapshot,
    PartitionOffset,
    SourceKey,
)
from stream_checkpoint.state.base import decode_partition_offsets, decode_record, encode_record
from stream_checkpoint.utils.hashing import canonical_json
from stream_checkpoint.utils.logging import get_logger
from stream_checkpoint.utils.time import utc_now_iso


class FileProgressStore:
    """Progress store kept as JSON files in a directory."""

    def __init__(self, directory: str):
        self.root = Path(directory)
        self.commits_dir = self.root / "commits"
        self.staging_dir = self.root / "staging"
        self.latest_path = self.root / "LATEST"
        self._pointer_trusted = True
        self._lock = threading.Lock()
        self.log = get_logger("stream_checkpoint.state.file")
        try:
            self.commits_dir.mkdir(parents=True, exist_ok=True)
            self.staging_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreWriteFailure(f"Cannot create progress directory {directory}: {e}") from e

    # ---------- Staging ----------

    def stage_progress(
        self,
        batch_time: BatchTime,
        source: SourceKey,
        partial_offsets: Mapping[str, PartitionOffset],
    ) -> None:
        if not partial_offsets:
            return
        batch_dir = self.staging_dir / str(int(batch_time))
        path = batch_dir / f"{quote(source.as_str(), safe='')}.json"
        with self._lock:
            try:
                batch_dir.mkdir(parents=True, exist_ok=True)
                offsets = {}
                if path.exists():
                    offsets = json.loads(path.read_text(encoding="utf-8")).get("offsets", {})
                for partition, po in partial_offsets.items():
                    offsets[str(partition)] = {"offset": int(po.offset), "seq_no": int(po.seq_no)}
                self._write_atomic(path, canonical_json({"source": source.as_str(), "offsets": offsets}))
            except (OSError, ValueError) as e:
                raise StoreWriteFailure(f"Cannot stage progress for batch {batch_time}: {e}") from e

    def drain_staged(self, batch_time: BatchTime) -> OffsetSnapshot:
        batch_dir = self.staging_dir / str(int(batch_time))
        claimed = self.staging_dir / f".draining-{int(batch_time)}-{uuid.uuid4().hex[:8]}"
        with self._lock:
            try:
                # Only one rename can succeed; a losing drainer sees nothing to drain.
                os.rename(batch_dir, claimed)
            except FileNotFoundError:
                return {}
            except OSError as e:
                raise StoreReadFailure(f"Cannot drain staged progress for batch {batch_time}: {e}") from e

        drained: OffsetSnapshot = {}
        try:
            for path in sorted(claimed.glob("*.json")):
                data = json.loads(path.read_text(encoding="utf-8"))
                key = SourceKey.parse(data["source"])
                drained.setdefault(key, {}).update(
                    decode_partition_offsets(data.get("offsets", {}), origin=str(path))
                )
        except (OSError, AttributeError, KeyError, TypeError, ValueError, StoreReadFailure) as e:
            self._unclaim(claimed, batch_dir)
            raise StoreReadFailure(f"Corrupt staged progress for batch {batch_time}: {e}") from e
        shutil.rmtree(claimed, ignore_errors=True)
        return drained

    def discard_staged_before(self, batch_time: BatchTime) -> int:
        with self._lock:
            try:
                stale = [
                    d for d in self.staging_dir.iterdir()
                    if d.is_dir() and d.name.isdigit() and int(d.name) < int(batch_time)
                ]
                for batch_dir in stale:
                    shutil.rmtree(batch_dir)
            except OSError as e:
                raise StoreWriteFailure(f"Cannot discard staged progress before batch {batch_time}: {e}") from e
            return len(stale)

    # ---------- Commits ----------

    def commit(self, batch_time: BatchTime, snapshot: OffsetSnapshot) -> CommitOutcome:
        record = CommitRecord(batch_time=int(batch_time), snapshot=snapshot, committed_at_utc=utc_now_iso())
        final = self._commit_path(record.batch_time)
        tmp = final.with_name(f".{final.name}.{uuid.uuid4().hex[:8]}.tmp")
        with self._lock:
            try:
                self._write_file(tmp, encode_record(record))
                try:
                    os.link(tmp, final)
                except FileExistsError:
                    existing = self.read(record.batch_time)
                    if existing is not None and same_snapshot(existing.snapshot, snapshot):
                        return CommitOutcome.ALREADY_COMMITTED
                    return CommitOutcome.CONFLICT
            except OSError as e:
                raise StoreWriteFailure(f"Cannot commit batch {batch_time}: {e}") from e
            finally:
                try:
                    tmp.unlink()
                except FileNotFoundError:
                    pass

        try:
            with self._lock:
                self._advance_latest(record.batch_time)
        except (OSError, StoreReadFailure) as e:
            # The commit file is durable; without a trustworthy pointer read_latest scans commits.
            self.log.warning("Batch %s committed but LATEST was not updated: %s", record.batch_time, e)
            self._drop_latest_pointer()
        return CommitOutcome.COMMITTED

    def read(self, batch_time: BatchTime) -> Optional[CommitRecord]:
        path = self._commit_path(int(batch_time))
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreReadFailure(f"Cannot read commit record {path}: {e}") from e
        return decode_record(text, origin=str(path))

    def read_latest(self) -> Optional[CommitRecord]:
        latest = self._read_latest_pointer() if self._pointer_trusted else None
        if latest is not None:
            record = self.read(latest)
            if record is not None:
                return record
            self.log.warning("LATEST points at missing batch %s; scanning commits", latest)

        times = self._commit_times()
        if not times:
            return None
        return self.read(times[-1])

    def history(self, limit: Optional[int] = None) -> List[CommitRecord]:
        times = sorted(self._commit_times(), reverse=True)
        if limit is not None:
            times = times[: max(0, int(limit))]
        records = []
        for t in times:
            record = self.read(t)
            if record is not None:
                records.append(record)
        return records

    def prune(self, keep_latest: int) -> int:
        keep = max(1, int(keep_latest))
        with self._lock:
            times = sorted(self._commit_times(), reverse=True)
            if not times:
                return 0
            doomed = times[keep:]
            floor = times[: keep][-1]
            try:
                for t in doomed:
                    self._commit_path(t).unlink()
                for batch_dir in self.staging_dir.iterdir():
                    if batch_dir.name.isdigit() and int(batch_dir.name) <= floor:
                        shutil.rmtree(batch_dir, ignore_errors=True)
            except OSError as e:
                raise StoreWriteFailure(f"Cannot prune commit history: {e}") from e
            return len(doomed)

    def close(self) -> None:
        return None

    # ---------- Helpers (private) ----------

    def _commit_path(self, batch_time: int) -> Path:
        return self.commits_dir / f"{batch_time}.json"

    def _commit_times(self) -> List[int]:
        try:
            names = [p.stem for p in self.commits_dir.glob("*.json")]
        except OSError as e:
            raise StoreReadFailure(f"Cannot list commit records: {e}") from e
        return sorted(int(n) for n in names if n.isdigit())

    def _read_latest_pointer(self) -> Optional[int]:
        try:
            text = self.latest_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreReadFailure(f"Cannot read {self.latest_path}: {e}") from e
        return int(text) if text.isdigit() else None

    def _advance_latest(self, batch_time: int) -> None:
        current = self._read_latest_pointer()
        if current is None or batch_time > current:
            self._write_atomic(self.latest_path, str(batch_time))

    def _write_atomic(self, path: Path, text: str) -> None:
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        self._write_file(tmp, text)
        os.replace(tmp, path)

    def _write_file(self, path: Path, text: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())

    def _drop_latest_pointer(self) -> None:
        self._pointer_trusted = False
        try:
            self.latest_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.log.warning("Cannot remove stale %s: %s", self.latest_path, e)

    def _unclaim(self, claimed: Path, batch_dir: Path) -> None:
        """Hand a claimed staging directory back after a failed drain."""
        with self._lock:
            try:
                os.rename(claimed, batch_dir)
                return
            except OSError:
                pass
            # Tasks staged more progress meanwhile; keep their newer files.
            try:
                batch_dir.mkdir(parents=True, exist_ok=True)
                for path in claimed.glob("*.json"):
                    target = batch_dir / path.name
                    if not target.exists():
                        os.rename(path, target)
                shutil.rmtree(claimed, ignore_errors=True)
            except OSError as e:
                self.log.error("Cannot return staged progress from %s to %s: %s", claimed, batch_dir, e)
