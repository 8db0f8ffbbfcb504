from __future__ import annotations

import threading
from typing import Dict, Mapping

from stream_checkpoint.core.models import OffsetSnapshot, PartitionOffset, SourceKey


class InMemoryOffsetSource:
    """
    Offset source whose position is advanced by the caller.

    Consumer threads call `advance`; the commit coordinator calls
    `current_offsets` concurrently and gets a copy.
    """

    def __init__(self, key: SourceKey, partitions: Mapping[str, PartitionOffset] | None = None):
        self._key = key
        self._lock = threading.Lock()
        self._offsets: Dict[str, PartitionOffset] = dict(partitions or {})

    def source_id(self) -> SourceKey:
        return self._key

    def current_offsets(self) -> Dict[str, PartitionOffset]:
        with self._lock:
            return dict(self._offsets)

    def advance(self, partition: str, offset: int, seq_no: int) -> PartitionOffset:
        """Move one partition forward. Positions behind the current one are rejected."""
        new = PartitionOffset(offset=int(offset), seq_no=int(seq_no))
        with self._lock:
            current = self._offsets.get(str(partition))
            if current is not None and new.is_behind(current):
                raise ValueError(
                    f"{self._key}:{partition} cannot move back from {current.position} to {new.position}"
                )
            self._offsets[str(partition)] = new
            return new

    def advance_by(self, partition: str, count: int) -> PartitionOffset:
        """Consume `count` more events on a partition (offset and seq_no both step by count)."""
        with self._lock:
            current = self._offsets.get(str(partition), PartitionOffset(offset=0, seq_no=0))
            new = PartitionOffset(offset=current.offset + int(count), seq_no=current.seq_no + int(count))
            self._offsets[str(partition)] = new
            return new

    def resume_from(self, snapshot: OffsetSnapshot) -> Dict[str, PartitionOffset]:
        """Seed positions from a committed snapshot. Returns the offsets adopted."""
        adopted = dict(snapshot.get(self._key, {}))
        with self._lock:
            self._offsets.update(adopted)
        return adopted
