from __future__ import annotations

import json
from typing import Any, Dict, List, Literal, Mapping, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

from stream_checkpoint.core.errors import StoreReadFailure
from stream_checkpoint.core.ledger import snapshot_from_dict, snapshot_to_dict
from stream_checkpoint.core.models import (
    BatchTime,
    CommitOutcome,
    CommitRecord,
    OffsetSnapshot,
    PartitionOffset,
    SourceKey,
)
from stream_checkpoint.utils.hashing import canonical_json


class PartitionOffsetSchemaV1(BaseModel):
    """Pydantic schema for one persisted partition position."""
    offset: int = Field(..., ge=0)
    seq_no: int = Field(..., ge=0)


class CommitRecordSchemaV1(BaseModel):
    """Pydantic schema for a persisted commit record, version 1.0."""
    schema_version: Literal["1.0"] = "1.0"
    batch_time: int
    committed_at_utc: str = ""
    snapshot: Dict[str, Dict[str, PartitionOffsetSchemaV1]] = Field(default_factory=dict)


def encode_record(record: CommitRecord) -> str:
    payload = {
        "schema_version": "1.0",
        "batch_time": record.batch_time,
        "committed_at_utc": record.committed_at_utc,
        "snapshot": snapshot_to_dict(record.snapshot),
    }
    return canonical_json(payload)


def decode_record(text: str, origin: str = "") -> CommitRecord:
    """Parse and validate a persisted commit record."""
    try:
        parsed = CommitRecordSchemaV1(**json.loads(text))
    except (ValueError, TypeError, ValidationError) as e:
        raise StoreReadFailure(f"Corrupt commit record {origin}: {e}") from e

    try:
        snapshot = snapshot_from_dict(
            {key: {p: po.model_dump() for p, po in parts.items()} for key, parts in parsed.snapshot.items()}
        )
    except ValueError as e:
        raise StoreReadFailure(f"Corrupt commit record {origin}: {e}") from e

    return CommitRecord(
        batch_time=parsed.batch_time,
        snapshot=snapshot,
        committed_at_utc=parsed.committed_at_utc,
    )


def decode_partition_offsets(data: Mapping[str, Any], origin: str = "") -> Dict[str, PartitionOffset]:
    try:
        return {
            str(p): PartitionOffset(**PartitionOffsetSchemaV1(**po).model_dump())
            for p, po in data.items()
        }
    except (TypeError, ValidationError) as e:
        raise StoreReadFailure(f"Corrupt staged progress {origin}: {e}") from e


class ProgressStore(Protocol):
    """
    Protocol for durable progress backends.

    Commit records are keyed by batch time and never mutated once written.
    Staged partial progress is appended concurrently by tasks and drained
    exactly once per batch time by the commit coordinator. Once a batch is
    committed, progress still staged for earlier batch times is discarded.
    """

    def stage_progress(
        self,
        batch_time: BatchTime,
        source: SourceKey,
        partial_offsets: Mapping[str, PartitionOffset],
    ) -> None: ...

    def drain_staged(self, batch_time: BatchTime) -> OffsetSnapshot: ...

    def discard_staged_before(self, batch_time: BatchTime) -> int: ...

    def commit(self, batch_time: BatchTime, snapshot: OffsetSnapshot) -> CommitOutcome: ...

    def read(self, batch_time: BatchTime) -> Optional[CommitRecord]: ...

    def read_latest(self) -> Optional[CommitRecord]: ...

    def history(self, limit: Optional[int] = None) -> List[CommitRecord]: ...

    def prune(self, keep_latest: int) -> int: ...

    def close(self) -> None: ...
