from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

# Logical timestamp of one micro-batch, in epoch milliseconds.
BatchTime = int


@dataclass(frozen=True, order=True)
class SourceKey:
    """Identifies one data source instance within a job."""

    namespace: str
    instance_id: int

    def as_str(self) -> str:
        return f"{self.namespace}/{self.instance_id}"

    @classmethod
    def parse(cls, text: str) -> "SourceKey":
        """Inverse of as_str(). The namespace itself may contain '/'."""
        namespace, sep, instance = str(text or "").rpartition("/")
        if not sep or not namespace:
            raise ValueError(f"Invalid source key: {text!r}")
        try:
            return cls(namespace=namespace, instance_id=int(instance))
        except ValueError as e:
            raise ValueError(f"Invalid source key: {text!r}") from e

    def __str__(self) -> str:
        return self.as_str()


@dataclass(frozen=True)
class PartitionOffset:
    """Consumption position of one partition."""

    offset: int
    seq_no: int

    @property
    def position(self) -> tuple[int, int]:
        return (self.seq_no, self.offset)

    def is_behind(self, other: "PartitionOffset") -> bool:
        return self.position < other.position


PartitionOffsets = Dict[str, PartitionOffset]
OffsetSnapshot = Dict[SourceKey, PartitionOffsets]


@dataclass(frozen=True)
class CommitRecord:
    """Durable checkpoint: the offsets as of the end of one batch."""

    batch_time: BatchTime
    snapshot: OffsetSnapshot
    committed_at_utc: str = ""

    def offsets_for(self, key: SourceKey) -> PartitionOffsets:
        return dict(self.snapshot.get(key, {}))


class CommitOutcome(str, Enum):
    """Result of a store-level commit attempt."""

    COMMITTED = "COMMITTED"
    ALREADY_COMMITTED = "ALREADY_COMMITTED"
    CONFLICT = "CONFLICT"


class RegressionPolicy(str, Enum):
    """How the coordinator reacts to offsets moving backwards."""

    WARN = "warn"
    STRICT = "strict"


@dataclass(frozen=True)
class OutputOperationInfo:
    """Outcome of one output operation executed in a batch."""

    operation_id: int
    name: str = ""
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class BatchCompleted:
    """Batch-completion notification emitted by the host scheduler."""

    batch_time: BatchTime
    output_operations: List[OutputOperationInfo] = field(default_factory=list)
    num_records: int = 0


@dataclass(frozen=True)
class OffsetAnomaly:
    """A partition whose offsets did not move forward as expected."""

    kind: str  # partial_behind_current | regressed_below_commit
    source: SourceKey
    partition: str
    observed: PartitionOffset
    expected_at_least: PartitionOffset


@dataclass
class CommitResult:
    """What the coordinator did for one admitted batch."""

    batch_time: BatchTime
    outcome: CommitOutcome
    record: Optional[CommitRecord] = None
    anomalies: List[OffsetAnomaly] = field(default_factory=list)
