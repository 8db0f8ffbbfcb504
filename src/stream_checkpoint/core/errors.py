from __future__ import annotations

from typing import Optional

from stream_checkpoint.core.models import BatchTime


class CheckpointError(RuntimeError):
    """Base error for checkpoint commit and progress store operations."""


class DuplicateCommitConflict(CheckpointError):
    """A different snapshot was offered for an already committed batch time."""

    def __init__(self, batch_time: BatchTime, detail: str = ""):
        self.batch_time = batch_time
        msg = f"Batch {batch_time} is already committed with a different snapshot"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class StoreWriteFailure(CheckpointError):
    """The progress store could not durably write a record."""


class StoreReadFailure(CheckpointError):
    """The progress store could not read or drain progress."""


class OffsetRegressionError(CheckpointError):
    """Merged offsets moved backwards under the strict regression policy."""

    def __init__(self, batch_time: BatchTime, anomalies: list):
        self.batch_time = batch_time
        self.anomalies = list(anomalies)
        summary = ", ".join(f"{a.source}:{a.partition} ({a.kind})" for a in self.anomalies)
        super().__init__(f"Offsets regressed in batch {batch_time}: {summary}")


class ProgressWaitTimeout(TimeoutError):
    """Progress was not published for a batch time before the deadline."""

    def __init__(self, batch_time: BatchTime, timeout_s: float, latest: Optional[BatchTime]):
        self.batch_time = batch_time
        self.timeout_s = timeout_s
        self.latest = latest
        super().__init__(
            f"Progress did not reach batch {batch_time} within {timeout_s}s (latest={latest})"
        )
