from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from stream_checkpoint.core.models import BatchCompleted, BatchTime, OutputOperationInfo


@dataclass(frozen=True)
class AdmissionDecision:
    """Whether a completed batch may have its progress committed."""

    batch_time: BatchTime
    admitted: bool
    failed_operations: List[OutputOperationInfo] = field(default_factory=list)


class BatchEventFilter:
    """Admits a batch iff none of its output operations recorded a failure reason."""

    def admit(self, event: BatchCompleted) -> AdmissionDecision:
        failed = [op for op in event.output_operations if op.failure_reason is not None]
        return AdmissionDecision(
            batch_time=event.batch_time,
            admitted=not failed,
            failed_operations=failed,
        )
