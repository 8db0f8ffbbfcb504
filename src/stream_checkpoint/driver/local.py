"""
Local host scheduler: runs micro-batches on an interval and posts their
completion to the job's listener bus.

Batches run one at a time (APScheduler `max_instances=1`), so completion
events reach the commit coordinator in batch-time order.
"""

from __future__ import annotations

import threading
from typing import Callable, List, Mapping, Optional, Sequence, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from stream_checkpoint.coordinator.lifecycle import JobContext
from stream_checkpoint.core.models import BatchCompleted, BatchTime, OutputOperationInfo, SourceKey
from stream_checkpoint.sources.memory import InMemoryOffsetSource
from stream_checkpoint.state.base import ProgressStore
from stream_checkpoint.utils.logging import get_logger
from stream_checkpoint.utils.time import align_batch_time, now_ms

OutputOperation = Callable[[BatchTime], None]


class SyntheticWorkload:
    """
    Task body for local runs: consumes a fixed number of events per partition
    and stages the resulting offsets as partial progress for the batch.
    """

    def __init__(
        self,
        store: ProgressStore,
        sources: Sequence[InMemoryOffsetSource],
        layout: Mapping[SourceKey, Tuple[int, int]],
    ):
        self.store = store
        self.sources = list(sources)
        self.layout = dict(layout)

    def __call__(self, batch_time: BatchTime) -> None:
        for source in self.sources:
            key = source.source_id()
            partitions, events = self.layout.get(key, (1, 0))
            progressed = {}
            for i in range(partitions):
                progressed[str(i)] = source.advance_by(str(i), events)
            self.store.stage_progress(batch_time, key, progressed)


class LocalBatchDriver:
    """Drives micro-batches for a job and reports each one as BatchCompleted."""

    def __init__(
        self,
        job: JobContext,
        batch_interval_ms: int,
        operations: Sequence[Tuple[str, OutputOperation]] = (),
        clock: Callable[[], int] = now_ms,
        start_after: Optional[BatchTime] = None,
    ):
        self.job = job
        self.batch_interval_ms = int(batch_interval_ms)
        self.operations: List[Tuple[str, OutputOperation]] = list(operations)
        self.clock = clock
        self.batches_run = 0
        self._last_batch_time: Optional[BatchTime] = start_after
        self._lock = threading.Lock()
        self._scheduler = None
        self.log = get_logger("stream_checkpoint.driver")

    def next_batch_time(self) -> BatchTime:
        """Interval-aligned batch time, strictly after the previous one."""
        t = align_batch_time(self.clock(), self.batch_interval_ms)
        if self._last_batch_time is not None and t <= self._last_batch_time:
            t = self._last_batch_time + self.batch_interval_ms
        return t

    def run_batch(self, batch_time: Optional[BatchTime] = None) -> BatchCompleted:
        """
        Execute every output operation for one batch, then post its completion.

        An operation that raises is recorded with a failure reason; the batch is
        still reported so listeners can see it failed.
        """
        with self._lock:
            if batch_time is None:
                batch_time = self.next_batch_time()
            self._last_batch_time = batch_time

            infos: List[OutputOperationInfo] = []
            for op_id, (name, operation) in enumerate(self.operations):
                try:
                    operation(batch_time)
                    infos.append(OutputOperationInfo(operation_id=op_id, name=name))
                except Exception as e:
                    self.log.warning("Batch %s: operation %s failed: %s", batch_time, name, e)
                    infos.append(
                        OutputOperationInfo(
                            operation_id=op_id,
                            name=name,
                            failure_reason=f"{type(e).__name__}: {e}",
                        )
                    )

            event = BatchCompleted(batch_time=batch_time, output_operations=infos)
            self.job.listener_bus.post(event)
            self.batches_run += 1
            return event

    def run(self, max_batches: Optional[int] = None) -> int:
        """Block, running one batch per interval until `max_batches` have run."""
        scheduler = BlockingScheduler()
        target = None if max_batches is None else self.batches_run + int(max_batches)

        def tick() -> None:
            self.run_batch()
            if target is not None and self.batches_run >= target:
                scheduler.shutdown(wait=False)

        self._add_job(scheduler, tick)
        self.log.info(
            "Driving job %s every %sms (max_batches=%s)",
            self.job.job_id,
            self.batch_interval_ms,
            max_batches,
        )
        try:
            scheduler.start()
        except KeyboardInterrupt:
            self.log.info("Driver stopped by user")
        return self.batches_run

    def start_background(self) -> None:
        """Run batches on a background thread until stop() is called."""
        if self._scheduler is not None:
            return
        self._scheduler = BackgroundScheduler()
        self._add_job(self._scheduler, self.run_batch)
        self._scheduler.start()

    def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=True)
        self._scheduler = None

    def _add_job(self, scheduler, func: Callable[[], object]) -> None:
        scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=self.batch_interval_ms / 1000.0),
            id=f"batches_{self.job.job_id}",
            name=f"Micro-batches: {self.job.job_id}",
            max_instances=1,
            coalesce=True,
        )
