from __future__ import annotations

import threading
from typing import List, Optional, Set

from stream_checkpoint.coordinator.signal import ProgressSignal
from stream_checkpoint.core.errors import (
    DuplicateCommitConflict,
    OffsetRegressionError,
    StoreReadFailure,
    StoreWriteFailure,
)
from stream_checkpoint.core.ledger import carry_forward, merge_batch_offsets, overlay, same_snapshot
from stream_checkpoint.core.models import (
    BatchCompleted,
    BatchTime,
    CommitOutcome,
    CommitRecord,
    CommitResult,
    OffsetAnomaly,
    OffsetSnapshot,
    RegressionPolicy,
)
from stream_checkpoint.events.filter import BatchEventFilter
from stream_checkpoint.sources.registry import SourceRegistry
from stream_checkpoint.state.base import ProgressStore
from stream_checkpoint.utils.logging import get_logger


class CommitCoordinator:
    """
    Commits each successful batch's ending offsets exactly once.

    Installed as the first batch listener of a job. For every admitted batch it
    reads the sources' current offsets, overlays the partial progress tasks
    staged for that batch, writes one commit record keyed by the batch time and
    only then wakes threads waiting on progress.
    """

    def __init__(
        self,
        store: ProgressStore,
        sources: SourceRegistry,
        signal: Optional[ProgressSignal] = None,
        event_filter: Optional[BatchEventFilter] = None,
        regression_policy: RegressionPolicy = RegressionPolicy.WARN,
        retain_commits: Optional[int] = None,
        job_id: str = "",
    ):
        """
        Initialize the coordinator.

        Args:
            store: Durable progress store; this coordinator is its only writer.
            sources: Registry of sources whose offsets are committed.
            signal: Progress broadcast. Defaults to one seeded from the latest commit.
            event_filter: Admission rule for batch-completion events.
            regression_policy: WARN logs offset anomalies, STRICT rejects the commit.
            retain_commits: When set, prune history to this many records after each commit.
            job_id: Used in log lines only.
        """
        self.store = store
        self.sources = sources
        self.event_filter = event_filter or BatchEventFilter()
        self.regression_policy = RegressionPolicy(regression_policy)
        self.retain_commits = retain_commits
        self.job_id = job_id
        self.log = get_logger("stream_checkpoint.coordinator")

        if signal is None:
            latest = store.read_latest()
            signal = ProgressSignal(initial=latest.batch_time if latest else None)
        self.signal = signal

        self._commit_lock = threading.Lock()
        self._claims = threading.Condition(threading.Lock())
        self._in_flight: Set[BatchTime] = set()

    # ---------- Listener entry point ----------

    def on_batch_completed(self, event: BatchCompleted) -> Optional[CommitResult]:
        """Handle a batch-completion event. Returns None when the batch is not admitted."""
        self.log.info("Batch %s completed (job=%s)", event.batch_time, self.job_id)

        decision = self.event_filter.admit(event)
        if not decision.admitted:
            self.log.debug(
                "Batch %s not committed: failed operations=%s",
                event.batch_time,
                [op.operation_id for op in decision.failed_operations],
            )
            return None

        return self.on_batch_admitted(event.batch_time)

    def on_batch_admitted(self, batch_time: BatchTime) -> CommitResult:
        """
        Commit progress for an admitted batch.

        Raises:
            DuplicateCommitConflict: the batch is already committed with different offsets.
            OffsetRegressionError: offsets moved backwards under the strict policy.
            StoreWriteFailure / StoreReadFailure: the store failed; nothing was published.
        """
        batch_time = int(batch_time)
        self._claim(batch_time)
        try:
            existing = self.store.read(batch_time)
            if existing is not None:
                return self._handle_duplicate(batch_time, existing)
            return self._commit_new(batch_time)
        finally:
            self._release(batch_time)

    # ---------- Readers ----------

    def wait_for_commit(self, batch_time: BatchTime, timeout: Optional[float] = None) -> CommitRecord:
        """
        Block until progress reaches `batch_time`, then return the newest record at or
        before it. Raises ProgressWaitTimeout if the deadline passes first.
        """
        self.signal.wait_for(batch_time, timeout=timeout)
        record = self.store.read(batch_time)
        if record is not None:
            return record
        # Progress moved past this batch time without committing it (e.g. it failed).
        for candidate in self.store.history():
            if candidate.batch_time <= batch_time:
                return candidate
        latest = self.store.read_latest()
        if latest is None:
            raise StoreReadFailure(f"Progress reached batch {batch_time} but no commit record is visible")
        return latest

    # ---------- Commit steps (private) ----------

    def _commit_new(self, batch_time: BatchTime) -> CommitResult:
        # Point-in-time reads; sources keep advancing concurrently.
        current: OffsetSnapshot = {src.source_id(): src.current_offsets() for src in self.sources.all()}

        staged = self.store.drain_staged(batch_time)
        committed = False
        try:
            self.log.info("Progress staged for batch %s: %s", batch_time, _describe(staged))
            merged, anomalies = merge_batch_offsets(current, staged)

            previous = self.store.read_latest()
            if previous is not None and previous.batch_time > batch_time:
                self.log.warning(
                    "Batch %s admitted after newer commit %s; not carrying offsets forward",
                    batch_time,
                    previous.batch_time,
                )
                previous = None
            merged, regressions = carry_forward(merged, previous)
            anomalies.extend(regressions)
            self._check_anomalies(batch_time, anomalies)

            with self._commit_lock:
                outcome = self.store.commit(batch_time, merged)
                if outcome is CommitOutcome.CONFLICT:
                    self.log.error("Batch %s already committed by another writer with different offsets", batch_time)
                    raise DuplicateCommitConflict(batch_time, "store holds a different snapshot")

                record = self.store.read(batch_time)
                if record is None:
                    raise StoreWriteFailure(f"Commit for batch {batch_time} is not visible after write")
                committed = True

                self.signal.publish(batch_time)
        except Exception:
            if not committed:
                self._restore_staged(batch_time, staged)
            raise

        self._housekeep(batch_time)
        self.log.info("Committed ending offsets of batch %s: %s", batch_time, _describe(record.snapshot))
        return CommitResult(batch_time=batch_time, outcome=outcome, record=record, anomalies=anomalies)

    def _handle_duplicate(self, batch_time: BatchTime, existing: CommitRecord) -> CommitResult:
        staged = self.store.drain_staged(batch_time)
        candidate = {key: dict(parts) for key, parts in existing.snapshot.items()}
        for key, parts in staged.items():
            candidate[key] = overlay(candidate.get(key, {}), parts)

        if not same_snapshot(candidate, existing.snapshot):
            self.log.error(
                "Duplicate admission for batch %s carries different progress: committed=%s staged=%s",
                batch_time,
                _describe(existing.snapshot),
                _describe(staged),
            )
            raise DuplicateCommitConflict(batch_time, "late partial progress differs from the committed snapshot")

        self.log.warning("Batch %s already committed; ignoring duplicate admission", batch_time)
        with self._commit_lock:
            self.signal.publish(batch_time)
        return CommitResult(batch_time=batch_time, outcome=CommitOutcome.ALREADY_COMMITTED, record=existing)

    def _check_anomalies(self, batch_time: BatchTime, anomalies: List[OffsetAnomaly]) -> None:
        for a in anomalies:
            self.log.warning(
                "Offset anomaly in batch %s: %s %s:%s observed=%s expected_at_least=%s",
                batch_time,
                a.kind,
                a.source,
                a.partition,
                a.observed.position,
                a.expected_at_least.position,
            )
        if anomalies and self.regression_policy is RegressionPolicy.STRICT:
            raise OffsetRegressionError(batch_time, anomalies)

    def _restore_staged(self, batch_time: BatchTime, staged: OffsetSnapshot) -> None:
        """Put drained partial progress back so a re-driven batch can still use it."""
        try:
            for key, parts in staged.items():
                self.store.stage_progress(batch_time, key, parts)
        except Exception as e:
            self.log.error("Could not restore staged progress for batch %s: %s", batch_time, e)

    def _housekeep(self, batch_time: BatchTime) -> None:
        """
        Drop progress staged for earlier batch times and prune old history.

        Runs after the commit is durable and published, so a failure here is
        logged and never reported as a failed commit.
        """
        try:
            discarded = self.store.discard_staged_before(batch_time)
            if discarded:
                self.log.debug("Discarded staged progress of %s batch(es) before %s", discarded, batch_time)
            if self.retain_commits:
                removed = self.store.prune(self.retain_commits)
                if removed:
                    self.log.debug("Pruned %s old commit records (retain=%s)", removed, self.retain_commits)
        except Exception as e:
            self.log.warning("Housekeeping after batch %s failed: %s", batch_time, e)

    def _claim(self, batch_time: BatchTime) -> None:
        # Duplicate admissions for the same batch time run one after another.
        with self._claims:
            while batch_time in self._in_flight:
                self._claims.wait()
            self._in_flight.add(batch_time)

    def _release(self, batch_time: BatchTime) -> None:
        with self._claims:
            self._in_flight.discard(batch_time)
            self._claims.notify_all()


def _describe(snapshot: OffsetSnapshot) -> dict:
    return {
        key.as_str(): {p: po.position for p, po in sorted(parts.items())}
        for key, parts in sorted(snapshot.items())
    }
