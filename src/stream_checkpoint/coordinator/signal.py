from __future__ import annotations

import threading
import time
from typing import Optional

from stream_checkpoint.core.errors import ProgressWaitTimeout
from stream_checkpoint.core.models import BatchTime


class ProgressSignal:
    """
    Broadcast of committed batch-time advancement.

    `publish(t)` is called only after CommitRecord(t) is durable, so a thread
    released by `wait_for(t)` can read that record from the store right away.
    The condition guards nothing but the latest published batch time.
    """

    def __init__(self, initial: Optional[BatchTime] = None):
        self._cond = threading.Condition(threading.Lock())
        self._latest: Optional[BatchTime] = initial

    @property
    def latest(self) -> Optional[BatchTime]:
        with self._cond:
            return self._latest

    def reached(self, batch_time: BatchTime) -> bool:
        with self._cond:
            return self._latest is not None and self._latest >= batch_time

    def publish(self, batch_time: BatchTime) -> None:
        with self._cond:
            if self._latest is None or batch_time > self._latest:
                self._latest = batch_time
            self._cond.notify_all()

    def wait_for(self, batch_time: BatchTime, timeout: Optional[float] = None) -> BatchTime:
        """
        Block until progress reaches `batch_time` or later.

        Returns the latest published batch time. Raises ProgressWaitTimeout when
        `timeout` seconds pass first; that is a wait outcome, not a commit failure.
        """
        deadline = None if timeout is None else time.monotonic() + max(0.0, timeout)
        with self._cond:
            while self._latest is None or self._latest < batch_time:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ProgressWaitTimeout(batch_time, float(timeout), self._latest)
                self._cond.wait(remaining)
            return self._latest
