from __future__ import annotations

import threading
from typing import List, Optional, Protocol

from stream_checkpoint.core.models import BatchCompleted
from stream_checkpoint.utils.logging import get_logger


class BatchListener(Protocol):
    """Observer of batch-completion notifications."""

    def on_batch_completed(self, event: BatchCompleted) -> object: ...


class ListenerBus:
    """
    Ordered list of batch listeners owned by the host scheduler.

    Events are dispatched synchronously on the posting thread, in list order.
    A listener that raises stops the dispatch and the error reaches the poster.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: List[BatchListener] = []
        self.log = get_logger("stream_checkpoint.events.bus")

    def add(self, listener: BatchListener, index: Optional[int] = None) -> None:
        with self._lock:
            if index is None:
                self._listeners.append(listener)
            else:
                self._listeners.insert(index, listener)

    def remove(self, listener: BatchListener) -> bool:
        with self._lock:
            for i, existing in enumerate(self._listeners):
                if existing is listener:
                    del self._listeners[i]
                    return True
        return False

    def listeners(self) -> List[BatchListener]:
        with self._lock:
            return list(self._listeners)

    def post(self, event: BatchCompleted) -> None:
        # Copy so listeners may (de)register while an event is being dispatched.
        for listener in self.listeners():
            try:
                listener.on_batch_completed(event)
            except Exception:
                self.log.error(
                    "Listener %s failed for batch %s",
                    type(listener).__name__,
                    event.batch_time,
                )
                raise
