from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

from stream_checkpoint.coordinator.commit import CommitCoordinator
from stream_checkpoint.coordinator.signal import ProgressSignal
from stream_checkpoint.core.factory import ComponentFactory
from stream_checkpoint.events.bus import ListenerBus
from stream_checkpoint.sources.registry import SourceRegistry
from stream_checkpoint.state.base import ProgressStore
from stream_checkpoint.utils.logging import get_logger


@dataclass
class JobContext:
    """Handle on a running job: its id, listener bus and source registry."""

    job_id: str
    listener_bus: ListenerBus = field(default_factory=ListenerBus)
    sources: SourceRegistry = field(default_factory=SourceRegistry)


@dataclass(frozen=True)
class CoordinatorHandle:
    """The live coordinator of one job and the resources it owns."""

    job_id: str
    location: str
    coordinator: CommitCoordinator
    store: ProgressStore
    signal: ProgressSignal


class CoordinatorRegistry:
    """
    Keeps exactly one live commit coordinator per job.

    Construct one and pass it to whatever starts and stops jobs. `start`
    installs the coordinator ahead of every other batch listener, so progress
    is committed before dependent listeners run.
    """

    def __init__(self, factory: Optional[ComponentFactory] = None):
        self.factory = factory or ComponentFactory()
        self._lock = threading.Lock()
        self._handles: Dict[str, CoordinatorHandle] = {}
        self.log = get_logger("stream_checkpoint.lifecycle")

    def start(self, job: JobContext, progress_location: str) -> CoordinatorHandle:
        """Start the job's coordinator, or return the one already running."""
        with self._lock:
            handle = self._handles.get(job.job_id)
            if handle is not None:
                if handle.location != progress_location:
                    self.log.warning(
                        "Coordinator for job %s already started at %s; ignoring location %s",
                        job.job_id,
                        handle.location,
                        progress_location,
                    )
                return handle

            built = self.factory.build(job.job_id, job.sources, location=progress_location)
            handle = CoordinatorHandle(
                job_id=job.job_id,
                location=progress_location,
                coordinator=built.coordinator,
                store=built.store,
                signal=built.signal,
            )
            job.listener_bus.add(built.coordinator, index=0)
            self._handles[job.job_id] = handle
            self.log.info("Commit coordinator started for job %s at %s", job.job_id, progress_location)
            return handle

    def stop(self, job: JobContext) -> bool:
        """Deregister and close the job's coordinator. Safe when none was started."""
        with self._lock:
            handle = self._handles.pop(job.job_id, None)
            if handle is None:
                return False
            job.listener_bus.remove(handle.coordinator)
            handle.store.close()
            self.log.info("Commit coordinator stopped for job %s", job.job_id)
            return True

    def get(self, job: JobContext) -> Optional[CoordinatorHandle]:
        with self._lock:
            return self._handles.get(job.job_id)
