from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from stream_checkpoint.coordinator.commit import CommitCoordinator
from stream_checkpoint.coordinator.signal import ProgressSignal
from stream_checkpoint.core.models import RegressionPolicy
from stream_checkpoint.events.filter import BatchEventFilter
from stream_checkpoint.sources.registry import SourceRegistry
from stream_checkpoint.state.base import ProgressStore
from stream_checkpoint.state.file_store import FileProgressStore
from stream_checkpoint.state.memory_store import InMemoryProgressStore
from stream_checkpoint.state.sqlite_store import SQLiteProgressStore

_SQLITE_SUFFIXES = (".db", ".sqlite", ".sqlite3")


def open_progress_store(location: str) -> ProgressStore:
    """
    Open the progress store named by a location string.

        memory://                      in-process only
        sqlite:///var/lib/job/progress.db
        file:///var/lib/job/progress   directory of JSON files

    Bare paths ending in .db/.sqlite select SQLite, any other bare path a directory.
    """
    loc = str(location or "").strip()
    if not loc:
        raise ValueError("progress location cannot be empty")

    scheme, sep, rest = loc.partition("://")
    if not sep:
        if loc.lower().endswith(_SQLITE_SUFFIXES):
            return SQLiteProgressStore(loc)
        return FileProgressStore(loc)

    scheme = scheme.lower()
    if scheme == "memory":
        return InMemoryProgressStore()
    if not rest:
        raise ValueError(f"progress location has no path: {location}")
    if scheme == "sqlite":
        return SQLiteProgressStore(rest)
    if scheme == "file":
        return FileProgressStore(rest)
    raise ValueError(f"Unsupported progress location scheme '{scheme}'. Use memory, sqlite or file")


@dataclass(frozen=True)
class BuiltComponents:
    coordinator: CommitCoordinator
    store: ProgressStore
    signal: ProgressSignal
    sources: SourceRegistry


class ComponentFactory:
    """
    Factory responsible for wiring a commit coordinator and its collaborators.
    """

    def __init__(
        self,
        regression_policy: RegressionPolicy = RegressionPolicy.WARN,
        retain_commits: Optional[int] = None,
    ):
        self.regression_policy = RegressionPolicy(regression_policy)
        self.retain_commits = retain_commits

    def build(
        self,
        job_id: str,
        sources: SourceRegistry,
        location: Optional[str] = None,
        store: Optional[ProgressStore] = None,
    ) -> BuiltComponents:
        """
        Build a coordinator for a job.

        Args:
            job_id: Job identifier, for logs.
            sources: Registry of the job's offset sources.
            location: Progress location string; ignored when `store` is given.
            store: An already opened store.

        Returns:
            A container with all built components.
        """
        if store is None:
            if location is None:
                raise ValueError("either location or store is required")
            store = open_progress_store(location)

        signal = self._signal(store)
        coordinator = CommitCoordinator(
            store=store,
            sources=sources,
            signal=signal,
            event_filter=BatchEventFilter(),
            regression_policy=self.regression_policy,
            retain_commits=self.retain_commits,
            job_id=job_id,
        )
        return BuiltComponents(coordinator=coordinator, store=store, signal=signal, sources=sources)

    # ---------- Builders (private) ----------

    def _signal(self, store: ProgressStore) -> ProgressSignal:
        """Seed the progress signal from the newest durable commit."""
        latest = store.read_latest()
        return ProgressSignal(initial=latest.batch_time if latest else None)
