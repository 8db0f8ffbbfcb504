from __future__ import annotations

from typing import Dict, Iterable

from stream_checkpoint.core.models import OffsetSnapshot, PartitionOffset, SourceKey
from stream_checkpoint.sources.memory import InMemoryOffsetSource
from stream_checkpoint.state.base import ProgressStore
from stream_checkpoint.utils.logging import get_logger

log = get_logger("stream_checkpoint.recovery")


def resume_snapshot(store: ProgressStore) -> OffsetSnapshot:
    """Offsets to resume from: the newest commit, or empty if nothing was committed."""
    latest = store.read_latest()
    if latest is None:
        log.info("No committed progress found; starting from the beginning")
        return {}
    log.info("Resuming from batch %s", latest.batch_time)
    return {key: dict(parts) for key, parts in latest.snapshot.items()}


def resume_sources(store: ProgressStore, sources: Iterable[InMemoryOffsetSource]) -> Dict[SourceKey, Dict[str, PartitionOffset]]:
    """Seed each source from the newest commit. Returns what each source adopted."""
    snapshot = resume_snapshot(store)
    return {src.source_id(): src.resume_from(snapshot) for src in sources}
