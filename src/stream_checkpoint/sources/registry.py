from __future__ import annotations

import threading
from typing import Dict, List, Optional

from stream_checkpoint.core.models import SourceKey
from stream_checkpoint.sources.base import OffsetSource


class SourceRegistry:
    """Registry of the offset sources participating in a job."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sources: Dict[SourceKey, OffsetSource] = {}

    def register(self, source: OffsetSource) -> None:
        key = source.source_id()
        with self._lock:
            existing = self._sources.get(key)
            if existing is not None and existing is not source:
                raise ValueError(f"Source already registered: {key}")
            self._sources[key] = source

    def unregister(self, key: SourceKey) -> bool:
        with self._lock:
            return self._sources.pop(key, None) is not None

    def get(self, key: SourceKey) -> Optional[OffsetSource]:
        with self._lock:
            return self._sources.get(key)

    def all(self) -> List[OffsetSource]:
        with self._lock:
            return list(self._sources.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sources)
