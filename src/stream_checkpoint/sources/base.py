from __future__ import annotations

from typing import Dict, Protocol

from stream_checkpoint.core.models import PartitionOffset, SourceKey


class OffsetSource(Protocol):
    """Protocol for consumption components that expose their current offsets."""

    def source_id(self) -> SourceKey: ...

    def current_offsets(self) -> Dict[str, PartitionOffset]:
        """Point-in-time copy; must not block on the source's consumer threads."""
        ...
