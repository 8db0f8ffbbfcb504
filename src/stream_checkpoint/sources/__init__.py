from stream_checkpoint.sources.base import OffsetSource
from stream_checkpoint.sources.memory import InMemoryOffsetSource
from stream_checkpoint.sources.registry import SourceRegistry

__all__ = [
    "InMemoryOffsetSource",
    "OffsetSource",
    "SourceRegistry",
]
