from stream_checkpoint.state.base import CommitRecordSchemaV1, ProgressStore
from stream_checkpoint.state.file_store import FileProgressStore
from stream_checkpoint.state.memory_store import InMemoryProgressStore
from stream_checkpoint.state.sqlite_store import SQLiteProgressStore

__all__ = [
    "CommitRecordSchemaV1",
    "FileProgressStore",
    "InMemoryProgressStore",
    "ProgressStore",
    "SQLiteProgressStore",
]
