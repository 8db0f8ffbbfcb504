from stream_checkpoint.coordinator.commit import CommitCoordinator
from stream_checkpoint.coordinator.signal import ProgressSignal

__all__ = [
    "CommitCoordinator",
    "ProgressSignal",
]
