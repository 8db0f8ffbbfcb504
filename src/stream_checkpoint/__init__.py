"""Per-batch offset checkpoint commits for micro-batch stream processing jobs."""

__version__ = "0.1.0"
