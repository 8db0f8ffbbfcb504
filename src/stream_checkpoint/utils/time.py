import time
from datetime import datetime, timezone

def utc_now_iso() -> str:
    """Get current UTC time in ISO format."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")

def now_ms() -> int:
    """Current wall clock in epoch milliseconds."""
    return int(time.time() * 1000)

def align_batch_time(ts_ms: int, interval_ms: int) -> int:
    """Floor a timestamp to the start of its batch interval."""
    if interval_ms <= 0:
        raise ValueError("interval_ms must be positive")
    return ts_ms - (ts_ms % interval_ms)
