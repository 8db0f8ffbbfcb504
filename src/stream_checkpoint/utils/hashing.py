import hashlib
import json
from typing import Any

def stable_hash(text: str) -> str:
    """Generate a stable hash from text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]

def canonical_json(value: Any) -> str:
    """
    Serialize to JSON with sorted keys and no incidental whitespace,
    so equal values always produce equal text.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
