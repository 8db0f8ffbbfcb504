"""
Offset ledger: merge rules for per-source, per-partition offsets.

Pure functions over OffsetSnapshot values. No I/O, no locking; the caller
owns any snapshot passed in and receives fresh dicts back.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Tuple

from stream_checkpoint.core.models import (
    CommitRecord,
    OffsetAnomaly,
    OffsetSnapshot,
    PartitionOffset,
    PartitionOffsets,
    SourceKey,
)
from stream_checkpoint.utils.hashing import canonical_json, stable_hash


def copy_snapshot(snapshot: Mapping[SourceKey, Mapping[str, PartitionOffset]]) -> OffsetSnapshot:
    return {key: dict(parts) for key, parts in snapshot.items()}


def overlay(base: Mapping[str, PartitionOffset], updates: Mapping[str, PartitionOffset]) -> PartitionOffsets:
    """Per-partition overlay: values in `updates` replace those in `base`."""
    merged = dict(base)
    merged.update(updates)
    return merged


def merge_batch_offsets(
    current: Mapping[SourceKey, Mapping[str, PartitionOffset]],
    staged: Mapping[SourceKey, Mapping[str, PartitionOffset]],
) -> Tuple[OffsetSnapshot, List[OffsetAnomaly]]:
    """
    Combine sources' current offsets with progress staged during the batch.

    Staged values win per partition. A staged value that sits behind the
    source's current value is still taken, and reported as an anomaly.
    Sources that only appear in `staged` are included.
    """
    merged: OffsetSnapshot = {}
    anomalies: List[OffsetAnomaly] = []

    for key in list(current.keys()) + [k for k in staged.keys() if k not in current]:
        now = current.get(key, {})
        partial = staged.get(key, {})
        for partition, staged_offset in partial.items():
            current_offset = now.get(partition)
            if current_offset is not None and staged_offset.is_behind(current_offset):
                anomalies.append(
                    OffsetAnomaly(
                        kind="partial_behind_current",
                        source=key,
                        partition=partition,
                        observed=staged_offset,
                        expected_at_least=current_offset,
                    )
                )
        merged[key] = overlay(now, partial)

    return merged, anomalies


def carry_forward(
    merged: Mapping[SourceKey, Mapping[str, PartitionOffset]],
    previous: Optional[CommitRecord],
) -> Tuple[OffsetSnapshot, List[OffsetAnomaly]]:
    """
    Make `merged` a partition-wise superset of the previous commit.

    Missing sources/partitions are copied from the previous commit. A partition
    that fell behind its previously committed position keeps the committed value
    and is reported as an anomaly.
    """
    result = copy_snapshot(merged)
    anomalies: List[OffsetAnomaly] = []
    if previous is None:
        return result, anomalies

    for key, prev_parts in previous.snapshot.items():
        parts = result.setdefault(key, {})
        for partition, prev_offset in prev_parts.items():
            now = parts.get(partition)
            if now is None:
                parts[partition] = prev_offset
            elif now.is_behind(prev_offset):
                anomalies.append(
                    OffsetAnomaly(
                        kind="regressed_below_commit",
                        source=key,
                        partition=partition,
                        observed=now,
                        expected_at_least=prev_offset,
                    )
                )
                parts[partition] = prev_offset

    return result, anomalies


def snapshot_to_dict(snapshot: Mapping[SourceKey, Mapping[str, PartitionOffset]]) -> Dict[str, Dict[str, Any]]:
    """JSON-ready form: {"ns/id": {"p0": {"offset": 1, "seq_no": 1}}}."""
    return {
        key.as_str(): {
            partition: {"offset": po.offset, "seq_no": po.seq_no}
            for partition, po in parts.items()
        }
        for key, parts in snapshot.items()
    }


def snapshot_from_dict(data: Mapping[str, Mapping[str, Mapping[str, Any]]]) -> OffsetSnapshot:
    return {
        SourceKey.parse(key): {
            str(partition): PartitionOffset(offset=int(po["offset"]), seq_no=int(po["seq_no"]))
            for partition, po in parts.items()
        }
        for key, parts in data.items()
    }


def snapshot_digest(snapshot: Mapping[SourceKey, Mapping[str, PartitionOffset]]) -> str:
    """Stable fingerprint used to tell an identical re-commit from a conflicting one."""
    return stable_hash(canonical_json(snapshot_to_dict(snapshot)))


def same_snapshot(a: Mapping[SourceKey, Mapping[str, PartitionOffset]], b: Mapping[SourceKey, Mapping[str, PartitionOffset]]) -> bool:
    return snapshot_to_dict(a) == snapshot_to_dict(b)
