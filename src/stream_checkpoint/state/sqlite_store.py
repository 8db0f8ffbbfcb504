from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import List, Mapping, Optional

from stream_checkpoint.core.errors import StoreReadFailure, StoreWriteFailure
from stream_checkpoint.core.ledger import snapshot_digest
from stream_checkpoint.core.models import (
    BatchTime,
    CommitOutcome,
    CommitRecord,
    OffsetSnapshot,
    PartitionOffset,
    SourceKey,
)
from stream_checkpoint.state.base import decode_record, encode_record
from stream_checkpoint.utils.time import utc_now_iso


class SQLiteProgressStore:
    """SQLite-backed store for commit records and staged partial progress."""

    def __init__(self, path: str, timeout_s: float = 30.0):
        self.path = path
        self.timeout_s = timeout_s
        self._ensure_parent_dir(path)
        try:
            self._ensure_schema()
        except sqlite3.Error as e:
            raise StoreWriteFailure(f"Cannot initialise progress database {path}: {e}") from e

    def stage_progress(
        self,
        batch_time: BatchTime,
        source: SourceKey,
        partial_offsets: Mapping[str, PartitionOffset],
    ) -> None:
        rows = [
            (int(batch_time), source.as_str(), str(partition), int(po.offset), int(po.seq_no))
            for partition, po in partial_offsets.items()
        ]
        if not rows:
            return
        try:
            with self._session() as conn:
                conn.executemany(
                    """
                    INSERT INTO staged_progress (batch_time, source_key, partition_id, offset_value, seq_no)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(batch_time, source_key, partition_id) DO UPDATE SET
                        offset_value = excluded.offset_value,
                        seq_no = excluded.seq_no
                    """,
                    rows,
                )
        except sqlite3.Error as e:
            raise StoreWriteFailure(f"Cannot stage progress for batch {batch_time}: {e}") from e

    def drain_staged(self, batch_time: BatchTime) -> OffsetSnapshot:
        drained: OffsetSnapshot = {}
        try:
            with self._session() as conn:
                # Write lock up front: a concurrent drain blocks here and then sees no rows.
                conn.execute("BEGIN IMMEDIATE")
                rows = conn.execute(
                    """
                    SELECT source_key, partition_id, offset_value, seq_no
                    FROM staged_progress
                    WHERE batch_time = ?
                    """,
                    (int(batch_time),),
                ).fetchall()
                # Parse before deleting; a corrupt row rolls the drain back.
                try:
                    for row in rows:
                        key = SourceKey.parse(row["source_key"])
                        drained.setdefault(key, {})[str(row["partition_id"])] = PartitionOffset(
                            offset=int(row["offset_value"]),
                            seq_no=int(row["seq_no"]),
                        )
                except (TypeError, ValueError) as e:
                    raise StoreReadFailure(f"Corrupt staged progress for batch {batch_time}: {e}") from e
                conn.execute("DELETE FROM staged_progress WHERE batch_time = ?", (int(batch_time),))
        except sqlite3.Error as e:
            raise StoreReadFailure(f"Cannot drain staged progress for batch {batch_time}: {e}") from e
        return drained

    def discard_staged_before(self, batch_time: BatchTime) -> int:
        try:
            with self._session() as conn:
                cur = conn.execute(
                    "SELECT COUNT(DISTINCT batch_time) AS n FROM staged_progress WHERE batch_time < ?",
                    (int(batch_time),),
                )
                stale = int(cur.fetchone()["n"])
                conn.execute("DELETE FROM staged_progress WHERE batch_time < ?", (int(batch_time),))
                return stale
        except sqlite3.Error as e:
            raise StoreWriteFailure(f"Cannot discard staged progress before batch {batch_time}: {e}") from e

    def commit(self, batch_time: BatchTime, snapshot: OffsetSnapshot) -> CommitOutcome:
        digest = snapshot_digest(snapshot)
        record = CommitRecord(batch_time=int(batch_time), snapshot=snapshot, committed_at_utc=utc_now_iso())
        try:
            with self._session() as conn:
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO commit_record (batch_time, record_json, digest, committed_at_utc)
                    VALUES (?, ?, ?, ?)
                    """,
                    (record.batch_time, encode_record(record), digest, record.committed_at_utc),
                )
                if cur.rowcount == 1:
                    return CommitOutcome.COMMITTED

                row = conn.execute(
                    "SELECT digest FROM commit_record WHERE batch_time = ?",
                    (record.batch_time,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreWriteFailure(f"Cannot commit batch {batch_time}: {e}") from e

        if row and str(row["digest"]) == digest:
            return CommitOutcome.ALREADY_COMMITTED
        return CommitOutcome.CONFLICT

    def read(self, batch_time: BatchTime) -> Optional[CommitRecord]:
        return self._read_one(
            "SELECT batch_time, record_json FROM commit_record WHERE batch_time = ?",
            (int(batch_time),),
        )

    def read_latest(self) -> Optional[CommitRecord]:
        return self._read_one(
            "SELECT batch_time, record_json FROM commit_record ORDER BY batch_time DESC LIMIT 1",
            (),
        )

    def history(self, limit: Optional[int] = None) -> List[CommitRecord]:
        sql = "SELECT batch_time, record_json FROM commit_record ORDER BY batch_time DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (max(0, int(limit)),)
        try:
            with self._session() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreReadFailure(f"Cannot read commit history: {e}") from e
        return [decode_record(row["record_json"], origin=f"batch {row['batch_time']}") for row in rows]

    def prune(self, keep_latest: int) -> int:
        keep = max(1, int(keep_latest))
        try:
            with self._session() as conn:
                row = conn.execute(
                    "SELECT batch_time FROM commit_record ORDER BY batch_time DESC LIMIT 1 OFFSET ?",
                    (keep - 1,),
                ).fetchone()
                if not row:
                    return 0
                floor = int(row["batch_time"])
                cur = conn.execute("DELETE FROM commit_record WHERE batch_time < ?", (floor,))
                conn.execute("DELETE FROM staged_progress WHERE batch_time <= ?", (floor,))
                return int(cur.rowcount or 0)
        except sqlite3.Error as e:
            raise StoreWriteFailure(f"Cannot prune commit history: {e}") from e

    def close(self) -> None:
        # Connections are per-operation; nothing is held open.
        return None

    def _read_one(self, sql: str, params: tuple) -> Optional[CommitRecord]:
        try:
            with self._session() as conn:
                row = conn.execute(sql, params).fetchone()
        except sqlite3.Error as e:
            raise StoreReadFailure(f"Cannot read commit record: {e}") from e
        if not row:
            return None
        return decode_record(row["record_json"], origin=f"batch {row['batch_time']}")

    def _ensure_schema(self) -> None:
        with self._session() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS commit_record (
                    batch_time INTEGER PRIMARY KEY,
                    record_json TEXT NOT NULL,
                    digest TEXT NOT NULL,
                    committed_at_utc TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS staged_progress (
                    batch_time INTEGER NOT NULL,
                    source_key TEXT NOT NULL,
                    partition_id TEXT NOT NULL,
                    offset_value INTEGER NOT NULL,
                    seq_no INTEGER NOT NULL,
                    PRIMARY KEY (batch_time, source_key, partition_id)
                )
                """
            )

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.timeout_s)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self):
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _ensure_parent_dir(self, path: str) -> None:
        parent = Path(path).parent
        if str(parent) not in {"", "."}:
            parent.mkdir(parents=True, exist_ok=True)
