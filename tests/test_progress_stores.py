import os
import shutil
import sqlite3
import tempfile
import threading
import unittest
from unittest.mock import patch

from stream_checkpoint.core.errors import StoreReadFailure
from stream_checkpoint.core.factory import open_progress_store
from stream_checkpoint.core.models import CommitOutcome, PartitionOffset, SourceKey
from stream_checkpoint.state.file_store import FileProgressStore
from stream_checkpoint.state.memory_store import InMemoryProgressStore
from stream_checkpoint.state.sqlite_store import SQLiteProgressStore

A = SourceKey("hub-a", 0)
B = SourceKey("hub-b", 0)


def po(n):
    return PartitionOffset(offset=n, seq_no=n)


class ProgressStoreContract:
    """Behaviour every progress store must share. Subclasses provide make_store()."""

    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.store = self.make_store()

    def tearDown(self):
        self.store.close()
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def test_empty_store(self):
        self.assertIsNone(self.store.read_latest())
        self.assertIsNone(self.store.read(100))
        self.assertEqual(self.store.drain_staged(100), {})
        self.assertEqual(self.store.history(), [])

    def test_commit_and_read(self):
        outcome = self.store.commit(100, {A: {"p0": po(10)}, B: {}})
        self.assertEqual(outcome, CommitOutcome.COMMITTED)

        record = self.store.read(100)
        self.assertEqual(record.batch_time, 100)
        self.assertEqual(record.snapshot, {A: {"p0": po(10)}, B: {}})
        self.assertTrue(record.committed_at_utc)

    def test_identical_recommit_is_idempotent(self):
        self.store.commit(100, {A: {"p0": po(10)}})
        self.assertEqual(self.store.commit(100, {A: {"p0": po(10)}}), CommitOutcome.ALREADY_COMMITTED)
        self.assertEqual(len(self.store.history()), 1)

    def test_different_recommit_is_a_conflict_and_keeps_original(self):
        self.store.commit(100, {A: {"p0": po(10)}})
        self.assertEqual(self.store.commit(100, {A: {"p0": po(11)}}), CommitOutcome.CONFLICT)
        self.assertEqual(self.store.read(100).snapshot, {A: {"p0": po(10)}})

    def test_read_latest_and_history_order(self):
        for t in (100, 300, 200):
            self.store.commit(t, {A: {"p0": po(t)}})
        self.assertEqual(self.store.read_latest().batch_time, 300)
        self.assertEqual([r.batch_time for r in self.store.history()], [300, 200, 100])
        self.assertEqual([r.batch_time for r in self.store.history(limit=2)], [300, 200])

    def test_stage_and_drain_is_per_batch_and_clears(self):
        self.store.stage_progress(100, A, {"p0": po(12)})
        self.store.stage_progress(100, A, {"p1": po(3)})
        self.store.stage_progress(100, B, {"p0": po(1)})
        self.store.stage_progress(101, A, {"p0": po(20)})

        drained = self.store.drain_staged(100)
        self.assertEqual(drained, {A: {"p0": po(12), "p1": po(3)}, B: {"p0": po(1)}})
        self.assertEqual(self.store.drain_staged(100), {})
        self.assertEqual(self.store.drain_staged(101), {A: {"p0": po(20)}})

    def test_restaging_a_partition_keeps_last_write(self):
        self.store.stage_progress(100, A, {"p0": po(5)})
        self.store.stage_progress(100, A, {"p0": po(7)})
        self.assertEqual(self.store.drain_staged(100), {A: {"p0": po(7)}})

    def test_concurrent_drains_only_one_wins(self):
        self.store.stage_progress(100, A, {"p0": po(1), "p1": po(2)})
        results = []
        lock = threading.Lock()

        def drain():
            out = self.store.drain_staged(100)
            with lock:
                results.append(out)

        threads = [threading.Thread(target=drain) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        non_empty = [r for r in results if r]
        self.assertEqual(len(results), 4)
        self.assertEqual(non_empty, [{A: {"p0": po(1), "p1": po(2)}}])

    def test_prune_keeps_latest_and_drops_stale_staging(self):
        for t in (100, 200, 300, 400):
            self.store.commit(t, {A: {"p0": po(t)}})
        self.store.stage_progress(250, A, {"p0": po(1)})
        self.store.stage_progress(500, A, {"p0": po(2)})

        removed = self.store.prune(keep_latest=2)

        self.assertEqual(removed, 2)
        self.assertEqual([r.batch_time for r in self.store.history()], [400, 300])
        self.assertEqual(self.store.drain_staged(250), {})
        self.assertEqual(self.store.drain_staged(500), {A: {"p0": po(2)}})

    def test_discard_staged_before_keeps_current_and_later_batches(self):
        for t in (100, 200, 300):
            self.store.stage_progress(t, A, {"p0": po(t)})

        self.assertEqual(self.store.discard_staged_before(300), 2)

        self.assertEqual(self.store.drain_staged(100), {})
        self.assertEqual(self.store.drain_staged(200), {})
        self.assertEqual(self.store.drain_staged(300), {A: {"p0": po(300)}})
        self.assertEqual(self.store.discard_staged_before(300), 0)

    def test_records_read_back_cannot_change_history(self):
        self.store.commit(100, {A: {"p0": po(10)}})

        self.store.read(100).snapshot[A]["p0"] = po(99)
        self.store.read_latest().snapshot.clear()
        self.store.history()[0].snapshot[B] = {"p0": po(1)}

        self.assertEqual(self.store.read(100).snapshot, {A: {"p0": po(10)}})


class TestInMemoryProgressStore(ProgressStoreContract, unittest.TestCase):
    def make_store(self):
        return InMemoryProgressStore()


class TestSQLiteProgressStore(ProgressStoreContract, unittest.TestCase):
    def make_store(self):
        return SQLiteProgressStore(os.path.join(self.tmp_dir, "nested", "progress.db"))

    def test_commits_survive_reopen(self):
        self.store.commit(100, {A: {"p0": po(10)}})
        reopened = SQLiteProgressStore(self.store.path)
        self.assertEqual(reopened.read_latest().snapshot, {A: {"p0": po(10)}})

    def test_corrupt_staged_row_leaves_batch_staged(self):
        self.store.stage_progress(100, A, {"p0": po(1)})
        self.store.stage_progress(100, B, {"p0": po(2)})
        conn = sqlite3.connect(self.store.path)
        with conn:
            conn.execute(
                "INSERT INTO staged_progress (batch_time, source_key, partition_id, offset_value, seq_no) "
                "VALUES (100, 'no-instance', 'p0', 3, 3)"
            )

        with self.assertRaises(StoreReadFailure):
            self.store.drain_staged(100)

        with conn:
            conn.execute("DELETE FROM staged_progress WHERE source_key = 'no-instance'")
        conn.close()
        self.assertEqual(self.store.drain_staged(100), {A: {"p0": po(1)}, B: {"p0": po(2)}})


class TestFileProgressStore(ProgressStoreContract, unittest.TestCase):
    def make_store(self):
        return FileProgressStore(os.path.join(self.tmp_dir, "progress"))

    def test_latest_pointer_written(self):
        self.store.commit(100, {A: {"p0": po(1)}})
        self.store.commit(200, {A: {"p0": po(2)}})
        with open(self.store.latest_path, encoding="utf-8") as f:
            self.assertEqual(f.read().strip(), "200")

    def test_read_latest_falls_back_to_scan_without_pointer(self):
        self.store.commit(100, {A: {"p0": po(1)}})
        self.store.commit(200, {A: {"p0": po(2)}})
        os.remove(self.store.latest_path)
        self.assertEqual(self.store.read_latest().batch_time, 200)

    def test_corrupt_commit_record_raises_read_failure(self):
        with open(self.store.commits_dir / "100.json", "w", encoding="utf-8") as f:
            f.write("{not json")
        with self.assertRaises(StoreReadFailure):
            self.store.read(100)

    def test_commits_survive_reopen(self):
        self.store.commit(100, {A: {"p0": po(10)}})
        reopened = FileProgressStore(str(self.store.root))
        self.assertEqual(reopened.read(100).snapshot, {A: {"p0": po(10)}})

    def test_corrupt_staged_file_leaves_batch_staged(self):
        self.store.stage_progress(100, A, {"p0": po(1)})
        self.store.stage_progress(100, B, {"p0": po(2)})
        bad = self.store.staging_dir / "100" / "broken.json"
        bad.write_text("{not json", encoding="utf-8")

        with self.assertRaises(StoreReadFailure):
            self.store.drain_staged(100)

        os.remove(bad)
        self.assertEqual(self.store.drain_staged(100), {A: {"p0": po(1)}, B: {"p0": po(2)}})
        self.assertEqual([p.name for p in self.store.staging_dir.iterdir()], [])

    def test_commit_survives_latest_pointer_failure(self):
        self.store.commit(100, {A: {"p0": po(1)}})

        with patch.object(self.store, "_advance_latest", side_effect=OSError("read-only")):
            outcome = self.store.commit(200, {A: {"p0": po(2)}})

        self.assertEqual(outcome, CommitOutcome.COMMITTED)
        self.assertEqual(self.store.read(200).snapshot, {A: {"p0": po(2)}})
        self.assertEqual(self.store.read_latest().batch_time, 200)
        self.assertEqual(FileProgressStore(str(self.store.root)).read_latest().batch_time, 200)


class TestOpenProgressStore(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def test_schemes(self):
        self.assertIsInstance(open_progress_store("memory://"), InMemoryProgressStore)
        db = os.path.join(self.tmp_dir, "p.db")
        self.assertIsInstance(open_progress_store(f"sqlite://{db}"), SQLiteProgressStore)
        self.assertIsInstance(open_progress_store(db), SQLiteProgressStore)
        directory = os.path.join(self.tmp_dir, "dir")
        self.assertIsInstance(open_progress_store(f"file://{directory}"), FileProgressStore)
        self.assertIsInstance(open_progress_store(directory), FileProgressStore)

    def test_rejects_unknown_scheme_and_blank(self):
        with self.assertRaises(ValueError):
            open_progress_store("redis://localhost")
        with self.assertRaises(ValueError):
            open_progress_store("  ")


if __name__ == "__main__":
    unittest.main()
