"""
End-to-end scenarios: sources, staged task progress, the listener bus and a
durable store wired together through the coordinator registry.
"""

import os
import shutil
import tempfile
import unittest

from stream_checkpoint.coordinator.lifecycle import CoordinatorRegistry, JobContext
from stream_checkpoint.coordinator.recovery import resume_snapshot, resume_sources
from stream_checkpoint.core.models import BatchCompleted, OutputOperationInfo, PartitionOffset, SourceKey
from stream_checkpoint.sources.memory import InMemoryOffsetSource

A = SourceKey("hub-a", 0)
B = SourceKey("hub-b", 0)
C = SourceKey("hub-c", 0)


def po(n):
    return PartitionOffset(offset=n, seq_no=n)


class TestCheckpointScenario(unittest.TestCase):
    location_name = "progress.db"

    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.location = os.path.join(self.tmp_dir, self.location_name)
        self.registry = CoordinatorRegistry()
        self.job = JobContext(job_id="e2e")
        self.sources = {key: InMemoryOffsetSource(key) for key in (A, B, C)}
        for source in self.sources.values():
            self.job.sources.register(source)
        self.handle = self.registry.start(self.job, self.location)

    def tearDown(self):
        self.registry.stop(self.job)
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def run_batch_100(self):
        self.sources[A].advance("p0", 10, 10)
        self.sources[B].advance("p0", 5, 5)
        self.handle.store.stage_progress(100, A, {"p0": po(12)})
        self.job.listener_bus.post(BatchCompleted(100, [OutputOperationInfo(0), OutputOperationInfo(1)]))

    def test_successful_batch_commits_merged_offsets(self):
        self.run_batch_100()

        record = self.handle.store.read(100)
        self.assertEqual(record.snapshot, {A: {"p0": po(12)}, B: {"p0": po(5)}, C: {}})

    def test_failed_batch_leaves_previous_commit_latest(self):
        self.run_batch_100()
        self.sources[A].advance("p0", 20, 20)

        self.job.listener_bus.post(
            BatchCompleted(101, [OutputOperationInfo(0), OutputOperationInfo(1, failure_reason="Job aborted")])
        )

        self.assertIsNone(self.handle.store.read(101))
        self.assertEqual(self.handle.store.read_latest().batch_time, 100)
        self.assertEqual(self.handle.signal.latest, 100)

    def test_restart_resumes_from_latest_commit(self):
        self.run_batch_100()
        self.registry.stop(self.job)

        restarted = JobContext(job_id="e2e")
        fresh = [InMemoryOffsetSource(key) for key in (A, B, C)]
        for source in fresh:
            restarted.sources.register(source)
        handle = self.registry.start(restarted, self.location)
        try:
            self.assertEqual(handle.signal.latest, 100)
            adopted = resume_sources(handle.store, fresh)
            self.assertEqual(adopted[A], {"p0": po(12)})
            self.assertEqual(fresh[1].current_offsets(), {"p0": po(5)})
            self.assertEqual(resume_snapshot(handle.store)[C], {})
        finally:
            self.registry.stop(restarted)


class TestCheckpointScenarioOnFiles(TestCheckpointScenario):
    location_name = "progress-dir"


if __name__ == "__main__":
    unittest.main()
