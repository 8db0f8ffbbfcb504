import unittest
from unittest.mock import Mock

from stream_checkpoint.coordinator.lifecycle import CoordinatorRegistry, JobContext
from stream_checkpoint.core.models import PartitionOffset, SourceKey
from stream_checkpoint.driver.local import LocalBatchDriver, SyntheticWorkload
from stream_checkpoint.sources.memory import InMemoryOffsetSource
from stream_checkpoint.utils.time import align_batch_time


class TestLocalBatchDriver(unittest.TestCase):
    def setUp(self):
        self.job = JobContext(job_id="driver-job")
        self.listener = Mock()
        self.job.listener_bus.add(self.listener)

    def test_failed_operation_is_reported_not_raised(self):
        def broken(batch_time):
            raise IOError("sink offline")

        driver = LocalBatchDriver(self.job, 1000, operations=[("ok", lambda t: None), ("sink", broken)])
        event = driver.run_batch(5000)

        self.assertIsNone(event.output_operations[0].failure_reason)
        self.assertIn("sink offline", event.output_operations[1].failure_reason)
        self.listener.on_batch_completed.assert_called_once_with(event)

    def test_batch_times_are_aligned_and_increasing(self):
        clock = Mock(side_effect=[10_250, 10_400, 12_100])
        driver = LocalBatchDriver(self.job, 1000, clock=clock)

        times = [driver.run_batch().batch_time for _ in range(3)]

        self.assertEqual(times, [10_000, 11_000, 12_000])
        self.assertEqual(driver.batches_run, 3)

    def test_start_after_skips_committed_batch_times(self):
        driver = LocalBatchDriver(self.job, 1000, clock=lambda: 10_500, start_after=10_000)
        self.assertEqual(driver.run_batch().batch_time, 11_000)

    def test_align_batch_time_rejects_bad_interval(self):
        self.assertEqual(align_batch_time(1234, 100), 1200)
        with self.assertRaises(ValueError):
            align_batch_time(1234, 0)


class TestDriverWithCoordinator(unittest.TestCase):
    def setUp(self):
        self.registry = CoordinatorRegistry()
        self.job = JobContext(job_id="synthetic")
        self.key = SourceKey("events", 0)
        self.source = InMemoryOffsetSource(self.key)
        self.job.sources.register(self.source)
        self.handle = self.registry.start(self.job, "memory://")

    def tearDown(self):
        self.registry.stop(self.job)

    def test_synthetic_workload_commits_staged_progress(self):
        workload = SyntheticWorkload(self.handle.store, [self.source], {self.key: (2, 5)})
        driver = LocalBatchDriver(self.job, 1000, operations=[("consume", workload)])

        driver.run_batch(1000)
        driver.run_batch(2000)

        record = self.handle.store.read(2000)
        self.assertEqual(record.snapshot[self.key], {"0": PartitionOffset(10, 10), "1": PartitionOffset(10, 10)})
        self.assertEqual(self.handle.signal.latest, 2000)

    def test_scheduled_run_stops_after_max_batches(self):
        workload = SyntheticWorkload(self.handle.store, [self.source], {self.key: (1, 1)})
        driver = LocalBatchDriver(self.job, 20, operations=[("consume", workload)])

        ran = driver.run(max_batches=3)

        self.assertEqual(ran, 3)
        self.assertEqual(len(self.handle.store.history()), 3)


if __name__ == "__main__":
    unittest.main()
