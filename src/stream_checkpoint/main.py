from __future__ import annotations

import sys

from stream_checkpoint.config_models import CheckpointConfig, config_to_runtime, load_and_validate_config
from stream_checkpoint.coordinator.lifecycle import CoordinatorRegistry
from stream_checkpoint.coordinator.recovery import resume_sources
from stream_checkpoint.core.factory import ComponentFactory, open_progress_store
from stream_checkpoint.core.models import CommitRecord
from stream_checkpoint.driver.local import LocalBatchDriver, SyntheticWorkload
from stream_checkpoint.utils.logging import setup_logging

USAGE = """Usage:
  stream-checkpoint show <job.yaml>
  stream-checkpoint history <job.yaml> [limit]
  stream-checkpoint run <job.yaml>"""


def format_record(record: CommitRecord) -> str:
    """Render a commit record as indented text."""
    lines = [f"batch {record.batch_time} (committed {record.committed_at_utc or 'n/a'})"]
    for key in sorted(record.snapshot):
        parts = record.snapshot[key]
        lines.append(f"  {key.as_str()}: {len(parts)} partition(s)")
        for partition in sorted(parts):
            po = parts[partition]
            lines.append(f"    {partition}: offset={po.offset} seq_no={po.seq_no}")
    return "\n".join(lines)


def show_latest(config: CheckpointConfig) -> int:
    store = open_progress_store(config.job.progress_location)
    try:
        record = store.read_latest()
    finally:
        store.close()
    if record is None:
        print(f"No commits for job '{config.job.id}' at {config.job.progress_location}")
        return 1
    print(format_record(record))
    return 0


def show_history(config: CheckpointConfig, limit: int) -> int:
    store = open_progress_store(config.job.progress_location)
    try:
        records = store.history(limit=limit)
    finally:
        store.close()
    for record in records:
        print(format_record(record))
    print(f"{len(records)} record(s)")
    return 0


def run_job(config: CheckpointConfig) -> int:
    """Run the job locally with synthetic sources, committing progress per batch."""
    setup_logging("configs/logging.yaml")

    job, sources, layout = config_to_runtime(config)
    registry = CoordinatorRegistry(
        ComponentFactory(
            regression_policy=config.job.regression_policy,
            retain_commits=config.job.retain_commits,
        )
    )
    handle = registry.start(job, config.job.progress_location)
    try:
        resume_sources(handle.store, sources)
        workload = SyntheticWorkload(handle.store, sources, layout)
        driver = LocalBatchDriver(
            job,
            config.job.batch_interval_ms,
            operations=[("consume", workload)],
            start_after=handle.signal.latest,
        )

        if config.schedule.enabled:
            print(f"Scheduling batches every {config.job.batch_interval_ms}ms")
            driver.run(max_batches=config.schedule.max_batches)
        else:
            for _ in range(config.schedule.max_batches or 1):
                event = driver.run_batch()
                if handle.coordinator.event_filter.admit(event).admitted:
                    record = handle.coordinator.wait_for_commit(
                        event.batch_time, timeout=config.job.wait_timeout_s
                    )
                    print(f"committed batch {record.batch_time}")

        latest = handle.store.read_latest()
        print(f"DONE: batches={driver.batches_run}")
        if latest is not None:
            print(format_record(latest))
    finally:
        registry.stop(job)
    return 0


def main() -> None:
    """Main entry point for the stream-checkpoint CLI."""
    if len(sys.argv) < 3:
        print(USAGE)
        raise SystemExit(2)

    command, job_path = sys.argv[1], sys.argv[2]
    try:
        config = load_and_validate_config(job_path)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        raise SystemExit(2)

    if command == "show":
        raise SystemExit(show_latest(config))
    if command == "history":
        limit = int(sys.argv[3]) if len(sys.argv) > 3 else 10
        raise SystemExit(show_history(config, limit))
    if command == "run":
        raise SystemExit(run_job(config))

    print(f"Unknown command: {command}\n{USAGE}")
    raise SystemExit(2)


if __name__ == "__main__":
    main()
