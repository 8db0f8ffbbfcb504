"""
Pydantic models for YAML job configuration validation.
Provides schema validation with clear error messages for checkpointed jobs.
"""

from __future__ import annotations
from typing import List, Optional
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from stream_checkpoint.core.models import RegressionPolicy


class JobSettings(BaseModel):
    """Configuration for a checkpointed streaming job."""
    id: str = Field(..., description="Unique identifier for the job")
    progress_location: str = Field(..., description="Where commit records are kept (memory://, sqlite:///, file:///)")
    batch_interval_ms: int = Field(2000, ge=10, le=3_600_000, description="Micro-batch interval in milliseconds")
    regression_policy: RegressionPolicy = Field(RegressionPolicy.WARN, description="warn or strict")
    retain_commits: Optional[int] = Field(None, ge=1, description="Keep only this many commit records")
    wait_timeout_s: float = Field(30.0, gt=0, description="Default deadline when waiting on progress")

    @field_validator('id', 'progress_location')
    @classmethod
    def validate_not_blank(cls, v):
        if not v.strip():
            raise ValueError('must not be blank')
        return v.strip()


class SourceSettings(BaseModel):
    """Configuration for one synthetic offset source."""
    namespace: str = Field(..., description="Source namespace, e.g. the event hub or topic")
    instance_id: int = Field(0, ge=0, description="Instance id within the namespace")
    partitions: int = Field(1, ge=1, le=1024, description="Number of partitions")
    events_per_batch: int = Field(10, ge=0, description="Events consumed per partition per batch")


class ScheduleSettings(BaseModel):
    """Configuration for locally driven execution."""
    enabled: bool = Field(False, description="Drive batches on the interval with a scheduler")
    max_batches: Optional[int] = Field(None, ge=1, description="Stop after this many batches")

    @model_validator(mode='after')
    def validate_schedule(self):
        if not self.enabled and self.max_batches is None:
            self.max_batches = 1
        return self


class CheckpointConfig(BaseModel):
    """Root configuration model for checkpointed jobs."""
    job: JobSettings
    sources: List[SourceSettings] = Field(default_factory=list)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)

    @model_validator(mode='after')
    def validate_unique_sources(self):
        seen = set()
        for src in self.sources:
            key = (src.namespace, src.instance_id)
            if key in seen:
                raise ValueError(f'Duplicate source {src.namespace}/{src.instance_id}')
            seen.add(key)
        return self


def load_and_validate_config(config_path: str) -> CheckpointConfig:
    """
    Load and validate a job configuration from YAML file.

    Args:
        config_path: Path to the YAML configuration file

    Returns:
        Validated CheckpointConfig object

    Raises:
        ValueError: If configuration is invalid or the YAML is malformed
        FileNotFoundError: If config file doesn't exist
    """
    import yaml

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            raw_config = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_path}: {e}")

    if not isinstance(raw_config, dict):
        raise ValueError(f"Configuration in {config_path} must be a mapping")

    try:
        return CheckpointConfig(**raw_config)
    except ValidationError as e:
        # Format validation errors nicely
        error_messages = []
        for error in e.errors():
            field_path = '.'.join(str(loc) for loc in error['loc'])
            error_messages.append(f"  {field_path}: {error['msg']}")

        raise ValueError(
            f"Configuration validation failed for {config_path}:\n" +
            '\n'.join(error_messages)
        ) from e


def config_to_runtime(config: CheckpointConfig) -> tuple:
    """
    Convert validated config to the objects the framework runs with.

    Returns:
        Tuple of (JobContext, list of InMemoryOffsetSource, partitions per source key)
    """
    from stream_checkpoint.coordinator.lifecycle import JobContext
    from stream_checkpoint.core.models import SourceKey
    from stream_checkpoint.sources.memory import InMemoryOffsetSource

    job = JobContext(job_id=config.job.id)
    sources = []
    layout = {}
    for settings in config.sources:
        key = SourceKey(namespace=settings.namespace, instance_id=settings.instance_id)
        source = InMemoryOffsetSource(key)
        job.sources.register(source)
        sources.append(source)
        layout[key] = (settings.partitions, settings.events_per_batch)

    return job, sources, layout
