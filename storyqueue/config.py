"""storyqueue configuration system.

Loads and validates configuration from ~/.storyqueue/config.json.
Uses Pydantic for schema validation with sensible defaults.

Per-type and per-category tables are keyed by the enum *values*
("story_generation", "ai_service", ...) so the JSON file stays readable.

Usage:
    from storyqueue.config import get_config, save_config

    config = get_config()
    print(config.queue.max_concurrent_tasks)

    # Modify and save
    config.queue.max_concurrent_tasks = 10
    save_config(config)
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from storyqueue.errors.categories import ErrorCategory

logger = logging.getLogger(__name__)

CONFIG_PATH = Path.home() / ".storyqueue" / "config.json"

# Current config schema version for migration tracking
CONFIG_VERSION = 1

# Fallbacks for task types missing from the per-type tables
DEFAULT_TIMEOUT_SECONDS = 300
DEFAULT_ESTIMATED_SECONDS = 60


def _key(value: str) -> str:
    # str-mixin enums stringify as "TaskType.EXPORT"; tables use the value
    return str(getattr(value, "value", value))


class RetryPolicy(BaseModel):
    """Back-off policy for one error category.

    Attributes:
        max_attempts: Attempts allowed for in-process retries of an operation.
        base_delay_seconds: Delay before the first retry.
        max_delay_seconds: Upper bound on any single delay.
        backoff_multiplier: Growth factor between consecutive attempts.
        jitter: Scale the delay by a random factor in [0.5, 1.0).
    """

    max_attempts: int = Field(default=3, ge=1, le=20)
    base_delay_seconds: float = Field(default=5.0, ge=0.0)
    max_delay_seconds: float = Field(default=60.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter: bool = True


def _default_retry_policies() -> dict[str, RetryPolicy]:
    return {
        ErrorCategory.DATABASE.value: RetryPolicy(
            max_attempts=3, base_delay_seconds=1, max_delay_seconds=10, backoff_multiplier=2
        ),
        ErrorCategory.EXTERNAL_SERVICE.value: RetryPolicy(
            max_attempts=2, base_delay_seconds=2, max_delay_seconds=8, backoff_multiplier=2
        ),
        ErrorCategory.AI_SERVICE.value: RetryPolicy(
            max_attempts=2, base_delay_seconds=3, max_delay_seconds=6, backoff_multiplier=1.5
        ),
        ErrorCategory.STORY_GENERATION.value: RetryPolicy(
            max_attempts=1,
            base_delay_seconds=5,
            max_delay_seconds=5,
            backoff_multiplier=1,
            jitter=False,
        ),
    }


class QueueConfig(BaseModel):
    """Scheduler, retry and retention settings.

    Attributes:
        max_concurrent_tasks: Global cap on simultaneously running tasks.
        poll_interval_seconds: Seconds between scheduler ticks when idle.
        default_max_retries: Retry budget for tasks enqueued without one.
        timeout_seconds: Per-type processor timeout.
        estimated_processing_seconds: Per-type static estimate used for
            queue waits and as the task's estimated_time.
        retry_policies: Back-off policy per error category.
        default_retry_policy: Policy for categories missing from retry_policies.
        retention_days: Age after which terminal tasks are deleted by cleanup.
        metrics_window_hours: Trailing window used for queue averages.
        orphan_grace_seconds: Slack added to the type timeout before a
            RUNNING task is considered orphaned.
        orphan_check_interval_seconds: How often a running manager sweeps for
            orphaned RUNNING tasks.
        recover_on_start: Requeue orphaned RUNNING tasks when the manager starts.
        preempt_on_cancel: Cancel the running coroutine when its task is canceled.
    """

    max_concurrent_tasks: int = Field(default=5, ge=1, le=100)
    poll_interval_seconds: float = Field(default=5.0, gt=0.0, le=300.0)
    default_max_retries: int = Field(default=3, ge=0, le=10)
    timeout_seconds: dict[str, float] = Field(
        default_factory=lambda: {"story_generation": 300, "analysis": 180, "export": 120}
    )
    estimated_processing_seconds: dict[str, int] = Field(
        default_factory=lambda: {"story_generation": 120, "analysis": 60, "export": 30}
    )
    retry_policies: dict[str, RetryPolicy] = Field(default_factory=_default_retry_policies)
    default_retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    retention_days: int = Field(default=7, ge=1)
    metrics_window_hours: int = Field(default=24, ge=1)
    orphan_grace_seconds: float = Field(default=60.0, ge=0.0)
    orphan_check_interval_seconds: float = Field(default=60.0, gt=0.0)
    recover_on_start: bool = True
    preempt_on_cancel: bool = False

    def timeout_for(self, task_type: str) -> float:
        """Processor timeout in seconds for a task type."""
        return float(self.timeout_seconds.get(_key(task_type), DEFAULT_TIMEOUT_SECONDS))

    def estimate_for(self, task_type: str) -> int | None:
        """Static processing estimate for a task type, or None if not configured."""
        return self.estimated_processing_seconds.get(_key(task_type))

    def policy_for(self, category: ErrorCategory | str) -> RetryPolicy:
        """Retry policy for an error category."""
        return self.retry_policies.get(_key(category), self.default_retry_policy)


class NotificationConfig(BaseModel):
    """Buffered notification settings.

    Attributes:
        max_events_per_task: Events kept per task and per owner.
        event_retention_hours: Events older than this are purged.
        max_system_messages: System-wide messages kept.
        purge_interval_seconds: Minimum time between full retention sweeps.
    """

    max_events_per_task: int = Field(default=50, ge=1, le=10000)
    event_retention_hours: int = Field(default=24, ge=1)
    max_system_messages: int = Field(default=100, ge=1)
    purge_interval_seconds: float = Field(default=300.0, ge=0.0)


class StoryQueueConfig(BaseModel):
    """storyqueue configuration schema.

    Attributes:
        config_version: Schema version for migration tracking.
        database_path: SQLite database used by the CLI and the default runtime.
        queue: Scheduler and retry settings.
        notifications: Buffered notification settings.
    """

    config_version: int = CONFIG_VERSION
    database_path: str = str(Path.home() / ".storyqueue" / "tasks.db")
    queue: QueueConfig = Field(default_factory=QueueConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)


# Module-level singleton with thread safety
_config: StoryQueueConfig | None = None
_config_lock = threading.Lock()


def load_config(config_path: Path | None = None) -> StoryQueueConfig:
    """Load configuration from file, return defaults if missing/invalid.

    Args:
        config_path: Optional path to config file. Defaults to ~/.storyqueue/config.json.

    Returns:
        StoryQueueConfig instance with loaded or default values.
    """
    path = config_path or CONFIG_PATH

    if not path.exists():
        logger.debug(f"Config file not found at {path}, using defaults")
        return StoryQueueConfig()

    try:
        with path.open() as f:
            data: dict[str, Any] = json.load(f)
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in config file {path}: {e}, using defaults")
        return StoryQueueConfig()
    except OSError as e:
        logger.warning(f"Cannot read config file {path}: {e}, using defaults")
        return StoryQueueConfig()

    data["config_version"] = CONFIG_VERSION

    try:
        return StoryQueueConfig.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Config validation failed: {e}, using defaults")
        return StoryQueueConfig()


def save_config(config: StoryQueueConfig, config_path: Path | None = None) -> bool:
    """Save configuration to file.

    Args:
        config: Configuration to save.
        config_path: Optional path to config file. Defaults to ~/.storyqueue/config.json.

    Returns:
        True if saved successfully, False otherwise.
    """
    path = config_path or CONFIG_PATH

    try:
        path.parent.mkdir(parents=True, exist_ok=True)

        with path.open("w") as f:
            json.dump(config.model_dump(), f, indent=2)

        os.chmod(path, 0o600)

        logger.debug(f"Configuration saved to {path}")
        return True

    except OSError as e:
        logger.error(f"Failed to save config to {path}: {e}")
        return False


def get_config() -> StoryQueueConfig:
    """Get singleton configuration instance.

    Uses double-check locking for thread safety.

    Returns:
        Shared StoryQueueConfig instance.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_config()
    return _config


def reset_config() -> None:
    """Reset singleton configuration for testing."""
    global _config
    with _config_lock:
        _config = None


__all__ = [
    "CONFIG_PATH",
    "CONFIG_VERSION",
    "NotificationConfig",
    "QueueConfig",
    "RetryPolicy",
    "StoryQueueConfig",
    "get_config",
    "load_config",
    "reset_config",
    "save_config",
]
