"""
Configuration for the Ingest Pipeline.

All settings are read once from environment variables at startup and are
immutable for the lifetime of the process. Destination identifiers have no
defaults: a missing queue, bucket or topic fails fast.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .core import RetryPolicy

# SQS API limits.
MAX_BATCH_SIZE = 10
MAX_POLL_WAIT_SECONDS = 20


def get_env_var(name: str, default: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> str:
    """
    Gets an environment variable or raises a ValueError for fast-failure.

    Args:
        name: The name of the environment variable.
        default: An optional default value. If not provided, the variable is required.
        environ: Mapping to read from instead of os.environ.

    Returns:
        The value of the environment variable.

    Raises:
        ValueError: If the required environment variable is not set.
    """
    source = os.environ if environ is None else environ
    value = source.get(name, default)
    if value is None or value == "":
        if default is not None:
            return default
        raise ValueError(f"FATAL: Environment variable '{name}' is not set.")
    return value


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"FATAL: Environment variable '{name}' must be a boolean, got '{value}'.")


@dataclass(frozen=True)
class PipelineConfig:
    """Process-wide settings. See `from_env` for the variable names."""

    queue_url: str
    storage_bucket: str
    notification_topic_arn: str
    storage_key_prefix: str = ""
    storage_sse_type: str = "AES256"
    storage_verify_existing: bool = True
    endpoint_url: Optional[str] = None
    environment: str = "dev"
    log_level: str = "INFO"
    service_name: str = "ingest-pipeline"
    metrics_namespace: str = "IngestPipeline"
    consumer_count: int = 2
    max_concurrency: int = 16
    batch_size: int = MAX_BATCH_SIZE
    poll_wait_seconds: int = MAX_POLL_WAIT_SECONDS
    visibility_timeout_seconds: int = 60
    max_attempts: int = 5
    delete_max_attempts: int = 3
    backoff_base_seconds: float = 0.2
    backoff_max_seconds: float = 20.0
    shutdown_grace_seconds: float = 30.0
    metrics_flush_interval_seconds: float = 60.0

    def __post_init__(self):
        if self.consumer_count < 1:
            raise ValueError("FATAL: CONSUMER_COUNT must be at least 1.")
        if self.max_concurrency < 1:
            raise ValueError("FATAL: MAX_CONCURRENCY must be at least 1.")
        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"FATAL: BATCH_SIZE must be between 1 and {MAX_BATCH_SIZE}.")
        if not 0 <= self.poll_wait_seconds <= MAX_POLL_WAIT_SECONDS:
            raise ValueError(f"FATAL: POLL_WAIT_SECONDS must be between 0 and {MAX_POLL_WAIT_SECONDS}.")
        if self.visibility_timeout_seconds < 1:
            raise ValueError("FATAL: VISIBILITY_TIMEOUT_SECONDS must be at least 1.")
        if self.max_attempts < 1 or self.delete_max_attempts < 1:
            raise ValueError("FATAL: MAX_ATTEMPTS and DELETE_MAX_ATTEMPTS must be at least 1.")

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base_seconds,
            max_delay=self.backoff_max_seconds,
        )

    @property
    def delete_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.delete_max_attempts,
            base_delay=self.backoff_base_seconds,
            max_delay=self.backoff_max_seconds,
        )

    @property
    def heartbeat_interval_seconds(self) -> float:
        """Extend visibility once half of the timeout has elapsed."""
        return self.visibility_timeout_seconds / 2

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PipelineConfig":
        """
        Loads and validates the configuration from environment variables.

        Raises:
            ValueError: If a required variable is missing or a value is invalid.
        """

        def env(name: str, default: Optional[str] = None) -> str:
            return get_env_var(name, default, environ)

        endpoint_url = (os.environ if environ is None else environ).get("AWS_ENDPOINT_URL") or None

        try:
            return cls(
                queue_url=env("QUEUE_URL"),
                storage_bucket=env("STORAGE_BUCKET"),
                notification_topic_arn=env("NOTIFICATION_TOPIC_ARN"),
                storage_key_prefix=env("STORAGE_KEY_PREFIX", ""),
                storage_sse_type=env("STORAGE_SSE_TYPE", "AES256"),
                storage_verify_existing=_parse_bool(
                    "STORAGE_VERIFY_EXISTING", env("STORAGE_VERIFY_EXISTING", "true")
                ),
                endpoint_url=endpoint_url,
                environment=env("ENVIRONMENT", "dev"),
                log_level=env("LOG_LEVEL", "INFO").upper(),
                service_name=env("SERVICE_NAME", "ingest-pipeline"),
                metrics_namespace=env("METRICS_NAMESPACE", "IngestPipeline"),
                consumer_count=int(env("CONSUMER_COUNT", "2")),
                max_concurrency=int(env("MAX_CONCURRENCY", "16")),
                batch_size=int(env("BATCH_SIZE", str(MAX_BATCH_SIZE))),
                poll_wait_seconds=int(env("POLL_WAIT_SECONDS", str(MAX_POLL_WAIT_SECONDS))),
                visibility_timeout_seconds=int(env("VISIBILITY_TIMEOUT_SECONDS", "60")),
                max_attempts=int(env("MAX_ATTEMPTS", "5")),
                delete_max_attempts=int(env("DELETE_MAX_ATTEMPTS", "3")),
                backoff_base_seconds=float(env("BACKOFF_BASE_SECONDS", "0.2")),
                backoff_max_seconds=float(env("BACKOFF_MAX_SECONDS", "20")),
                shutdown_grace_seconds=float(env("SHUTDOWN_GRACE_SECONDS", "30")),
                metrics_flush_interval_seconds=float(env("METRICS_FLUSH_INTERVAL_SECONDS", "60")),
            )
        except ValueError as e:
            if str(e).startswith("FATAL"):
                raise
            raise ValueError(f"FATAL: Invalid pipeline configuration: {e}") from e
