"""
Core business logic for the Ingest Pipeline.

These functions are designed to be "pure" and testable, containing no
direct AWS SDK calls (unless passed in as arguments) and no global state.
They receive all dependencies, including the Powertools logger, from their
callers, allowing them to be unit-tested in isolation.
"""

import hashlib
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from aws_lambda_powertools import Logger

from .errors import PipelineError, TransientIOError, classify_error

T = TypeVar("T")

STORAGE_KEY_TEMPLATE = "message-{message_id}.txt"


def storage_key_for(message_id: str, prefix: str = "") -> str:
    """
    Derives the deterministic storage key for a message id.

    The same id always yields the same key, so a redelivered message lands on
    the object it was written to the first time.

    Args:
        message_id: The queue message id.
        prefix: Optional key prefix. Surrounding slashes are ignored.

    Returns:
        The object key, e.g. 'message-42.txt' or 'inbound/message-42.txt'.
    """
    key = STORAGE_KEY_TEMPLATE.format(message_id=message_id)
    prefix = prefix.strip("/")
    return f"{prefix}/{key}" if prefix else key


def payload_checksum(payload: bytes) -> str:
    """Returns the SHA256 hex digest of a payload."""
    return hashlib.sha256(payload).hexdigest()


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff settings shared by the storage and notification calls.

    Attributes:
        max_attempts: Total attempts, including the first one.
        base_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound for any single delay, in seconds.
    """

    max_attempts: int = 5
    base_delay: float = 0.2
    max_delay: float = 20.0


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """
    Exponential backoff with jitter: 0.2s, 0.4s, 0.8s... + random jitter.

    Args:
        attempt: Zero-based index of the attempt that just failed.
        base_delay: The delay after the first failure.
        max_delay: Cap applied before jitter is added.
    """
    return min(base_delay * (2**attempt), max_delay) + random.uniform(0.0, 0.1)


def call_with_retries(
    fn: Callable[[], T],
    *,
    operation: str,
    policy: RetryPolicy,
    logger: Logger,
    sleep: Callable[[float], None] = time.sleep,
    extra: Optional[dict] = None,
) -> T:
    """
    Calls `fn`, retrying transient failures with exponential backoff.

    Any exception raised by `fn` is classified with `classify_error`. Permanent
    errors are raised on the first occurrence; transient errors are retried
    until `policy.max_attempts` is exhausted and the last one is raised.

    Args:
        fn: Zero-argument callable performing one SDK call.
        operation: Name used in log records and error messages.
        policy: The retry policy to apply.
        logger: The Powertools Logger instance for structured logging.
        sleep: Injected for tests.
        extra: Additional structured log fields.

    Returns:
        Whatever `fn` returns.

    Raises:
        PipelineError: The classified failure.
    """
    log_extra = dict(extra or {}, operation=operation)
    attempts = max(1, policy.max_attempts)

    for attempt in range(attempts):
        try:
            return fn()
        except Exception as e:
            error = classify_error(e, operation)
            if not error.is_retryable:
                raise error from e
            if attempt + 1 >= attempts:
                logger.error(
                    f"{operation} failed after {attempts} attempts.",
                    extra=dict(log_extra, attempt=attempt + 1, error=str(error)),
                )
                raise error from e

            wait_time = backoff_delay(attempt, policy.base_delay, policy.max_delay)
            logger.warning(
                f"Transient failure in {operation}; retrying in {wait_time:.2f}s.",
                extra=dict(log_extra, attempt=attempt + 1, error=str(error)),
            )
            sleep(wait_time)

    # Unreachable: the loop either returns or raises.
    raise TransientIOError(f"{operation}: retries exhausted")


def describe_error(error: PipelineError) -> dict:
    """Flattens an error into log-friendly fields."""
    return {
        "errorKind": error.kind.value,
        "errorType": type(error.cause or error).__name__,
        "error": str(error),
    }
