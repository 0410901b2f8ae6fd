"""
Exception types and error classification for the Ingest Pipeline.

Provides:
- A typed exception hierarchy whose `kind` drives retry decisions
- `classify_error`, which maps botocore failures onto that hierarchy
"""

from typing import Optional

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .model import ErrorKind

# Error codes returned by S3, SQS and SNS that are worth retrying.
TRANSIENT_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "RequestThrottled",
        "RequestThrottledException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "SlowDown",
        "RequestTimeout",
        "RequestTimeoutException",
        "ServiceUnavailable",
        "InternalError",
        "InternalFailure",
        "KMSThrottlingException",
        "AWS.SimpleQueueService.ServiceUnavailable",
    }
)

RECEIPT_ERROR_CODES = frozenset(
    {
        "ReceiptHandleIsInvalid",
        "AWS.SimpleQueueService.ReceiptHandleIsInvalid",
    }
)

_TRANSIENT_BOTOCORE_ERRORS = (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        kind: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


class TransientIOError(PipelineError):
    """Network timeout, throttling or a 5xx. Retried with backoff."""

    kind = ErrorKind.TRANSIENT


class PermanentError(PipelineError):
    """Malformed input, authorization denial, invalid key. Never retried."""

    kind = ErrorKind.PERMANENT


class ReceiptExpiredError(PipelineError):
    """The receipt token is no longer valid; the message will be redelivered."""

    kind = ErrorKind.RECEIPT_EXPIRED


class ShutdownInterrupt(Exception):
    """Control signal asking the pipeline to drain and stop. Not an error."""


def _is_receipt_error(code: str, message: str) -> bool:
    if code in RECEIPT_ERROR_CODES:
        return True
    return code == "InvalidParameterValue" and "receipt handle" in message.lower()


def classify_error(exc: BaseException, operation: str) -> PipelineError:
    """
    Maps an exception raised by a boto3 call onto the pipeline taxonomy.

    Args:
        exc: The exception raised by the SDK call.
        operation: A short name of the call, used in the error message.

    Returns:
        A PipelineError subclass instance wrapping `exc`.
    """
    if isinstance(exc, PipelineError):
        return exc

    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "")
        message = error.get("Message", "")
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        context = {"operation": operation, "code": code, "status": status}

        if _is_receipt_error(code, message):
            return ReceiptExpiredError(f"{operation}: receipt handle rejected ({code})", exc, context)
        if code in TRANSIENT_ERROR_CODES or status == 429 or status >= 500:
            return TransientIOError(f"{operation}: transient failure ({code or status})", exc, context)
        return PermanentError(f"{operation}: request rejected ({code or status})", exc, context)

    if isinstance(exc, _TRANSIENT_BOTOCORE_ERRORS):
        return TransientIOError(f"{operation}: connection failure", exc, {"operation": operation})

    if isinstance(exc, BotoCoreError):
        # Parameter validation, missing credentials and the like.
        return PermanentError(f"{operation}: client error", exc, {"operation": operation})

    return PermanentError(f"{operation}: unexpected failure", exc, {"operation": operation})
