"""
Data models for the Ingest Pipeline.

This module defines the core data structures passed between the consumer,
the processor and the storage/notification adapters. Using dataclasses and
TypedDicts keeps the data contracts explicit, statically checked by mypy, and
self-documenting.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, TypedDict


class SQSEventRecord(TypedDict):
    """
    Represents the structure of a single SQS message record from a Lambda event.

    This provides static type checking for message attributes, ensuring that any
    access to keys like 'messageId' or 'receiptHandle' is validated by mypy.
    """

    messageId: str
    receiptHandle: str
    body: str
    attributes: Dict[str, str]
    # Other SQS attributes are available but are not used by this application.


class MessageState(Enum):
    """Lifecycle of a single delivery attempt inside the processor."""

    RECEIVED = "received"
    STORED = "stored"
    NOTIFIED = "notified"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"


class ErrorKind(Enum):
    """Why a delivery attempt ended in MessageState.FAILED."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RECEIPT_EXPIRED = "receipt_expired"
    UNEXPECTED = "unexpected"


class EventStatus(Enum):
    SUCCESS = "Success"


def _parse_sent_timestamp(attributes: Dict[str, str]) -> datetime:
    raw = attributes.get("SentTimestamp")
    if raw is None:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class Message:
    """
    A single delivery attempt of a queue message.

    Attributes:
        id: The queue-assigned message id. Stable across redeliveries.
        body: The raw payload.
        receipt_token: Opaque handle for this delivery attempt. Only the
                       processor may delete or extend it.
        receive_count: How many times the queue has delivered this message.
        enqueue_time: When the producer sent the message (UTC).
    """

    id: str
    body: bytes
    receipt_token: str = field(repr=False)
    receive_count: int = 1
    enqueue_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_sqs(cls, raw: Dict[str, Any]) -> "Message":
        """Builds a Message from one entry of an SQS ReceiveMessage response."""
        attributes = raw.get("Attributes", {})
        return cls(
            id=raw["MessageId"],
            body=raw.get("Body", "").encode("utf-8"),
            receipt_token=raw["ReceiptHandle"],
            receive_count=int(attributes.get("ApproximateReceiveCount", "1")),
            enqueue_time=_parse_sent_timestamp(attributes),
        )

    @classmethod
    def from_lambda_record(cls, record: SQSEventRecord) -> "Message":
        """Builds a Message from a Lambda SQS event record (camelCase keys)."""
        attributes = record.get("attributes", {})
        return cls(
            id=record["messageId"],
            body=record["body"].encode("utf-8"),
            receipt_token=record["receiptHandle"],
            receive_count=int(attributes.get("ApproximateReceiveCount", "1")),
            enqueue_time=_parse_sent_timestamp(attributes),
        )


@dataclass(frozen=True)
class WriteResult:
    """
    The outcome of a successful StorageWriter.write call.

    Attributes:
        key: The object key that now holds the payload.
        checksum: SHA256 hex digest of the payload.
        skipped: True when an identical object was already stored and the
                 put was not repeated.
    """

    key: str
    checksum: str
    skipped: bool = False


@dataclass(frozen=True)
class NotificationEvent:
    """
    Announces that a message payload has been durably stored.

    Only ever created after a successful write, and never mutated afterwards.
    """

    source_message_id: str
    storage_key: str
    status: EventStatus = EventStatus.SUCCESS
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, str]:
        return {
            "sourceMessageId": self.source_message_id,
            "storageKey": self.storage_key,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass(frozen=True)
class ProcessingOutcome:
    """
    Transient result of one delivery attempt, used to decide between deleting
    and abandoning a message. Never persisted.
    """

    message_id: str
    success: bool
    state: MessageState
    storage_key: str
    error: Optional[ErrorKind] = None
    latency_ms: int = 0

    @property
    def label(self) -> str:
        """The observability label: 'acknowledged' or 'failed:<kind>'."""
        if self.success:
            return MessageState.ACKNOWLEDGED.value
        kind = self.error.value if self.error else ErrorKind.UNEXPECTED.value
        return f"failed:{kind}"
