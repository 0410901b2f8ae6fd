"""Pytest fixtures for the ingest pipeline tests."""

import json
import threading
from typing import Any, Dict, List, Optional
from unittest.mock import Mock

import boto3
import pytest
from aws_lambda_powertools import Logger
from moto import mock_aws

from ingest_pipeline.consumer import QueueConsumer
from ingest_pipeline.core import RetryPolicy
from ingest_pipeline.metrics import PipelineMetrics
from ingest_pipeline.model import Message, WriteResult
from ingest_pipeline.notifications import NotificationPublisher
from ingest_pipeline.storage import StorageWriter

REGION = "us-east-1"
BUCKET = "ingest-landing"
QUEUE_NAME = "ingest-source"
TOPIC_NAME = "ingest-delivered"

# No waiting between attempts in tests.
FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def logger():
    return Logger(service="ingest-pipeline-test", level="DEBUG")


@pytest.fixture
def metrics():
    return PipelineMetrics(namespace="IngestPipelineTest", service="ingest-pipeline-test", environment="test")


@pytest.fixture
def make_message():
    """Factory for Message instances with unique receipt tokens."""
    counter = {"n": 0}

    def _make(message_id: str = "42", body: bytes = b"hello", receive_count: int = 1) -> Message:
        counter["n"] += 1
        return Message(
            id=message_id,
            body=body,
            receipt_token=f"receipt-{message_id}-{counter['n']}",
            receive_count=receive_count,
        )

    return _make


# --- Capability doubles ---


@pytest.fixture
def mock_storage():
    """StorageWriter double that succeeds and records every write."""
    storage = Mock(spec=StorageWriter)
    storage.write.side_effect = lambda key, payload: WriteResult(key=key, checksum="c0ffee")
    return storage


@pytest.fixture
def mock_notifier():
    notifier = Mock(spec=NotificationPublisher)
    notifier.publish.return_value = "sns-message-id"
    return notifier


@pytest.fixture
def mock_sqs_client():
    """A bare SQS client double for QueueConsumer unit tests."""
    client = Mock()
    client.receive_message.return_value = {}
    client.delete_message.return_value = {}
    client.change_message_visibility.return_value = {}
    return client


@pytest.fixture
def queue_consumer(mock_sqs_client, logger):
    return QueueConsumer(
        mock_sqs_client,
        "https://sqs.us-east-1.amazonaws.com/123456789012/ingest-source",
        logger,
        visibility_timeout=30,
        delete_retry_policy=FAST_RETRY,
        sleep=no_sleep,
    )


class FakeSQS:
    """
    Thread-safe in-memory stand-in for the SQS client used by the Supervisor
    tests. Hands out preloaded messages and records deletes.
    """

    def __init__(self, bodies: Optional[Dict[str, str]] = None):
        self._lock = threading.Lock()
        self._pending: List[Dict[str, Any]] = []
        self.deleted: List[str] = []
        self.visibility_changes: List[Dict[str, Any]] = []
        self.receive_calls = 0
        for message_id, body in (bodies or {}).items():
            self.add(message_id, body)

    def add(self, message_id: str, body: str) -> None:
        with self._lock:
            self._pending.append(
                {
                    "MessageId": message_id,
                    "ReceiptHandle": f"rh-{message_id}",
                    "Body": body,
                    "Attributes": {"ApproximateReceiveCount": "1", "SentTimestamp": "1700000000000"},
                }
            )

    def receive_message(self, QueueUrl, MaxNumberOfMessages, WaitTimeSeconds, **kwargs):
        with self._lock:
            self.receive_calls += 1
            batch = self._pending[:MaxNumberOfMessages]
            del self._pending[:MaxNumberOfMessages]
        return {"Messages": batch} if batch else {}

    def delete_message(self, QueueUrl, ReceiptHandle):
        with self._lock:
            self.deleted.append(ReceiptHandle)
        return {}

    def change_message_visibility(self, QueueUrl, ReceiptHandle, VisibilityTimeout):
        with self._lock:
            self.visibility_changes.append({"ReceiptHandle": ReceiptHandle, "VisibilityTimeout": VisibilityTimeout})
        return {}

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)


@pytest.fixture
def fake_sqs():
    return FakeSQS()


# --- moto-backed AWS ---


@pytest.fixture
def aws(monkeypatch):
    """Activates moto for S3, SQS and SNS with dummy credentials."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_REGION", REGION)
    monkeypatch.setenv("USE_MOTO", "1")
    with mock_aws():
        yield


@pytest.fixture
def aws_resources(aws):
    """Creates the bucket, source queue and topic (with a subscriber queue)."""
    s3 = boto3.client("s3", region_name=REGION)
    sqs = boto3.client("sqs", region_name=REGION)
    sns = boto3.client("sns", region_name=REGION)

    s3.create_bucket(Bucket=BUCKET)
    queue_url = sqs.create_queue(QueueName=QUEUE_NAME, Attributes={"VisibilityTimeout": "30"})["QueueUrl"]
    topic_arn = sns.create_topic(Name=TOPIC_NAME)["TopicArn"]

    subscriber_url = sqs.create_queue(QueueName=f"{TOPIC_NAME}-subscriber")["QueueUrl"]
    subscriber_arn = sqs.get_queue_attributes(QueueUrl=subscriber_url, AttributeNames=["QueueArn"])[
        "Attributes"
    ]["QueueArn"]
    sns.subscribe(TopicArn=topic_arn, Protocol="sqs", Endpoint=subscriber_arn)

    return {
        "s3": s3,
        "sqs": sqs,
        "sns": sns,
        "bucket": BUCKET,
        "queue_url": queue_url,
        "topic_arn": topic_arn,
        "subscriber_url": subscriber_url,
    }


def read_notifications(sqs_client, subscriber_url: str) -> List[Dict[str, Any]]:
    """Drains the subscriber queue and returns the published event payloads."""
    events = []
    while True:
        response = sqs_client.receive_message(QueueUrl=subscriber_url, MaxNumberOfMessages=10, WaitTimeSeconds=0)
        messages = response.get("Messages", [])
        if not messages:
            return events
        for raw in messages:
            body = json.loads(raw["Body"])
            if body.get("Type") == "Notification":
                body = json.loads(body["Message"])
            events.append(body)
            sqs_client.delete_message(QueueUrl=subscriber_url, ReceiptHandle=raw["ReceiptHandle"])


def queue_depth(sqs_client, queue_url: str) -> int:
    attrs = sqs_client.get_queue_attributes(
        QueueUrl=queue_url,
        AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
    )["Attributes"]
    return int(attrs["ApproximateNumberOfMessages"]) + int(attrs["ApproximateNumberOfMessagesNotVisible"])
