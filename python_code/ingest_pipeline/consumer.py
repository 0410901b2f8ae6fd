"""
SQS queue consumer.

Owns the long-poll receive loop for one worker, the deletion of processed
messages and the visibility heartbeat that keeps receipts valid while their
messages are still being worked on.
"""

import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Protocol

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_sqs import SQSClient

from .config import MAX_BATCH_SIZE, MAX_POLL_WAIT_SECONDS
from .core import RetryPolicy, backoff_delay, call_with_retries
from .errors import PipelineError, ShutdownInterrupt, classify_error
from .model import Message

# SQS refuses visibility timeouts above 12 hours.
MAX_VISIBILITY_TIMEOUT_SECONDS = 43200


class CapacityGate(Protocol):
    """The part of the in-flight tracker a receive loop needs."""

    def reserve(self, max_slots: int, timeout: float) -> int: ...

    def release(self, slots: int) -> None: ...


class VisibilityHeartbeat:
    """
    Periodically extends the visibility timeout of messages still in flight.

    Every tracked message whose visibility was last set more than `interval`
    seconds ago is extended by `visibility_timeout` seconds from now. Failures
    are tolerated: the message simply becomes visible again and is redelivered.
    """

    def __init__(
        self,
        consumer: "QueueConsumer",
        visibility_timeout: int,
        interval: float,
        logger: Logger,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._consumer = consumer
        self._visibility_timeout = visibility_timeout
        self._interval = interval
        self._logger = logger
        self._clock = clock
        self._lock = threading.Lock()
        self._tracked: Dict[str, List] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def track(self, message: Message) -> None:
        with self._lock:
            self._tracked[message.receipt_token] = [message, self._clock()]

    def untrack(self, message: Message) -> None:
        with self._lock:
            self._tracked.pop(message.receipt_token, None)

    @property
    def tracked_count(self) -> int:
        with self._lock:
            return len(self._tracked)

    def beat(self, now: Optional[float] = None) -> int:
        """
        Extends every tracked message that is due. Returns how many were due.
        """
        now = self._clock() if now is None else now
        with self._lock:
            due = [entry[0] for entry in self._tracked.values() if now - entry[1] >= self._interval]

        for message in due:
            if self._consumer.extend_visibility(message, self._visibility_timeout):
                with self._lock:
                    entry = self._tracked.get(message.receipt_token)
                    if entry is not None:
                        entry[1] = now
        return len(due)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        tick = max(0.1, min(self._interval / 2, 5.0))

        def _loop():
            while not self._stop.wait(tick):
                try:
                    self.beat()
                except Exception:
                    self._logger.exception("Visibility heartbeat iteration failed.")

        self._thread = threading.Thread(target=_loop, name=f"{self._consumer.name}-heartbeat", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None


class QueueConsumer:
    """
    One receive loop against the source queue, plus the acknowledgment calls
    for the messages it hands out.
    """

    def __init__(
        self,
        sqs_client: SQSClient,
        queue_url: str,
        logger: Logger,
        visibility_timeout: int = 60,
        heartbeat_interval: Optional[float] = None,
        delete_retry_policy: RetryPolicy = RetryPolicy(max_attempts=3),
        receive_backoff_base: float = 0.5,
        receive_backoff_max: float = 20.0,
        name: str = "consumer-0",
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._sqs = sqs_client
        self._queue_url = queue_url
        self._logger = logger
        self._visibility_timeout = visibility_timeout
        self._delete_policy = delete_retry_policy
        self._receive_backoff_base = receive_backoff_base
        self._receive_backoff_max = receive_backoff_max
        self._sleep = sleep
        self.name = name
        self.heartbeat = VisibilityHeartbeat(
            self,
            visibility_timeout=visibility_timeout,
            interval=heartbeat_interval if heartbeat_interval is not None else visibility_timeout / 2,
            logger=logger,
        )

    # --- Queue capability ---

    def receive_batch(self, max_messages: int, wait_timeout: int) -> List[Message]:
        """
        Long-polls for up to `max_messages` messages.

        Returns an empty list when the wait times out; that is not an error.

        Raises:
            PipelineError: The queue could not be reached or refused the call.
        """
        try:
            response = self._sqs.receive_message(
                QueueUrl=self._queue_url,
                MaxNumberOfMessages=max(1, min(max_messages, MAX_BATCH_SIZE)),
                WaitTimeSeconds=max(0, min(wait_timeout, MAX_POLL_WAIT_SECONDS)),
                VisibilityTimeout=self._visibility_timeout,
                AttributeNames=["All"],
            )
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, "sqs.receive_message") from e

        return [Message.from_sqs(raw) for raw in response.get("Messages", [])]

    def extend_visibility(self, message: Message, duration: int) -> bool:
        """
        Best-effort visibility change. Failures are logged and never raised.

        Returns:
            True if the queue accepted the change.
        """
        duration = max(0, min(int(duration), MAX_VISIBILITY_TIMEOUT_SECONDS))
        try:
            self._sqs.change_message_visibility(
                QueueUrl=self._queue_url,
                ReceiptHandle=message.receipt_token,
                VisibilityTimeout=duration,
            )
            return True
        except (ClientError, BotoCoreError) as e:
            error = classify_error(e, "sqs.change_message_visibility")
            self._logger.warning(
                "Could not change message visibility; it may be redelivered.",
                extra={"messageId": message.id, "duration": duration, "errorKind": error.kind.value, "error": str(error)},
            )
            return False

    def release(self, message: Message) -> bool:
        """Makes a message visible again right away so another consumer can take it."""
        return self.extend_visibility(message, 0)

    def delete_message(self, message: Message) -> None:
        """
        Acknowledges a message, retrying transient failures locally.

        Raises:
            ReceiptExpiredError: The receipt is no longer valid.
            TransientIOError: The delete kept failing; the message will be
                              redelivered by the queue.
            PermanentError: The queue refused the delete outright.
        """
        call_with_retries(
            lambda: self._sqs.delete_message(QueueUrl=self._queue_url, ReceiptHandle=message.receipt_token),
            operation="sqs.delete_message",
            policy=self._delete_policy,
            logger=self._logger,
            sleep=self._sleep,
            extra={"messageId": message.id},
        )

    @contextmanager
    def visibility_guard(self, message: Message) -> Iterator[None]:
        """Keeps `message` invisible to other consumers for the duration of the block."""
        self.heartbeat.track(message)
        try:
            yield
        finally:
            self.heartbeat.untrack(message)

    # --- Receive loop ---

    def run(
        self,
        dispatch: Callable[[List[Message]], None],
        gate: CapacityGate,
        stop_event: threading.Event,
        batch_size: int = MAX_BATCH_SIZE,
        wait_timeout: int = MAX_POLL_WAIT_SECONDS,
    ) -> None:
        """
        Receives batches until `stop_event` is set.

        Capacity is reserved from `gate` before each receive, so the loop
        pauses while the global in-flight cap is reached. Receive failures
        are retried with exponential backoff, as are unexpected errors, which
        are logged with their traceback; the loop never exits on them. A batch
        that could not be dispatched is released back to the queue.
        `dispatch` raises ShutdownInterrupt once it no longer accepts work;
        the batch in hand is then released back to the queue.
        """
        self._logger.info("Consumer loop started.", extra={"consumer": self.name, "queueUrl": self._queue_url})
        failures = 0

        while not stop_event.is_set():
            slots = gate.reserve(batch_size, timeout=1.0)
            if not slots:
                continue

            # Slots this iteration still owns, and the batch not yet handed off.
            held = slots
            pending: List[Message] = []
            try:
                messages = self.receive_batch(slots, wait_timeout)
                failures = 0
                if len(messages) < slots:
                    gate.release(slots - len(messages))
                held = len(messages)
                pending = messages
                if not messages:
                    continue

                if stop_event.is_set():
                    self._release_batch(messages, gate)
                    break

                self._logger.debug("Received batch.", extra={"consumer": self.name, "count": len(messages)})
                dispatch(messages)
                held = 0
                pending = []
            except ShutdownInterrupt:
                self._release_batch(pending, gate)
                break
            except PipelineError as e:
                self._return_unused(pending, held, gate)
                delay = backoff_delay(failures, self._receive_backoff_base, self._receive_backoff_max)
                failures += 1
                self._logger.error(
                    f"Receive failed; backing off {delay:.2f}s.",
                    extra={"consumer": self.name, "errorKind": e.kind.value, "error": str(e), "attempt": failures},
                )
                stop_event.wait(delay)
            except Exception:
                self._return_unused(pending, held, gate)
                delay = backoff_delay(failures, self._receive_backoff_base, self._receive_backoff_max)
                failures += 1
                self._logger.exception(
                    f"Unexpected error in receive loop; backing off {delay:.2f}s.",
                    extra={"consumer": self.name, "attempt": failures},
                )
                stop_event.wait(delay)

        self._logger.info("Consumer loop stopped.", extra={"consumer": self.name})

    def _return_unused(self, messages: List[Message], slots: int, gate: CapacityGate) -> None:
        for message in messages:
            self.release(message)
        gate.release(slots)

    def _release_batch(self, messages: List[Message], gate: CapacityGate) -> None:
        self._return_unused(messages, len(messages), gate)
        self._logger.info(
            "Shutdown in progress; released received batch for redelivery.",
            extra={"consumer": self.name, "count": len(messages)},
        )
