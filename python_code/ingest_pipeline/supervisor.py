"""
Process-level lifecycle for the long-running pipeline.

The Supervisor owns the shared worker pool, one receive thread per consumer,
and the global cap on in-flight messages. On shutdown it stops receiving,
drains in-flight work up to a grace deadline and reports anything still
unfinished as abandoned (those messages stay un-acknowledged and are
redelivered by the queue).
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from aws_lambda_powertools import Logger
from mypy_boto3_sqs import SQSClient

from .config import PipelineConfig
from .consumer import QueueConsumer
from .errors import ShutdownInterrupt
from .metrics import PipelineMetrics
from .model import Message, ProcessingOutcome
from .notifications import NotificationPublisher
from .processor import MessageProcessor
from .storage import StorageWriter


class InFlightTracker:
    """
    Bounds the number of messages between receive and terminal state.

    Receive loops reserve slots before polling, so the cap holds even while
    several consumers poll concurrently. Received messages are then tracked
    until completion; unused reservations are released.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._count = 0
        self._peak = 0
        self._messages: Dict[str, Message] = {}
        self._cond = threading.Condition()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def count(self) -> int:
        with self._cond:
            return self._count

    @property
    def peak(self) -> int:
        with self._cond:
            return self._peak

    def reserve(self, max_slots: int, timeout: float) -> int:
        """
        Waits up to `timeout` for free capacity and reserves up to `max_slots`.

        Returns:
            The number of slots reserved; 0 if the cap stayed full.
        """
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._count >= self._capacity:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return 0
                self._cond.wait(remaining)
            slots = min(max_slots, self._capacity - self._count)
            self._count += slots
            self._peak = max(self._peak, self._count)
            return slots

    def release(self, slots: int) -> None:
        """Returns reserved slots that were never used for a message."""
        if slots <= 0:
            return
        with self._cond:
            self._count = max(0, self._count - slots)
            self._cond.notify_all()

    def track(self, message: Message) -> None:
        """Associates a reserved slot with a received message."""
        with self._cond:
            self._messages[message.receipt_token] = message

    def untrack(self, message: Message) -> None:
        """Forgets a message without freeing its slot; the caller releases the slot."""
        with self._cond:
            self._messages.pop(message.receipt_token, None)

    def complete(self, message: Message) -> None:
        """Frees the slot of a message that reached a terminal state."""
        with self._cond:
            if self._messages.pop(message.receipt_token, None) is not None:
                self._count = max(0, self._count - 1)
                self._cond.notify_all()

    def in_flight(self) -> List[Message]:
        with self._cond:
            return list(self._messages.values())

    def wait_idle(self, timeout: float) -> bool:
        """Waits until no tracked message remains. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._messages:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True


class Supervisor:
    """
    Runs `consumer_count` receive loops feeding one bounded worker pool.

    All capabilities (S3, SQS, SNS access) arrive already constructed; the
    Supervisor never creates SDK clients itself.
    """

    def __init__(
        self,
        config: PipelineConfig,
        sqs_client: SQSClient,
        storage: StorageWriter,
        notifier: NotificationPublisher,
        logger: Logger,
        metrics: Optional[PipelineMetrics] = None,
    ):
        self._config = config
        self._logger = logger
        self._metrics = metrics
        self._stop_event = threading.Event()
        self._tracker = InFlightTracker(config.max_concurrency)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._threads: List[threading.Thread] = []
        self._stopped = False
        # Guards the pool against submissions once shutdown has closed it.
        self._dispatch_lock = threading.Lock()
        self._closed = False

        self._consumers = [
            QueueConsumer(
                sqs_client,
                config.queue_url,
                logger,
                visibility_timeout=config.visibility_timeout_seconds,
                heartbeat_interval=config.heartbeat_interval_seconds,
                delete_retry_policy=config.delete_retry_policy,
                receive_backoff_base=config.backoff_base_seconds,
                receive_backoff_max=config.backoff_max_seconds,
                name=f"consumer-{index}",
            )
            for index in range(config.consumer_count)
        ]
        self._processors = [
            MessageProcessor(storage, notifier, consumer, logger, metrics, key_prefix=config.storage_key_prefix)
            for consumer in self._consumers
        ]

    @property
    def tracker(self) -> InFlightTracker:
        return self._tracker

    @property
    def consumers(self) -> List[QueueConsumer]:
        return list(self._consumers)

    @property
    def is_running(self) -> bool:
        return self._executor is not None and not self._stop_event.is_set()

    def start(self) -> None:
        if self._executor is not None:
            raise RuntimeError("Supervisor already started.")

        self._executor = ThreadPoolExecutor(
            max_workers=self._config.max_concurrency, thread_name_prefix="ingest-worker"
        )
        for consumer, processor in zip(self._consumers, self._processors):
            consumer.heartbeat.start()
            thread = threading.Thread(
                target=consumer.run,
                kwargs={
                    "dispatch": self._dispatcher(processor),
                    "gate": self._tracker,
                    "stop_event": self._stop_event,
                    "batch_size": self._config.batch_size,
                    "wait_timeout": self._config.poll_wait_seconds,
                },
                name=consumer.name,
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

        self._logger.info(
            "Supervisor started.",
            extra={"consumers": len(self._consumers), "max_concurrency": self._config.max_concurrency},
        )

    def _dispatcher(self, processor: MessageProcessor):
        def _dispatch(messages: List[Message]) -> None:
            with self._dispatch_lock:
                if self._closed:
                    raise ShutdownInterrupt()
                for message in messages:
                    self._tracker.track(message)
                try:
                    processor.submit_batch(messages, self._executor, on_complete=self._on_complete)
                except Exception:
                    for message in messages:
                        self._tracker.untrack(message)
                    raise

        return _dispatch

    def _on_complete(self, message: Message, outcome: ProcessingOutcome) -> None:
        self._tracker.complete(message)

    def request_shutdown(self) -> None:
        """Signals every receive loop to stop. Safe to call from a signal handler."""
        if not self._stop_event.is_set():
            self._logger.info("Shutdown requested.")
        self._stop_event.set()

    def run(self) -> List[Message]:
        """
        Starts the pipeline and blocks until shutdown is requested.

        Returns:
            The messages abandoned during shutdown.
        """
        if self._executor is None:
            self.start()
        interval = self._config.metrics_flush_interval_seconds
        while not self._stop_event.wait(interval):
            self._flush_metrics()
        return self.shutdown()

    def shutdown(self) -> List[Message]:
        """
        Stops receiving, drains in-flight messages and stops the pool.

        Returns:
            Messages that did not reach a terminal state within the grace
            period. They remain un-acknowledged on the queue.
        """
        if self._stopped:
            return []
        self._stopped = True
        self.request_shutdown()
        deadline = time.monotonic() + self._config.shutdown_grace_seconds

        # A receive loop may be in the middle of a long poll. One still polling
        # at the deadline releases its batch once the dispatcher is closed.
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))

        with self._dispatch_lock:
            self._closed = True

        drained = self._tracker.wait_idle(max(0.0, deadline - time.monotonic()))
        abandoned = [] if drained else self._tracker.in_flight()

        if self._executor is not None:
            self._executor.shutdown(wait=drained, cancel_futures=True)
        for consumer in self._consumers:
            consumer.heartbeat.stop()

        for message in abandoned:
            self._logger.error(
                "Message abandoned at shutdown; it will be redelivered.",
                extra={"messageId": message.id, "receiveCount": message.receive_count},
            )
        if self._metrics is not None and abandoned:
            self._metrics.record("abandoned", len(abandoned))

        self._logger.info("Supervisor stopped.", extra=dict(self.stats(), abandoned=len(abandoned)))
        self._flush_metrics()
        return abandoned

    def stats(self) -> Dict[str, int]:
        """Aggregate counters for external monitoring."""
        gauges = {"in_flight": self._tracker.count, "peak_in_flight": self._tracker.peak}
        if self._metrics is None:
            return gauges
        return self._metrics.snapshot(gauges)

    def _flush_metrics(self) -> None:
        if self._metrics is None:
            return
        self._metrics.gauge("InFlight", self._tracker.count)
        self._metrics.flush()
