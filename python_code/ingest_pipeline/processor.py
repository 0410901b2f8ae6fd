"""
Per-message orchestration: persist, notify, acknowledge.

Each delivery attempt walks RECEIVED -> STORED -> NOTIFIED -> ACKNOWLEDGED,
or stops in FAILED at whichever step went wrong. A message is deleted from
the queue only after both the write and the publish succeeded; anything else
leaves it for the queue to redeliver (or dead-letter).
"""

import time
from concurrent.futures import Executor, Future, wait
from typing import Callable, List, Optional

from aws_lambda_powertools import Logger

from .consumer import QueueConsumer
from .core import describe_error, storage_key_for
from .errors import PipelineError
from .metrics import PipelineMetrics
from .model import ErrorKind, Message, MessageState, NotificationEvent, ProcessingOutcome
from .notifications import NotificationPublisher
from .storage import StorageWriter

CompletionCallback = Callable[[Message, ProcessingOutcome], None]


class MessageProcessor:
    """
    Runs the persistence state machine for individual messages.

    The processor holds no per-message state, so a single instance can serve
    every worker thread of the pool.
    """

    def __init__(
        self,
        storage: StorageWriter,
        notifier: NotificationPublisher,
        queue: QueueConsumer,
        logger: Logger,
        metrics: Optional[PipelineMetrics] = None,
        key_prefix: str = "",
    ):
        self._storage = storage
        self._notifier = notifier
        self._queue = queue
        self._logger = logger
        self._metrics = metrics
        self._key_prefix = key_prefix

    def key_for(self, message: Message) -> str:
        return storage_key_for(message.id, self._key_prefix)

    def process(self, message: Message) -> ProcessingOutcome:
        """
        Processes one delivery attempt. Never raises.

        Returns:
            The outcome; `success` is True only for ACKNOWLEDGED.
        """
        started = time.monotonic()
        key = self.key_for(message)
        state = MessageState.RECEIVED
        extra = {"messageId": message.id, "storageKey": key, "receiveCount": message.receive_count}

        if message.receive_count > 1:
            self._logger.info("Processing redelivered message.", extra=extra)
            self._record("redelivered")

        try:
            with self._queue.visibility_guard(message):
                result = self._storage.write(key, message.body)
                state = MessageState.STORED
                self._transition(state, extra)
                if result.skipped:
                    self._record("duplicate_write")

                self._notifier.publish(NotificationEvent(source_message_id=message.id, storage_key=key))
                state = MessageState.NOTIFIED
                self._transition(state, extra)

                self._queue.delete_message(message)
                state = MessageState.ACKNOWLEDGED
        except PipelineError as e:
            return self._fail(message, key, state, e.kind, started, dict(extra, **describe_error(e)))
        except Exception as e:
            self._logger.exception("Unexpected error while processing message.", extra=dict(extra, state=state.value))
            return self._fail(
                message, key, state, ErrorKind.UNEXPECTED, started,
                dict(extra, errorKind=ErrorKind.UNEXPECTED.value, errorType=type(e).__name__, error=str(e)),
            )

        outcome = ProcessingOutcome(
            message_id=message.id,
            success=True,
            state=state,
            storage_key=key,
            latency_ms=self._elapsed_ms(started),
        )
        self._transition(state, dict(extra, latency_ms=outcome.latency_ms))
        return outcome

    def submit_batch(
        self,
        messages: List[Message],
        executor: Executor,
        on_complete: Optional[CompletionCallback] = None,
    ) -> List[Future]:
        """
        Fans a batch out onto `executor`, one independent task per message.

        Args:
            messages: The received batch.
            executor: The shared, bounded worker pool.
            on_complete: Called with (message, outcome) after the terminal
                         transition of each message.

        Returns:
            One future per message, resolving to its ProcessingOutcome.
        """

        def _run(message: Message) -> ProcessingOutcome:
            outcome = self.process(message)
            if on_complete is not None:
                try:
                    on_complete(message, outcome)
                except Exception:
                    self._logger.exception("Completion callback failed.", extra={"messageId": message.id})
            return outcome

        return [executor.submit(_run, message) for message in messages]

    def process_batch(self, messages: List[Message], executor: Executor) -> List[ProcessingOutcome]:
        """Submits a batch and waits for every message to reach a terminal state."""
        futures = self.submit_batch(messages, executor)
        wait(futures)
        return [future.result() for future in futures]

    # --- Helpers ---

    def _fail(
        self,
        message: Message,
        key: str,
        state: MessageState,
        kind: ErrorKind,
        started: float,
        extra: dict,
    ) -> ProcessingOutcome:
        outcome = ProcessingOutcome(
            message_id=message.id,
            success=False,
            state=MessageState.FAILED,
            storage_key=key,
            error=kind,
            latency_ms=self._elapsed_ms(started),
        )
        log_extra = dict(extra, state=MessageState.FAILED.value, failedAfter=state.value, latency_ms=outcome.latency_ms)
        if kind == ErrorKind.RECEIPT_EXPIRED:
            self._logger.warning("Receipt expired; abandoning message for redelivery.", extra=log_extra)
        else:
            self._logger.error(f"Message processing {outcome.label}; leaving it on the queue.", extra=log_extra)
        self._record(outcome.label)
        return outcome

    def _transition(self, state: MessageState, extra: dict) -> None:
        self._logger.info(f"Message {state.value}.", extra=dict(extra, state=state.value))
        self._record(state.value)

    def _record(self, label: str) -> None:
        if self._metrics is not None:
            self._metrics.record(label)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
