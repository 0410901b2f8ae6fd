"""
Main AWS Lambda handler for the Ingest Pipeline.

This module serves as the batch-triggered entry point for the function.
Its responsibilities include:
  - Loading and validating configuration from environment variables.
  - Initializing and caching the boto3 clients and pipeline components.
  - Receiving events from the SQS trigger.
  - Running every record through the same per-message state machine the
    long-running worker uses, then draining before returning.
  - Reporting partial batch failures and emitting the final metrics.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from aws_lambda_powertools import Logger
from aws_lambda_powertools.utilities.typing import LambdaContext

from . import clients
from .config import PipelineConfig
from .consumer import QueueConsumer
from .metrics import PipelineMetrics
from .model import Message, SQSEventRecord
from .notifications import NotificationPublisher
from .processor import MessageProcessor
from .storage import StorageWriter

# --- 1. SETUP: Logger and Cached Runtime ---

logger = Logger()


@dataclass
class Runtime:
    """Everything built once per execution environment (cold start)."""

    config: PipelineConfig
    processor: MessageProcessor
    consumer: QueueConsumer
    metrics: PipelineMetrics


RUNTIME: Optional[Runtime] = None


def build_runtime(config: PipelineConfig) -> Runtime:
    """
    Wires the pipeline components for one execution environment.

    Args:
        config: The validated configuration.

    Returns:
        A Runtime holding the processor and its collaborators.
    """
    logger.setLevel(config.log_level)
    s3, sqs, sns = clients.get_boto_clients(endpoint_url=config.endpoint_url)
    metrics = PipelineMetrics(config.metrics_namespace, config.service_name, config.environment)

    storage = StorageWriter(
        s3,
        config.storage_bucket,
        logger,
        retry_policy=config.retry_policy,
        sse_type=config.storage_sse_type,
        verify_existing=config.storage_verify_existing,
    )
    notifier = NotificationPublisher(sns, config.notification_topic_arn, logger, retry_policy=config.retry_policy)
    consumer = QueueConsumer(
        sqs,
        config.queue_url,
        logger,
        visibility_timeout=config.visibility_timeout_seconds,
        heartbeat_interval=config.heartbeat_interval_seconds,
        delete_retry_policy=config.delete_retry_policy,
        name="lambda",
    )
    processor = MessageProcessor(
        storage, notifier, consumer, logger, metrics, key_prefix=config.storage_key_prefix
    )
    return Runtime(config=config, processor=processor, consumer=consumer, metrics=metrics)


def get_runtime() -> Runtime:
    """Returns the cached runtime, building it on the first invocation."""
    global RUNTIME
    if RUNTIME is None:
        RUNTIME = build_runtime(PipelineConfig.from_env())
    return RUNTIME


# --- 2. HELPERS ---


def _parse_records(records: List[SQSEventRecord]) -> List[Message]:
    messages = []
    for record in records:
        try:
            messages.append(Message.from_lambda_record(record))
        except (KeyError, ValueError, AttributeError) as e:
            logger.error("Malformed SQS record.", extra={"messageId": record.get("messageId"), "error": str(e)})
    return messages


def _build_response(failed_ids: List[str]) -> Dict[str, Any]:
    """Centralized helper to build the partial batch response."""
    return {"batchItemFailures": [{"itemIdentifier": message_id} for message_id in failed_ids]}


# --- 3. LAMBDA HANDLER ---


@logger.inject_lambda_context
def handler(event: Dict, context: LambdaContext) -> Dict[str, Any]:
    """
    Main Lambda entry point. Processes one SQS batch end to end.

    Each invocation is a single batch dispatch followed by an immediate drain:
    every record is written, announced and deleted (or left on the queue)
    before the handler returns.

    This function follows these steps:
    1. Converts the event records into Messages.
    2. Fans them out to a thread pool bounded by MAX_CONCURRENCY.
    3. Waits for every message to reach ACKNOWLEDGED or FAILED.
    4. Reports FAILED messages as batchItemFailures so only they are retried.
    5. Emits success or failure metrics.
    """
    start_time = datetime.now(timezone.utc)
    records = event.get("Records", [])
    if not records:
        logger.info("No messages to process.")
        return _build_response([])

    runtime = get_runtime()
    logger.info(f"Received {len(records)} messages to process.")
    messages = _parse_records(records)
    parsed_ids = {m.id for m in messages}
    # Records we could not parse are reported back so the queue retries them.
    failed_ids = [r.get("messageId", "") for r in records if r.get("messageId") not in parsed_ids]

    try:
        workers = max(1, min(runtime.config.max_concurrency, len(messages)))
        runtime.consumer.heartbeat.start()
        try:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                outcomes = runtime.processor.process_batch(messages, executor)
        finally:
            runtime.consumer.heartbeat.stop()

        failed_ids.extend(o.message_id for o in outcomes if not o.success)
        latency_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        log_payload = {
            "received": len(records),
            "acknowledged": sum(1 for o in outcomes if o.success),
            "failed": len(failed_ids),
            "latency_ms": latency_ms,
        }
        logger.info("Batch processed.", extra=log_payload)
        return _build_response([i for i in failed_ids if i])
    except Exception as e:
        latency_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        logger.exception(
            "Batch processing failed.",
            extra={"error_type": type(e).__name__, "error_message": str(e), "latency_ms": latency_ms},
        )
        raise
    finally:
        runtime.metrics.flush()
