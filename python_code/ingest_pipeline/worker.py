"""
Long-running entry point for the Ingest Pipeline.

Builds the clients and components from the environment, runs the Supervisor
until SIGTERM/SIGINT, then drains in-flight messages before exiting.
"""

import signal
import sys
from typing import Optional

from aws_lambda_powertools import Logger

from . import clients
from .config import PipelineConfig
from .metrics import PipelineMetrics
from .notifications import NotificationPublisher
from .storage import StorageWriter
from .supervisor import Supervisor


def build_supervisor(config: PipelineConfig, logger: Logger) -> Supervisor:
    """Wires clients, adapters and the Supervisor for one process."""
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
    return Supervisor(config, sqs, storage, notifier, logger, metrics)


def install_signal_handlers(supervisor: Supervisor) -> None:
    def _handle(signum, _frame):
        supervisor.request_shutdown()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


def main(config: Optional[PipelineConfig] = None) -> int:
    try:
        config = config or PipelineConfig.from_env()
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 2

    logger = Logger(service=config.service_name, level=config.log_level)
    supervisor = build_supervisor(config, logger)
    install_signal_handlers(supervisor)

    logger.info(
        "Starting ingest pipeline.",
        extra={
            "queueUrl": config.queue_url,
            "bucket": config.storage_bucket,
            "topicArn": config.notification_topic_arn,
        },
    )
    abandoned = supervisor.run()
    return 1 if abandoned else 0


if __name__ == "__main__":
    sys.exit(main())
