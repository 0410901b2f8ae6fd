"""
Publishes delivery notifications to the fan-out topic.
"""

import time
from typing import Callable

from aws_lambda_powertools import Logger
from mypy_boto3_sns import SNSClient

from .core import RetryPolicy, call_with_retries
from .model import NotificationEvent


class NotificationPublisher:
    """
    Publishes NotificationEvents to a single SNS topic.

    Subscribers may receive the same event more than once (a redelivered
    message republishes after its idempotent write) and must deduplicate on
    `sourceMessageId`.
    """

    def __init__(
        self,
        sns_client: SNSClient,
        topic_arn: str,
        logger: Logger,
        retry_policy: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._sns = sns_client
        self._topic_arn = topic_arn
        self._logger = logger
        self._policy = retry_policy
        self._sleep = sleep

    def publish(self, event: NotificationEvent) -> str:
        """
        Publishes `event` and returns the SNS message id.

        Raises:
            PermanentError: Unknown topic, authorization failure, bad request.
            TransientIOError: Throttling or timeouts outlasted the retry policy.
        """
        extra = {"messageId": event.source_message_id, "storageKey": event.storage_key}
        response = call_with_retries(
            lambda: self._sns.publish(
                TopicArn=self._topic_arn,
                Message=event.to_json(),
                MessageAttributes={
                    "status": {"DataType": "String", "StringValue": event.status.value},
                    "storageKey": {"DataType": "String", "StringValue": event.storage_key},
                },
            ),
            operation="sns.publish",
            policy=self._policy,
            logger=self._logger,
            sleep=self._sleep,
            extra=extra,
        )
        return response.get("MessageId", "")
