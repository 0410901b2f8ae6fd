"""
A factory module for creating and providing boto3 clients.

This module is the core of the Dependency Injection (DI) pattern for the
application. The entry points build the clients once and pass them into the
storage, notification and queue adapters, so tests can hand in mocked clients
(or run under moto) without any global client state.
"""

import logging
import os
from typing import Optional, Tuple

import boto3
import botocore.config

from mypy_boto3_s3 import S3Client
from mypy_boto3_sns import SNSClient
from mypy_boto3_sqs import SQSClient

logger = logging.getLogger(__name__)

# Shared client configuration. Retries are owned by the pipeline (RetryPolicy
# and the receive loop backoff), so the SDK makes a single attempt per call;
# adaptive mode still applies client-side rate limiting after throttling.
BOTO_CONFIG_RETRYABLE = botocore.config.Config(
    retries={"total_max_attempts": 1, "mode": "adaptive"},
    connect_timeout=5,
    read_timeout=30,
)

# Long polling holds the connection open for up to 20s, so the SQS client gets
# a read timeout comfortably above the maximum wait.
BOTO_CONFIG_SQS = BOTO_CONFIG_RETRYABLE.merge(botocore.config.Config(read_timeout=30 + 20))


def get_boto_clients(
    region: Optional[str] = None, endpoint_url: Optional[str] = None
) -> Tuple[S3Client, SQSClient, SNSClient]:
    """
    Returns a tuple of the AWS service clients the pipeline depends on.

    If the `USE_MOTO` flag is present it's assumed that `moto` is active and
    will intercept the `boto3` calls to return mocked clients. Otherwise, it
    creates real AWS clients.

    Args:
        region: AWS region. Falls back to the AWS_REGION environment variable.
        endpoint_url: Optional override for S3/SQS/SNS-compatible endpoints.

    Returns:
        A tuple containing initialized boto3 clients in the following order:
        (s3_client, sqs_client, sns_client)
    """
    aws_region = region or os.environ.get("AWS_REGION")
    if not aws_region:
        logger.warning("AWS_REGION not set, boto3 will attempt to resolve it.")

    # In a test run with the moto fixture, this log confirms DI is active.
    if os.environ.get("USE_MOTO"):
        logger.info("MOTO ENABLED: Returning mocked AWS clients.")

    s3_client: S3Client = boto3.client(
        "s3", region_name=aws_region, endpoint_url=endpoint_url, config=BOTO_CONFIG_RETRYABLE
    )
    sqs_client: SQSClient = boto3.client(
        "sqs", region_name=aws_region, endpoint_url=endpoint_url, config=BOTO_CONFIG_SQS
    )
    sns_client: SNSClient = boto3.client(
        "sns", region_name=aws_region, endpoint_url=endpoint_url, config=BOTO_CONFIG_RETRYABLE
    )

    return s3_client, sqs_client, sns_client
