"""
Durable object storage writer.

Writes message payloads to S3 under deterministic keys. Idempotence is
structural: the same message id always maps to the same key, and the SHA256
checksum stored as object metadata lets a repeated write of identical bytes
become a no-op while a divergent payload under an existing key is refused.
"""

import time
from typing import Callable, Optional

from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError
from mypy_boto3_s3 import S3Client

from .core import RetryPolicy, call_with_retries, payload_checksum
from .errors import PermanentError
from .model import WriteResult

CHECKSUM_METADATA_KEY = "sha256_checksum"
MAX_KEY_BYTES = 1024
FORBIDDEN_CODES = frozenset({"403", "AccessDenied", "Forbidden"})


def validate_key(key: str) -> None:
    """
    Rejects keys S3 would refuse or that would land outside the key space.

    Raises:
        PermanentError: If the key is empty, too long, or starts with '/'.
    """
    if not key:
        raise PermanentError("Storage key must not be empty.")
    if len(key.encode("utf-8")) > MAX_KEY_BYTES:
        raise PermanentError(f"Storage key exceeds {MAX_KEY_BYTES} bytes.", context={"key": key[:64]})
    if key.startswith("/"):
        raise PermanentError("Storage key must not start with '/'.", context={"key": key})


class StorageWriter:
    """
    Writes payloads to a single bucket.

    The wrapped S3 client is shared and stateless, so one writer can be used
    concurrently by every worker thread.
    """

    def __init__(
        self,
        s3_client: S3Client,
        bucket: str,
        logger: Logger,
        retry_policy: RetryPolicy = RetryPolicy(),
        sse_type: str = "AES256",
        verify_existing: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._s3 = s3_client
        self._bucket = bucket
        self._logger = logger
        self._policy = retry_policy
        self._sse_type = sse_type
        self._verify_existing = verify_existing
        self._sleep = sleep

    def write(self, key: str, payload: bytes) -> WriteResult:
        """
        Stores `payload` under `key`. Safe to repeat with the same arguments.

        Args:
            key: The deterministic object key.
            payload: The bytes to store.

        Returns:
            A WriteResult; `skipped` is True if an identical object was found.

        Raises:
            PermanentError: Invalid key, access denied, missing bucket, or a
                            different payload already stored under `key`.
            TransientIOError: Throttling or timeouts outlasted the retry policy.
        """
        validate_key(key)
        digest = payload_checksum(payload)
        extra = {"storageKey": key, "bucket": self._bucket}

        if self._verify_existing:
            existing = self._existing_checksum(key)
            if existing == digest:
                self._logger.info("Identical object already stored; skipping write.", extra=extra)
                return WriteResult(key=key, checksum=digest, skipped=True)
            if existing == "":
                self._logger.warning("Existing object has no checksum metadata; overwriting.", extra=extra)
            elif existing is not None:
                raise PermanentError(
                    f"Refusing to overwrite {key} with divergent content.",
                    context=dict(extra, stored=existing, incoming=digest),
                )

        extra_args = {
            "ServerSideEncryption": self._sse_type if self._sse_type != "NONE" else None,
            "Metadata": {CHECKSUM_METADATA_KEY: digest},
        }
        call_with_retries(
            lambda: self._s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=payload,
                **{k: v for k, v in extra_args.items() if v is not None},
            ),
            operation="s3.put_object",
            policy=self._policy,
            logger=self._logger,
            sleep=self._sleep,
            extra=extra,
        )
        self._logger.debug("Stored object.", extra=dict(extra, sha256_checksum=digest))
        return WriteResult(key=key, checksum=digest)

    def _existing_checksum(self, key: str) -> Optional[str]:
        """
        Returns the checksum recorded on an existing object, or None when there
        is no object or it cannot be inspected. An object written without the
        metadata yields "".

        Without read access S3 answers HEAD with 403 whether or not the key
        exists, so a forbidden pre-check falls through to the put.
        """

        def _head():
            try:
                return self._s3.head_object(Bucket=self._bucket, Key=key)
            except ClientError as e:
                code = e.response.get("Error", {}).get("Code", "")
                if code in ("404", "NoSuchKey", "NotFound"):
                    return None
                if code in FORBIDDEN_CODES:
                    self._logger.warning(
                        "No read access for the existence check; writing unconditionally.",
                        extra={"storageKey": key, "bucket": self._bucket},
                    )
                    return None
                raise

        head = call_with_retries(
            _head,
            operation="s3.head_object",
            policy=self._policy,
            logger=self._logger,
            sleep=self._sleep,
            extra={"storageKey": key},
        )
        if head is None:
            return None
        return head.get("Metadata", {}).get(CHECKSUM_METADATA_KEY, "")
