"""Tests for the S3 storage writer."""

from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

from conftest import FAST_RETRY, no_sleep
from ingest_pipeline.core import payload_checksum
from ingest_pipeline.errors import PermanentError, TransientIOError
from ingest_pipeline.storage import CHECKSUM_METADATA_KEY, StorageWriter


@pytest.fixture
def writer(aws_resources, logger):
    return StorageWriter(
        aws_resources["s3"], aws_resources["bucket"], logger, retry_policy=FAST_RETRY, sleep=no_sleep
    )


def read_object(resources, key):
    return resources["s3"].get_object(Bucket=resources["bucket"], Key=key)


class TestStorageWriter:
    def test_write_stores_payload_with_checksum(self, writer, aws_resources):
        result = writer.write("message-42.txt", b"hello")

        assert result.key == "message-42.txt"
        assert result.checksum == payload_checksum(b"hello")
        assert result.skipped is False
        obj = read_object(aws_resources, "message-42.txt")
        assert obj["Body"].read() == b"hello"
        assert obj["Metadata"][CHECKSUM_METADATA_KEY] == result.checksum

    def test_repeated_write_is_idempotent(self, writer, aws_resources):
        """Writing the same (key, payload) twice leaves the same single object."""
        first = writer.write("message-42.txt", b"hello")
        second = writer.write("message-42.txt", b"hello")

        assert second.skipped is True
        assert second.checksum == first.checksum
        listing = aws_resources["s3"].list_objects_v2(Bucket=aws_resources["bucket"])
        assert [o["Key"] for o in listing["Contents"]] == ["message-42.txt"]
        assert read_object(aws_resources, "message-42.txt")["Body"].read() == b"hello"

    def test_divergent_payload_is_refused(self, writer, aws_resources):
        writer.write("message-42.txt", b"hello")

        with pytest.raises(PermanentError, match="divergent"):
            writer.write("message-42.txt", b"goodbye")
        assert read_object(aws_resources, "message-42.txt")["Body"].read() == b"hello"

    def test_object_without_checksum_is_overwritten(self, writer, aws_resources):
        aws_resources["s3"].put_object(Bucket=aws_resources["bucket"], Key="message-7.txt", Body=b"legacy")

        result = writer.write("message-7.txt", b"fresh")

        assert result.skipped is False
        assert read_object(aws_resources, "message-7.txt")["Body"].read() == b"fresh"

    def test_repeat_without_verification_overwrites_with_same_bytes(self, aws_resources, logger):
        writer = StorageWriter(
            aws_resources["s3"], aws_resources["bucket"], logger, retry_policy=FAST_RETRY, verify_existing=False
        )
        writer.write("message-42.txt", b"hello")
        result = writer.write("message-42.txt", b"hello")

        assert result.skipped is False
        assert read_object(aws_resources, "message-42.txt")["Body"].read() == b"hello"

    def test_missing_bucket_is_permanent(self, aws_resources, logger):
        writer = StorageWriter(aws_resources["s3"], "no-such-bucket", logger, retry_policy=FAST_RETRY, sleep=no_sleep)
        with pytest.raises(PermanentError):
            writer.write("message-42.txt", b"hello")

    @pytest.mark.parametrize("key", ["", "/message-1.txt", "k" * 1025])
    def test_invalid_keys_are_permanent(self, writer, key):
        with pytest.raises(PermanentError):
            writer.write(key, b"hello")


class TestStorageWriterRetries:
    def make_writer(self, s3_client, logger):
        return StorageWriter(s3_client, "bucket", logger, retry_policy=FAST_RETRY, verify_existing=False, sleep=no_sleep)

    def test_throttling_is_retried(self, logger):
        s3 = Mock()
        throttled = ClientError({"Error": {"Code": "SlowDown"}, "ResponseMetadata": {"HTTPStatusCode": 503}}, "PutObject")
        s3.put_object.side_effect = [throttled, {}]

        result = self.make_writer(s3, logger).write("message-1.txt", b"x")

        assert result.key == "message-1.txt"
        assert s3.put_object.call_count == 2
        kwargs = s3.put_object.call_args.kwargs
        assert kwargs["ServerSideEncryption"] == "AES256"
        assert kwargs["Metadata"] == {CHECKSUM_METADATA_KEY: payload_checksum(b"x")}

    def test_persistent_throttling_escalates(self, logger):
        s3 = Mock()
        s3.put_object.side_effect = ClientError(
            {"Error": {"Code": "SlowDown"}, "ResponseMetadata": {"HTTPStatusCode": 503}}, "PutObject"
        )
        with pytest.raises(TransientIOError):
            self.make_writer(s3, logger).write("message-1.txt", b"x")
        assert s3.put_object.call_count == FAST_RETRY.max_attempts

    def test_access_denied_is_not_retried(self, logger):
        s3 = Mock()
        s3.put_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied"}, "ResponseMetadata": {"HTTPStatusCode": 403}}, "PutObject"
        )
        with pytest.raises(PermanentError):
            self.make_writer(s3, logger).write("message-1.txt", b"x")
        assert s3.put_object.call_count == 1

    def test_sse_can_be_disabled(self, logger):
        s3 = Mock()
        s3.put_object.return_value = {}
        writer = StorageWriter(s3, "bucket", logger, sse_type="NONE", verify_existing=False, sleep=no_sleep)
        writer.write("message-1.txt", b"x")
        assert "ServerSideEncryption" not in s3.put_object.call_args.kwargs

    def test_forbidden_existence_check_falls_through_to_put(self, logger):
        """Without read access HEAD answers 403; the write must still happen."""
        s3 = Mock()
        s3.head_object.side_effect = ClientError(
            {"Error": {"Code": "403", "Message": "Forbidden"}, "ResponseMetadata": {"HTTPStatusCode": 403}}, "HeadObject"
        )
        s3.put_object.return_value = {}
        writer = StorageWriter(s3, "bucket", logger, retry_policy=FAST_RETRY, sleep=no_sleep)

        result = writer.write("message-1.txt", b"x")

        assert result.skipped is False
        assert s3.head_object.call_count == 1
        assert s3.put_object.call_count == 1
