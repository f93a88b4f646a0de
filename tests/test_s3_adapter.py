"""Tests for the boto3-backed object storage adapter."""

import asyncio
import threading
import time
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from pgdump_s3.adapters.s3 import S3ObjectStorage, S3ObjectStream, create_s3_client
from pgdump_s3.config.models import StorageConfig
from pgdump_s3.errors import (
    CombinedPipelineError,
    ObjectNotFoundError,
    ResourceReleaseError,
    TransferError,
)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _make_mock_client() -> MagicMock:
    """A boto3 S3 client double that accepts every multipart call."""
    client = MagicMock()
    client.create_multipart_upload.return_value = {"UploadId": "upload-1"}
    client.upload_part.side_effect = lambda **kw: {"ETag": f'"etag-{kw["PartNumber"]}"'}
    client.complete_multipart_upload.return_value = {
        "Location": "https://s3.example.com/dumps/backups/db.sql.gz"
    }
    return client


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


def _uploaded_bodies(client: MagicMock) -> list[bytes]:
    calls = sorted(client.upload_part.call_args_list, key=lambda c: c.kwargs["PartNumber"])
    return [c.kwargs["Body"] for c in calls]


# ------------------------------------------------------------------
# Client construction
# ------------------------------------------------------------------


class TestCreateClient:
    def test_path_style_and_static_credentials(self):
        config = StorageConfig(
            bucket="dumps",
            region="eu-central-1",
            endpoint="minio:9000",
            use_ssl=False,
            access_key_id="AKIA123",
            secret_access_key="secret-key",
        )
        with patch("pgdump_s3.adapters.s3.boto3.client") as client_factory:
            create_s3_client(config)

        args, kwargs = client_factory.call_args
        assert args == ("s3",)
        assert kwargs["region_name"] == "eu-central-1"
        assert kwargs["endpoint_url"] == "http://minio:9000"
        assert kwargs["aws_access_key_id"] == "AKIA123"
        assert kwargs["aws_secret_access_key"] == "secret-key"
        assert kwargs["config"].s3 == {"addressing_style": "path"}

    def test_from_config_uses_part_settings(self):
        config = StorageConfig(
            bucket="dumps",
            access_key_id="a",
            secret_access_key="b",
            part_size_mb=8,
            upload_concurrency=3,
        )
        with patch("pgdump_s3.adapters.s3.boto3.client"):
            storage = S3ObjectStorage.from_config(config)

        assert storage.bucket == "dumps"
        assert storage._part_size == 8 * 1024 * 1024
        assert storage._concurrency == 3


# ------------------------------------------------------------------
# Streaming upload
# ------------------------------------------------------------------


class TestPutObjectStreaming:
    async def test_splits_into_parts_in_order(self):
        client = _make_mock_client()
        storage = S3ObjectStorage("dumps", client, part_size=4, upload_concurrency=2)

        result = await storage.put_object_streaming(
            "backups/db.sql.gz", _chunks(b"abc", b"defgh", b"ij")
        )

        assert result.size == 10
        assert result.key == "backups/db.sql.gz"
        assert result.location == "https://s3.example.com/dumps/backups/db.sql.gz"
        assert _uploaded_bodies(client) == [b"abcd", b"efgh", b"ij"]

        parts = client.complete_multipart_upload.call_args.kwargs["MultipartUpload"]["Parts"]
        assert parts == [
            {"ETag": '"etag-1"', "PartNumber": 1},
            {"ETag": '"etag-2"', "PartNumber": 2},
            {"ETag": '"etag-3"', "PartNumber": 3},
        ]
        client.abort_multipart_upload.assert_not_called()

    async def test_empty_stream_uploads_one_empty_part(self):
        client = _make_mock_client()
        storage = S3ObjectStorage("dumps", client, part_size=4)

        result = await storage.put_object_streaming("k", _chunks())

        assert result.size == 0
        assert _uploaded_bodies(client) == [b""]

    async def test_location_fallback(self):
        client = _make_mock_client()
        client.complete_multipart_upload.return_value = {}
        storage = S3ObjectStorage("dumps", client, part_size=4)

        result = await storage.put_object_streaming("backups/k", _chunks(b"x"))

        assert result.location == "s3://dumps/backups/k"

    async def test_part_failure_aborts_upload(self):
        client = _make_mock_client()
        client.upload_part.side_effect = _client_error("InternalError", "UploadPart")
        storage = S3ObjectStorage("dumps", client, part_size=4, upload_concurrency=1)

        with pytest.raises(TransferError, match="failed to upload to S3: s3://dumps/k"):
            await storage.put_object_streaming("k", _chunks(b"abcdefgh", b"ijkl"))

        client.abort_multipart_upload.assert_called_once_with(
            Bucket="dumps", Key="k", UploadId="upload-1"
        )
        client.complete_multipart_upload.assert_not_called()

    async def test_abort_waits_for_inflight_parts(self):
        events = []

        def upload_part(**kw):
            if kw["PartNumber"] == 1:
                raise _client_error("InternalError", "UploadPart")
            time.sleep(0.3)
            events.append(("part_done", kw["PartNumber"]))
            return {"ETag": f'"etag-{kw["PartNumber"]}"'}

        client = _make_mock_client()
        client.upload_part.side_effect = upload_part
        client.abort_multipart_upload.side_effect = lambda **kw: events.append(("abort",))
        storage = S3ObjectStorage("dumps", client, part_size=4, upload_concurrency=3)

        with pytest.raises(TransferError):
            await storage.put_object_streaming("k", _chunks(b"abcdefghijkl"))

        assert sorted(events[:2]) == [("part_done", 2), ("part_done", 3)]
        assert events[2:] == [("abort",)]

    async def test_cancel_aborts_after_inflight_parts(self):
        events = []
        started = threading.Event()

        def upload_part(**kw):
            started.set()
            time.sleep(0.3)
            events.append(("part_done", kw["PartNumber"]))
            return {"ETag": f'"etag-{kw["PartNumber"]}"'}

        async def endless():
            while True:
                yield b"abcd"
                await asyncio.sleep(0)

        client = _make_mock_client()
        client.upload_part.side_effect = upload_part
        client.abort_multipart_upload.side_effect = lambda **kw: events.append(("abort",))
        storage = S3ObjectStorage("dumps", client, part_size=4, upload_concurrency=2)

        task = asyncio.create_task(storage.put_object_streaming("k", endless()))
        await asyncio.to_thread(started.wait, 5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert events[-1] == ("abort",)
        assert events.count(("abort",)) == 1
        assert len(events) >= 2

    async def test_create_failure(self):
        client = _make_mock_client()
        client.create_multipart_upload.side_effect = EndpointConnectionError(
            endpoint_url="http://minio:9000"
        )
        storage = S3ObjectStorage("dumps", client)

        with pytest.raises(TransferError):
            await storage.put_object_streaming("k", _chunks(b"x"))

        client.abort_multipart_upload.assert_not_called()

    async def test_source_failure_propagates_and_aborts(self):
        client = _make_mock_client()
        storage = S3ObjectStorage("dumps", client, part_size=4)

        async def broken_source():
            yield b"abcd"
            raise RuntimeError("pipe closed")

        with pytest.raises(RuntimeError, match="pipe closed"):
            await storage.put_object_streaming("k", broken_source())

        client.abort_multipart_upload.assert_called_once()

    async def test_failed_abort_is_combined(self):
        client = _make_mock_client()
        client.complete_multipart_upload.side_effect = _client_error(
            "InvalidPart", "CompleteMultipartUpload"
        )
        client.abort_multipart_upload.side_effect = _client_error(
            "NoSuchUpload", "AbortMultipartUpload"
        )
        storage = S3ObjectStorage("dumps", client, part_size=4)

        with pytest.raises(CombinedPipelineError) as exc_info:
            await storage.put_object_streaming("k", _chunks(b"abc"))

        first, second = exc_info.value.errors
        assert isinstance(first, TransferError)
        assert isinstance(second, ResourceReleaseError)


# ------------------------------------------------------------------
# Streaming download
# ------------------------------------------------------------------


class TestGetObject:
    async def test_streams_body(self):
        body = MagicMock()
        body.read.side_effect = [b"ab", b"cd", b""]
        client = _make_mock_client()
        client.get_object.return_value = {"Body": body}
        storage = S3ObjectStorage("dumps", client)

        stream = await storage.get_object("backups/db.sql.gz")
        chunks = [chunk async for chunk in stream]
        await stream.aclose()

        assert chunks == [b"ab", b"cd"]
        body.close.assert_called_once()
        client.get_object.assert_called_once_with(Bucket="dumps", Key="backups/db.sql.gz")

    @pytest.mark.parametrize("code", ["NoSuchKey", "404"])
    async def test_missing_key(self, code):
        client = _make_mock_client()
        client.get_object.side_effect = _client_error(code, "GetObject")
        storage = S3ObjectStorage("dumps", client)

        with pytest.raises(ObjectNotFoundError) as exc_info:
            await storage.get_object("backups/missing.sql.gz")
        assert exc_info.value.key == "backups/missing.sql.gz"

    async def test_access_denied(self):
        client = _make_mock_client()
        client.get_object.side_effect = _client_error("AccessDenied", "GetObject")
        storage = S3ObjectStorage("dumps", client)

        with pytest.raises(TransferError, match="failed to download") as exc_info:
            await storage.get_object("k")
        assert not isinstance(exc_info.value, ObjectNotFoundError)

    async def test_read_error_becomes_transfer_error(self):
        body = MagicMock()
        body.read.side_effect = [b"ab", ConnectionResetError("reset by peer")]
        stream = S3ObjectStream(body)

        with pytest.raises(TransferError, match="failed to read object body"):
            async for _ in stream:
                pass
