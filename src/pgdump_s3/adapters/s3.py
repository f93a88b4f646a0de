"""S3 object storage adapter.

Provides ``S3ObjectStorage``, an implementation of the ``ObjectStorage``
protocol on top of a boto3 S3 client.  Uploads are multipart: chunks are
accumulated into fixed-size parts and uploaded with bounded concurrency, so
memory stays at roughly ``part_size * (concurrency + 1)`` regardless of the
dump size.  boto3 is blocking; every call runs in a worker thread via
``asyncio.to_thread``.

Usage:
    from pgdump_s3.adapters.s3 import S3ObjectStorage

    storage = S3ObjectStorage.from_config(settings.to_storage_config())
    result = await storage.put_object_streaming("backups/db.sql.gz", chunks)
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from pgdump_s3.adapters.base import UploadResult
from pgdump_s3.config.models import StorageConfig
from pgdump_s3.errors import (
    ObjectNotFoundError,
    PipelineError,
    ResourceReleaseError,
    TransferError,
    combine_errors,
)

logger = logging.getLogger(__name__)

MB = 1024 * 1024
DOWNLOAD_CHUNK_SIZE = 1 * MB

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


def create_s3_client(config: StorageConfig) -> Any:
    """Create a boto3 S3 client with static credentials and path-style URLs.

    Path-style addressing keeps MinIO and other S3-compatible endpoints
    working without wildcard DNS.
    """
    return boto3.client(
        "s3",
        region_name=config.region,
        endpoint_url=config.endpoint_url,
        aws_access_key_id=config.access_key_id,
        aws_secret_access_key=config.secret_access_key.get_secret_value(),
        config=Config(
            s3={"addressing_style": "path"},
            retries={"max_attempts": 5, "mode": "standard"},
        ),
    )


class S3ObjectStream:
    """Async iterator over a boto3 ``StreamingBody``."""

    def __init__(self, body: Any, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> None:
        self._body = body
        self._chunk_size = chunk_size

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iter_chunks()

    async def _iter_chunks(self) -> AsyncIterator[bytes]:
        while True:
            try:
                chunk = await asyncio.to_thread(self._body.read, self._chunk_size)
            except (BotoCoreError, ClientError, OSError) as e:
                raise TransferError(f"failed to read object body: {e}") from e
            if not chunk:
                return
            yield chunk

    async def aclose(self) -> None:
        await asyncio.to_thread(self._body.close)


class S3ObjectStorage:
    """S3 implementation of the ``ObjectStorage`` protocol.

    Args:
        bucket: Bucket all keys live in.
        client: A boto3 S3 client (shared across runs; boto3 clients are
            thread-safe).
        part_size: Multipart part size in bytes (S3 minimum is 5 MiB for
            every part but the last).
        upload_concurrency: Maximum number of parts uploading at once.

    Example:
        storage = S3ObjectStorage("my-bucket", create_s3_client(config))
        stream = await storage.get_object("backups/pg16_app.sql.gz")
    """

    def __init__(
        self,
        bucket: str,
        client: Any,
        part_size: int = 10 * MB,
        upload_concurrency: int = 5,
    ) -> None:
        self.bucket = bucket
        self._client = client
        self._part_size = part_size
        self._concurrency = max(1, upload_concurrency)

    @classmethod
    def from_config(cls, config: StorageConfig) -> "S3ObjectStorage":
        return cls(
            bucket=config.bucket,
            client=create_s3_client(config),
            part_size=config.part_size_mb * MB,
            upload_concurrency=config.upload_concurrency,
        )

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def put_object_streaming(
        self, key: str, chunks: AsyncIterator[bytes]
    ) -> UploadResult:
        """Upload ``chunks`` as one object using S3 multipart upload.

        The multipart upload is aborted on any failure, including
        cancellation, so no partial object becomes visible.
        """
        try:
            created = await asyncio.to_thread(
                self._client.create_multipart_upload, Bucket=self.bucket, Key=key
            )
        except (BotoCoreError, ClientError) as e:
            raise TransferError(
                f"failed to upload to S3: s3://{self.bucket}/{key}: {e}"
            ) from e
        upload_id = created["UploadId"]

        etags: dict[int, str] = {}
        pending: set[asyncio.Task] = set()
        buffer = bytearray()
        size = 0
        part_number = 0

        try:
            async for chunk in chunks:
                buffer += chunk
                size += len(chunk)
                while len(buffer) >= self._part_size:
                    part_number += 1
                    payload = bytes(buffer[: self._part_size])
                    del buffer[: self._part_size]
                    await self._start_part(pending, key, upload_id, part_number, payload, etags)

            # Last (possibly short or empty) part
            if buffer or part_number == 0:
                part_number += 1
                await self._start_part(pending, key, upload_id, part_number, bytes(buffer), etags)

            while pending:
                await self._settle(pending, asyncio.FIRST_EXCEPTION)

            response = await asyncio.to_thread(
                self._client.complete_multipart_upload,
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={
                    "Parts": [
                        {"ETag": etags[n], "PartNumber": n} for n in sorted(etags)
                    ]
                },
            )
        except BaseException as e:
            # Part threads outlive task cancellation; all must settle before abort
            if pending:
                await asyncio.wait(pending)
                for task in pending:
                    if not task.cancelled():
                        task.exception()
            abort_error = await self._abort(key, upload_id)

            error: BaseException = e
            if isinstance(e, (BotoCoreError, ClientError)):
                error = TransferError(
                    f"failed to upload to S3: s3://{self.bucket}/{key}: {e}"
                )
            if abort_error is not None:
                if isinstance(error, PipelineError):
                    raise combine_errors(error, abort_error) from e
                logger.error("Multipart abort failed: %s", abort_error)
            if error is e:
                raise
            raise error from e

        location = response.get("Location") or f"s3://{self.bucket}/{key}"
        return UploadResult(key=key, location=location, size=size)

    async def _start_part(
        self,
        pending: set[asyncio.Task],
        key: str,
        upload_id: str,
        part_number: int,
        payload: bytes,
        etags: dict[int, str],
    ) -> None:
        # Wait for a free slot; surfaces the first part failure early
        while len(pending) >= self._concurrency:
            await self._settle(pending, asyncio.FIRST_COMPLETED)

        pending.add(
            asyncio.create_task(
                self._upload_part(key, upload_id, part_number, payload, etags)
            )
        )

    @staticmethod
    async def _settle(pending: set[asyncio.Task], return_when: str) -> None:
        """Wait on part uploads without cancelling them; re-raise a failure."""
        done, _ = await asyncio.wait(pending, return_when=return_when)
        for task in done:
            pending.discard(task)
        for task in done:
            task.result()

    async def _upload_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        payload: bytes,
        etags: dict[int, str],
    ) -> None:
        response = await asyncio.to_thread(
            self._client.upload_part,
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=payload,
        )
        etags[part_number] = response["ETag"]
        logger.debug("Uploaded part %d (%d bytes) of %s", part_number, len(payload), key)

    async def _abort(self, key: str, upload_id: str) -> ResourceReleaseError | None:
        try:
            await asyncio.to_thread(
                self._client.abort_multipart_upload,
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
            )
        except (BotoCoreError, ClientError) as e:
            return ResourceReleaseError(f"multipart upload {upload_id}", e)
        return None

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def get_object(self, key: str) -> S3ObjectStream:
        """Open ``key`` for streaming download."""
        try:
            response = await asyncio.to_thread(
                self._client.get_object, Bucket=self.bucket, Key=key
            )
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(self.bucket, key) from e
            raise TransferError(
                f"failed to download s3://{self.bucket}/{key}: {e}"
            ) from e
        except BotoCoreError as e:
            raise TransferError(
                f"failed to download s3://{self.bucket}/{key}: {e}"
            ) from e

        return S3ObjectStream(response["Body"])
