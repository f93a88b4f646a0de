"""Streaming pg_dump to object storage.

``pg_dump`` runs as a child process writing gzip-compressed SQL to its
stdout pipe.  An upload task consumes that pipe chunk by chunk and streams
it into a multipart upload, so the dump is never held in memory and the
transfer starts while ``pg_dump`` is still running.

Failure reconciliation:

- The upload fails: ``pg_dump`` is killed (nobody drains its pipe any more)
  and the upload error is returned as a ``TransferError``.
- The upload succeeds but ``pg_dump`` exits non-zero: the run fails with
  ``DumpExecutionError``.  Bytes were transferred, but the dump is not a
  valid backup.
- The result is reported only after both the upload and the child process
  have finished.

Usage:
    from pgdump_s3.backup.dump import dump_to_storage

    result = await dump_to_storage(ctx)
    if not result.success:
        print(result.error)
"""

import asyncio
import logging
from collections.abc import AsyncIterator

from pgdump_s3.adapters.base import UploadResult
from pgdump_s3.backup.models import PipelineContext, PipelineResult
from pgdump_s3.backup.naming import generate_dump_key
from pgdump_s3.backup.process import StderrCapture, connection_args, pg_env, terminate
from pgdump_s3.errors import (
    DumpExecutionError,
    PipelineCancelledError,
    PipelineError,
    TransferError,
)

logger = logging.getLogger(__name__)


def build_dump_command(ctx: PipelineContext) -> list[str]:
    """pg_dump invocation producing a gzip'd plain-SQL dump with ``--create``."""
    return [
        ctx.binding.dump_executable_path,
        *connection_args(ctx.target, ctx.target.database),
        "--verbose",
        "--clean",
        "--if-exists",
        "--create",
        "-Z", str(ctx.compression_level),
    ]


async def _iter_pipe(reader: asyncio.StreamReader, chunk_size: int) -> AsyncIterator[bytes]:
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            return
        yield chunk


async def _await_upload(
    upload: asyncio.Task, cancel: asyncio.Event | None
) -> UploadResult:
    if cancel is None:
        return await upload

    waiter = asyncio.create_task(cancel.wait())
    try:
        done, _ = await asyncio.wait(
            {upload, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        waiter.cancel()

    if upload in done:
        return upload.result()
    raise PipelineCancelledError("backup cancelled before the upload completed")


async def _stream_dump(
    ctx: PipelineContext, key: str, cancel: asyncio.Event | None
) -> UploadResult:
    capture = StderrCapture(ctx.verbose)
    try:
        proc = await asyncio.create_subprocess_exec(
            *build_dump_command(ctx),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=capture.target,
            env=pg_env(ctx.target),
        )
    except OSError as e:
        raise DumpExecutionError(None, detail=f"failed to start pg_dump: {e}") from e
    capture.start(proc)

    chunks = _iter_pipe(proc.stdout, ctx.chunk_size)
    upload = asyncio.create_task(ctx.storage.put_object_streaming(key, chunks))

    try:
        result = await _await_upload(upload, cancel)
    except BaseException as e:
        if not upload.done():
            upload.cancel()
        await asyncio.gather(upload, return_exceptions=True)
        returncode = await terminate(proc)
        await chunks.aclose()
        stderr = await capture.text()
        logger.debug(
            "pg_dump stopped before the upload completed (exit %s): %s", returncode, stderr
        )
        if isinstance(e, PipelineError):
            raise
        if isinstance(e, Exception):
            raise TransferError(f"failed to upload to S3: {e}") from e
        raise

    returncode = await proc.wait()
    stderr = await capture.text()
    if returncode != 0:
        raise DumpExecutionError(returncode, stderr)
    return result


async def dump_to_storage(
    ctx: PipelineContext,
    key: str | None = None,
    cancel: asyncio.Event | None = None,
) -> PipelineResult:
    """Dump ``ctx.target`` with pg_dump and stream it to object storage.

    Args:
        ctx: Pipeline context (target, tools, storage, naming).
        key: Object key to write; generated from ``ctx.naming`` when ``None``.
        cancel: Optional event; setting it kills pg_dump and aborts the upload.

    Returns:
        ``PipelineResult``.  On failure ``error`` is a ``TransferError``,
        ``DumpExecutionError`` or ``PipelineCancelledError``.

    Example:
        result = await dump_to_storage(ctx)
        if result.success:
            print(result.location)
    """
    if key is None:
        key = generate_dump_key(
            ctx.naming, ctx.binding.major_version, ctx.target.database
        )
    logger.info(
        "Starting pg_dump to S3: s3://%s/%s",
        ctx.storage.bucket,
        key,
        extra={"bucket": ctx.storage.bucket, "key": key},
    )

    try:
        upload = await _stream_dump(ctx, key, cancel)
    except PipelineError as e:
        logger.error("Backup failed: %s", e, extra={"key": key})
        return PipelineResult(success=False, key=key, error=e)

    logger.info(
        "Successfully uploaded backup to S3: %s",
        upload.location,
        extra={"location": upload.location, "key": key, "size": upload.size},
    )
    return PipelineResult(
        success=True,
        key=key,
        location=upload.location,
        bytes_transferred=upload.size,
    )
