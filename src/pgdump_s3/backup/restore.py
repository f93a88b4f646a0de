"""Streaming restore from object storage.

Downloads a stored dump, gunzips it on the fly and pipes the SQL into
``psql`` on its standard input.  ``psql`` connects to a maintenance
database (``template1`` by default) because dumps are taken with
``--create`` and recreate the target database themselves.

Usage:
    from pgdump_s3.backup.restore import restore_from_storage

    result = await restore_from_storage(ctx, "backups/pg16_app_2024-05-01T00-00-00.sql.gz")
"""

import asyncio
import logging

from pgdump_s3.adapters.base import ObjectStream
from pgdump_s3.backup.compression import GzipStreamDecoder
from pgdump_s3.backup.models import PipelineContext, PipelineResult
from pgdump_s3.backup.process import StderrCapture, connection_args, pg_env, terminate
from pgdump_s3.errors import (
    PipelineCancelledError,
    PipelineError,
    ResourceReleaseError,
    RestoreExecutionError,
    TransferError,
    combine_errors,
)

logger = logging.getLogger(__name__)


def build_restore_command(ctx: PipelineContext) -> list[str]:
    return [
        ctx.binding.restore_executable_path,
        *connection_args(ctx.target, ctx.restore_database),
    ]


async def _write(stdin: asyncio.StreamWriter, data: bytes) -> bool:
    """Write to the child's stdin; ``False`` once the child stopped reading."""
    if stdin.is_closing():
        return False
    if not data:
        return True
    try:
        stdin.write(data)
        await stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        return False
    except OSError as e:
        raise RestoreExecutionError(None, detail=f"failed to write to psql: {e}") from e
    return True


async def _close_stdin(stdin: asyncio.StreamWriter) -> None:
    stdin.close()
    try:
        await stdin.wait_closed()
    except (BrokenPipeError, ConnectionResetError):
        pass
    except OSError as e:
        raise RestoreExecutionError(None, detail=f"failed to close psql stdin: {e}") from e


async def _close_stream(stream: ObjectStream) -> ResourceReleaseError | None:
    try:
        await stream.aclose()
    except Exception as e:
        return ResourceReleaseError("object stream", e)
    return None


async def _feed_restore_tool(
    ctx: PipelineContext, stream: ObjectStream, cancel: asyncio.Event | None
) -> int:
    """Pipe the decompressed stream into psql; returns compressed bytes read."""
    capture = StderrCapture(ctx.verbose)
    try:
        proc = await asyncio.create_subprocess_exec(
            *build_restore_command(ctx),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=capture.target,
            env=pg_env(ctx.target),
        )
    except OSError as e:
        raise RestoreExecutionError(None, detail=f"failed to start psql: {e}") from e
    capture.start(proc)

    decoder = GzipStreamDecoder()
    transferred = 0
    accepting = True
    try:
        async for chunk in stream:
            if cancel is not None and cancel.is_set():
                raise PipelineCancelledError("restore cancelled")
            transferred += len(chunk)
            for piece in decoder.decompress(chunk):
                accepting = await _write(proc.stdin, piece)
                if not accepting:
                    break
            if not accepting:
                break
        if accepting:
            accepting = await _write(proc.stdin, decoder.finish())
        if accepting and proc.returncode is not None:
            # psql only exits on its own after reading to end of input
            accepting = False
    except BaseException as e:
        # Kill before closing stdin so psql never sees a clean end of input
        returncode = await terminate(proc)
        try:
            await _close_stdin(proc.stdin)
        except RestoreExecutionError as close_error:
            logger.debug("Ignoring stdin close error after failure: %s", close_error)
        stderr = await capture.text()
        logger.debug("psql stopped after failure (exit %s): %s", returncode, stderr)
        if isinstance(e, Exception) and not isinstance(e, PipelineError):
            raise TransferError(f"failed to download object: {e}") from e
        raise

    try:
        await _close_stdin(proc.stdin)
    except RestoreExecutionError:
        await terminate(proc)
        raise
    returncode = await proc.wait()
    stderr = await capture.text()
    if returncode != 0:
        raise RestoreExecutionError(returncode, stderr)
    if not accepting:
        raise RestoreExecutionError(
            returncode, stderr, detail="psql exited before reading the whole dump"
        )
    return transferred


async def _restore(
    ctx: PipelineContext, key: str, cancel: asyncio.Event | None
) -> int:
    stream = await ctx.storage.get_object(key)
    try:
        transferred = await _feed_restore_tool(ctx, stream, cancel)
    except PipelineError as e:
        release_error = await _close_stream(stream)
        if release_error is not None:
            raise combine_errors(e, release_error) from e
        raise
    except BaseException:
        await _close_stream(stream)
        raise

    release_error = await _close_stream(stream)
    if release_error is not None:
        raise release_error from release_error.cause
    return transferred


async def restore_from_storage(
    ctx: PipelineContext,
    key: str,
    cancel: asyncio.Event | None = None,
) -> PipelineResult:
    """Restore the dump stored under ``key`` into ``ctx.target``'s server.

    Args:
        ctx: Pipeline context.
        key: Object key of a gzip'd plain-SQL dump.
        cancel: Optional event; when set, psql is killed at the next chunk.

    Returns:
        ``PipelineResult`` with ``bytes_transferred`` counting downloaded
        (compressed) bytes.  On failure ``error`` is one of
        ``ObjectNotFoundError``, ``TransferError``, ``DecompressionError``,
        ``RestoreExecutionError``, ``PipelineCancelledError``,
        ``ResourceReleaseError`` or ``CombinedPipelineError``.
    """
    location = f"s3://{ctx.storage.bucket}/{key}"
    logger.info(
        "Starting restore from S3: %s",
        location,
        extra={"database": ctx.target.database, "key": key},
    )

    try:
        transferred = await _restore(ctx, key, cancel)
    except PipelineError as e:
        logger.error("Restore failed: %s", e, extra={"key": key})
        return PipelineResult(success=False, key=key, location=location, error=e)

    logger.info(
        "Successfully restored database: %s",
        ctx.target.database,
        extra={"database": ctx.target.database, "key": key, "size": transferred},
    )
    return PipelineResult(
        success=True, key=key, location=location, bytes_transferred=transferred
    )
