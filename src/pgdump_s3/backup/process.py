"""Child-process helpers shared by the dump and restore pipelines."""

import asyncio
import os

from pgdump_s3.config.models import BackupTarget

STDERR_TAIL_BYTES = 1024 * 1024


def pg_env(target: BackupTarget) -> dict[str, str]:
    """Inherited environment plus ``PGPASSWORD`` for the target."""
    return {**os.environ, "PGPASSWORD": target.password.get_secret_value()}


def connection_args(target: BackupTarget, database: str) -> list[str]:
    return [
        "-h", target.host,
        "-p", str(target.port),
        "-U", target.user,
        "-d", database,
        "--no-password",
    ]


class StderrCapture:
    """Buffers a child's stderr, or passes it through in verbose mode.

    Quiet mode keeps only the last ``limit`` bytes so a chatty
    ``pg_dump --verbose`` on a large database cannot grow memory unbounded.

    Usage:
        capture = StderrCapture(verbose=False)
        proc = await asyncio.create_subprocess_exec(..., stderr=capture.target)
        capture.start(proc)
        ...
        stderr = await capture.text()
    """

    def __init__(self, verbose: bool, limit: int = STDERR_TAIL_BYTES) -> None:
        self.verbose = verbose
        self._limit = limit
        self._task: asyncio.Task | None = None

    @property
    def target(self) -> int | None:
        # None inherits our stderr
        return None if self.verbose else asyncio.subprocess.PIPE

    def start(self, proc: asyncio.subprocess.Process) -> None:
        if not self.verbose and proc.stderr is not None:
            self._task = asyncio.create_task(self._drain(proc.stderr))

    async def _drain(self, reader: asyncio.StreamReader) -> bytes:
        buffer = bytearray()
        while True:
            chunk = await reader.read(64 * 1024)
            if not chunk:
                return bytes(buffer)
            buffer += chunk
            if len(buffer) > self._limit:
                del buffer[: len(buffer) - self._limit]

    async def text(self) -> str:
        """Captured stderr; empty in verbose mode."""
        if self._task is None:
            return ""
        data = await self._task
        return data.decode("utf-8", errors="replace")


async def terminate(proc: asyncio.subprocess.Process) -> int:
    """Kill ``proc`` if it is still running and reap it."""
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    return await proc.wait()
