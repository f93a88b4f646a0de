"""Cron-driven backup scheduling.

``BackupScheduler`` fires a dump job on a cron schedule and guarantees at
most one dump runs at a time.  A trigger that arrives while a dump is
still running is skipped, not queued.

Usage:
    scheduler = BackupScheduler(job, "@daily", ZoneInfo("UTC"))
    loop.add_signal_handler(signal.SIGTERM, scheduler.request_shutdown)
    await scheduler.run()
    await scheduler.on_shutdown(run_final_backup=False)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, tzinfo

from croniter import croniter

from pgdump_s3.backup.models import PipelineResult

logger = logging.getLogger(__name__)

BackupJob = Callable[[asyncio.Event], Awaitable[PipelineResult]]


class BackupScheduler:
    """Single-flight cron scheduler for dump runs.

    Args:
        job: Coroutine function running one dump; receives the run's cancel
            event.
        schedule: Cron expression (five fields or an ``@daily``-style alias).
        tz: Time zone the schedule is evaluated in.
        cancel_inflight_on_shutdown: Cancel a running dump at shutdown
            instead of waiting for it to finish.
    """

    def __init__(
        self,
        job: BackupJob,
        schedule: str = "@daily",
        tz: tzinfo | None = None,
        cancel_inflight_on_shutdown: bool = False,
    ) -> None:
        if not croniter.is_valid(schedule):
            raise ValueError(f"invalid cron schedule: {schedule!r}")
        self._job = job
        self._schedule = schedule
        self._tz = tz
        self._cancel_inflight = cancel_inflight_on_shutdown
        self._lock = asyncio.Lock()
        self._shutdown = asyncio.Event()
        self._cancel: asyncio.Event | None = None
        self._runs: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        """Whether a dump is in flight."""
        return self._lock.locked()

    def next_fire_time(self, now: datetime | None = None) -> datetime:
        if now is None:
            now = datetime.now(self._tz)
        return croniter(self._schedule, now).get_next(datetime)

    async def on_schedule(self) -> PipelineResult | None:
        """Run one dump unless another is in flight.

        Returns:
            The run's result, or ``None`` if the trigger was skipped or the
            job raised.
        """
        if self._lock.locked():
            logger.warning("Backup already in progress, skipping scheduled run")
            return None
        return await self._run_locked()

    async def _run_locked(self, final: bool = False) -> PipelineResult | None:
        async with self._lock:
            if self._shutdown.is_set() and not final:
                logger.info("Shutdown requested, skipping scheduled run")
                return None
            self._cancel = asyncio.Event()
            try:
                return await self._job(self._cancel)
            except Exception:
                logger.exception("Scheduled backup raised")
                return None
            finally:
                self._cancel = None

    def request_shutdown(self) -> None:
        """Stop the schedule loop; safe to call from a signal handler."""
        self._shutdown.set()

    async def run(self) -> None:
        """Fire ``on_schedule`` at every cron tick until shutdown is requested."""
        logger.info("Scheduler started with schedule %r", self._schedule)
        while not self._shutdown.is_set():
            now = datetime.now(self._tz)
            fire_at = self.next_fire_time(now)
            delay = max((fire_at - now).total_seconds(), 0.0)
            logger.debug("Next backup at %s", fire_at.isoformat())
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
            except asyncio.TimeoutError:
                task = asyncio.create_task(self.on_schedule())
                self._runs.add(task)
                task.add_done_callback(self._runs.discard)
        logger.info("Scheduler stopped")

    async def on_shutdown(self, run_final_backup: bool = False) -> PipelineResult | None:
        """Settle the in-flight dump, then optionally run a final one.

        Returns:
            The final backup's result when ``run_final_backup`` is set,
            otherwise ``None``.
        """
        self._shutdown.set()
        if self._cancel is not None and self._cancel_inflight:
            logger.info("Cancelling in-flight backup for shutdown")
            self._cancel.set()
        if self._runs:
            logger.info("Waiting for in-flight backup to finish")
            await asyncio.gather(*self._runs, return_exceptions=True)

        if not run_final_backup:
            return None
        logger.info("Running final backup before shutdown")
        return await self._run_locked(final=True)
