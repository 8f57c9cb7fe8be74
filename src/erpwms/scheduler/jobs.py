"""
Continuous mode: runs the configured schedules until asked to stop.

APScheduler fires a single interval "tick"; the tick asks SyncScheduler
which schedules are due and runs them one at a time. Last-run times live
in the scheduler object, so two schedules can never overlap and a slow job
simply delays the next tick (max_instances=1, coalesce=True).
"""
import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from erpwms.config import Schedule, get_settings
from erpwms.sync.job import JobResult, SyncOptions
from erpwms.sync.runner import canonical_name

logger = logging.getLogger(__name__)

Runner = Callable[[str, SyncOptions], Awaitable[JobResult]]


def schedule_options(schedule: Schedule, base: Optional[SyncOptions] = None) -> SyncOptions:
    """Options for one scheduled run; command-line modifiers in base still apply."""
    base = base or SyncOptions()
    return replace(
        base,
        full_sync=schedule.sync_mode.lower() == "full",
        force=schedule.force_sync or base.force,
        batch_size=schedule.batch_size,
    )


class SyncScheduler:
    """Decides which schedules are due and runs them sequentially."""

    def __init__(
        self,
        schedules: Sequence[Schedule],
        runner: Runner,
        clock=datetime.utcnow,
        base_options: Optional[SyncOptions] = None,
    ):
        self.schedules = [s for s in schedules if s.active]
        self.runner = runner
        self.base_options = base_options or SyncOptions()
        self.last_run: Dict[str, datetime] = {}
        self.started_at: Optional[datetime] = None
        self._clock = clock
        self._lock = asyncio.Lock()
        for schedule in self.schedules:
            if canonical_name(schedule.name) is None:
                logger.warning("Schedule %s does not name a known operation", schedule.name)

    def due_jobs(self, now: datetime) -> List[Schedule]:
        """
        Schedules due at now.

        Never-run schedules are due on the first evaluation if they have
        run_on_startup, otherwise one interval after the scheduler started.
        """
        first = self.started_at is None
        if first:
            self.started_at = now
        due = []
        for schedule in self.schedules:
            last = self.last_run.get(schedule.name)
            if last is None:
                if (first and schedule.run_on_startup) or now - self.started_at >= schedule.interval:
                    due.append(schedule)
            elif now - last >= schedule.interval:
                due.append(schedule)
        return due

    async def run_pending(self, stop_event: Optional[asyncio.Event] = None) -> int:
        """Run every due schedule once. Returns how many were started."""
        async with self._lock:
            started = 0
            for schedule in self.due_jobs(self._clock()):
                if stop_event is not None and stop_event.is_set():
                    break
                self.last_run[schedule.name] = self._clock()
                started += 1
                logger.info("Executing scheduled task: %s", schedule.name)
                try:
                    result = await self.runner(schedule.name, schedule_options(schedule, self.base_options))
                    logger.info(
                        "Completed %s - Records: %d, Errors: %d",
                        schedule.name, result.records_processed, result.error_count,
                    )
                except Exception:
                    logger.exception("Error executing scheduled task %s", schedule.name)
            return started

    async def run_forever(self, stop_event: asyncio.Event, poll_seconds: Optional[float] = None) -> None:
        """Tick until stop_event is set, then wait for the running tick to end."""
        scheduler = build_scheduler(self, stop_event, poll_seconds)
        scheduler.start()
        logger.info("Starting continuous integration service - Press Ctrl+C to stop")
        try:
            await stop_event.wait()
        finally:
            scheduler.shutdown(wait=False)
            # The tick holds the lock while jobs run
            async with self._lock:
                pass
            logger.info("Integration service stopped")


def build_scheduler(
    sync_scheduler: SyncScheduler,
    stop_event: Optional[asyncio.Event] = None,
    poll_seconds: Optional[float] = None,
) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        sync_scheduler: decides and runs the due schedules on each tick.
        stop_event: checked between jobs inside a tick.
        poll_seconds: tick interval; defaults to settings.scheduler_poll_seconds.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    if poll_seconds is None:
        poll_seconds = get_settings().scheduler_poll_seconds
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _tick,
        trigger="interval",
        seconds=poll_seconds,
        next_run_time=datetime.now(),
        id="sync_tick",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"sync_scheduler": sync_scheduler, "stop_event": stop_event},
    )

    return scheduler


async def _tick(sync_scheduler: SyncScheduler, stop_event: Optional[asyncio.Event]) -> None:
    try:
        await sync_scheduler.run_pending(stop_event)
    except Exception as exc:
        logger.error("Error in scheduler tick: %s", exc)
