"""
Recurring crawl schedule.

- quick listing update at fixed daily times (05:00 and 17:00 by default)
- detail enrichment every 30 minutes: initial projects, then investors
- on start: recover interrupted crawls and kick off initial enrichment

Each job goes through the engine, so a crawl type that is already running
is skipped rather than started twice.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config.loader import ScheduleConfig
from enrichment.crawl_state import CrawlAlreadyRunning

logger = logging.getLogger(__name__)

DETAIL_SEQUENCE = ("detail", "detail2")


def quick_update_trigger(schedule: ScheduleConfig) -> OrTrigger:
    """Fires at every configured HH:MM."""
    triggers = []
    for entry in schedule.quick_times:
        hour, _, minute = entry.partition(":")
        triggers.append(CronTrigger(hour=int(hour), minute=int(minute or 0), timezone=schedule.timezone))
    return OrTrigger(triggers)


class CrawlScheduler:
    """APScheduler wrapper driving a CrawlEngine."""

    def __init__(self, engine, schedule: ScheduleConfig = None):
        self.engine = engine
        self.schedule = schedule or ScheduleConfig()
        self.scheduler = AsyncIOScheduler(
            timezone=self.schedule.timezone,
            job_defaults={
                "coalesce": True,       # collapse missed runs into one
                "max_instances": 1,     # never overlap a job with itself
                "misfire_grace_time": 600,
            },
        )

    def _add_jobs(self):
        self.scheduler.add_job(
            self.quick_update_job,
            trigger=quick_update_trigger(self.schedule),
            id="quick_update",
            name=f"Quick listing update ({', '.join(self.schedule.quick_times)})",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.detail_job,
            trigger=IntervalTrigger(minutes=self.schedule.detail_interval_minutes, timezone=self.schedule.timezone),
            id="detail_enrichment",
            name=f"Detail enrichment (every {self.schedule.detail_interval_minutes} min)",
            replace_existing=True,
        )

    async def quick_update_job(self):
        logger.info("  ⏰ [scheduler] Starting quick update")
        try:
            result = await self.engine.run("quick")
        except CrawlAlreadyRunning:
            logger.info("  [scheduler] Quick update already running, skipped")
            return
        logger.info(f"  [scheduler] Quick update {result.status.value}")

    async def detail_job(self):
        """
        Work the initial queue, then the investor queue. Busy types are skipped.
        The browser is released afterwards unless another crawl still needs it.
        """
        for operation in DETAIL_SEQUENCE:
            logger.info(f"  ⏰ [scheduler] Starting {operation}")
            try:
                result = await self.engine.run(operation)
            except CrawlAlreadyRunning:
                logger.info(f"  [scheduler] {operation} already running, skipped")
                continue
            logger.info(f"  [scheduler] {operation} {result.status.value}")
        await self.engine.browser.close()

    async def on_startup(self) -> list[str]:
        """Recover interrupted crawls; make sure initial enrichment is under way."""
        resumed = await self.engine.recover_on_startup()
        if "detail" not in resumed:
            try:
                await self.engine.start("detail")
                resumed.append("detail")
            except CrawlAlreadyRunning:
                logger.info("  [scheduler] detail already running at startup")
        return resumed

    async def start(self) -> list[str]:
        self._add_jobs()
        self.scheduler.start()
        for job in self.scheduler.get_jobs():
            logger.info(f"  [scheduler] Scheduled job: {job.id} - next run: {job.next_run_time}")
        return await self.on_startup()

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("  [scheduler] Shutdown complete")
