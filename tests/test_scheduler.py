"""
Tests for the recurring schedule: triggers, job sequencing, startup recovery.
Run with: venv/bin/python -m pytest tests/test_scheduler.py -v
"""

import asyncio
import os
import sys
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.loader import ScheduleConfig
from enrichment.crawl_state import CrawlAlreadyRunning, CrawlType, CrawlStatus
from scheduler.jobs import CrawlScheduler, quick_update_trigger, DETAIL_SEQUENCE


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def mock_engine(recovered=None):
    engine = MagicMock()
    engine.run = AsyncMock(return_value=MagicMock(status=CrawlStatus.COMPLETED))
    engine.start = AsyncMock()
    engine.recover_on_startup = AsyncMock(return_value=list(recovered or []))
    engine.browser.close = AsyncMock(return_value=True)
    return engine


# ──────────────────────────────────────────────────
#  Triggers
# ──────────────────────────────────────────────────

class TestQuickTrigger:
    def test_next_fire_after_morning_run(self):
        trigger = quick_update_trigger(ScheduleConfig())
        nxt = trigger.get_next_fire_time(None, _utc(2026, 3, 1, 6, 0))
        assert nxt == _utc(2026, 3, 1, 17, 0)

    def test_rolls_to_next_day(self):
        trigger = quick_update_trigger(ScheduleConfig())
        nxt = trigger.get_next_fire_time(None, _utc(2026, 3, 1, 18, 30))
        assert nxt == _utc(2026, 3, 2, 5, 0)

    def test_times_need_not_share_minute(self):
        trigger = quick_update_trigger(ScheduleConfig(quick_times=["04:15", "16:45"]))
        nxt = trigger.get_next_fire_time(None, _utc(2026, 3, 1, 5, 0))
        assert nxt == _utc(2026, 3, 1, 16, 45)


# ──────────────────────────────────────────────────
#  Jobs
# ──────────────────────────────────────────────────

class TestJobs:
    def test_detail_job_runs_both_queues_in_order(self):
        engine = mock_engine()
        asyncio.run(CrawlScheduler(engine).detail_job())
        assert [c.args[0] for c in engine.run.await_args_list] == list(DETAIL_SEQUENCE)
        engine.browser.close.assert_awaited_once()

    def test_detail_job_skips_busy_type(self):
        engine = mock_engine()
        engine.run.side_effect = [CrawlAlreadyRunning(CrawlType.DETAIL), MagicMock(status=CrawlStatus.COMPLETED)]
        asyncio.run(CrawlScheduler(engine).detail_job())
        assert engine.run.await_count == 2

    def test_quick_job_skips_when_running(self):
        engine = mock_engine()
        engine.run.side_effect = CrawlAlreadyRunning(CrawlType.QUICK)
        asyncio.run(CrawlScheduler(engine).quick_update_job())
        engine.run.assert_awaited_once_with("quick")


# ──────────────────────────────────────────────────
#  Startup
# ──────────────────────────────────────────────────

class TestStartup:
    def test_starts_detail_when_not_resumed(self):
        engine = mock_engine(recovered=["full"])
        resumed = asyncio.run(CrawlScheduler(engine).on_startup())
        engine.start.assert_awaited_once_with("detail")
        assert resumed == ["full", "detail"]

    def test_resumed_detail_not_started_twice(self):
        engine = mock_engine(recovered=["detail"])
        resumed = asyncio.run(CrawlScheduler(engine).on_startup())
        engine.start.assert_not_awaited()
        assert resumed == ["detail"]

    def test_detail_busy_at_startup(self):
        engine = mock_engine()
        engine.start.side_effect = CrawlAlreadyRunning(CrawlType.DETAIL)
        assert asyncio.run(CrawlScheduler(engine).on_startup()) == []

    def test_start_registers_jobs(self):
        engine = mock_engine()
        sched = CrawlScheduler(engine, ScheduleConfig(detail_interval_minutes=15))

        async def go():
            await sched.start()
            jobs = {job.id for job in sched.scheduler.get_jobs()}
            sched.shutdown()
            return jobs

        assert asyncio.run(go()) == {"quick_update", "detail_enrichment"}
        engine.recover_on_startup.assert_awaited_once()
