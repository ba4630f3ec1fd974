"""
Tests for the crawl engine: listing sweeps, detail enrichment, failure
counters, session recycling, run-level failures and startup recovery.
Run with: venv/bin/python -m pytest tests/test_engine.py -v
"""

import asyncio
import logging
import os
import sys
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError
from tenacity import wait_none

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from adapters.base import FetchError
from api.repository import QueueKind
from config.loader import CrawlerSettings
from engine import CrawlEngine, CRAWL_POLICIES, OPERATIONS, resolve_operation, parse_args, main
from enrichment.crawl_state import CrawlType, CrawlStatus, CrawlProgress, CrawlAlreadyRunning, SpareMode
from stealth.behavior import Pacing
from html_pages import FakeFetcher, FakeBrowser, listing_page, detail_page, EMPTY_LISTING, project_url, project_path

SETTINGS = CrawlerSettings()


def listing_url(page):
    return SETTINGS.source.listing_url(page)


def make_engine(session_factory, pages, **overrides):
    settings = CrawlerSettings()
    for key, value in overrides.items():
        section, _, field = key.partition("__")
        setattr(getattr(settings, section), field, value)
    fetcher = FakeFetcher(pages)
    engine = CrawlEngine(
        settings,
        session_factory,
        browser=FakeBrowser(fetcher),
        pacing=Pacing(settings.pacing, speed_factor=0),
        retry_wait=wait_none(),
    )
    return engine, fetcher


def seed_initial(engine, *names, page=1):
    rows = [{
        "project_name": name,
        "project_link": project_url(name),
        "description": f"{name} project",
        "is_initial": True,
        "original_page_number": page,
    } for name in names]
    asyncio.run(engine.repo.upsert_listing_batch(rows))


ROUNDS = [
    ("Series A", "$10 M", "--", "May, 2018", [
        ("Paradigm", project_path("Paradigm"), True),
        ("Angel Bob", "javascript:void(0)", False),
    ]),
]


# ──────────────────────────────────────────────────
#  Operations table
# ──────────────────────────────────────────────────

class TestOperations:
    def test_every_type_has_policy(self):
        assert set(CRAWL_POLICIES) == set(CrawlType)

    def test_spare_modes(self):
        assert resolve_operation("repair") == (CrawlType.SPARE, SpareMode.REPAIR)
        assert resolve_operation("retry-failed") == (CrawlType.SPARE, SpareMode.RETRY_FAILED)

    def test_unknown_operation(self):
        with pytest.raises(ValueError):
            resolve_operation("everything")

    def test_cli_choices_match(self):
        assert parse_args(["--crawl", "detail2"]).crawl == "detail2"
        assert set(OPERATIONS) == {"full", "quick", "detail", "detail2", "repair", "retry-failed"}

    def test_cli_requires_mode(self):
        with pytest.raises(SystemExit):
            parse_args([])


# ──────────────────────────────────────────────────
#  Listing sweeps
# ──────────────────────────────────────────────────

class TestFullSweep:
    def test_end_to_end_two_pages(self, session_factory):
        names = [f"Project{i}" for i in range(20)]
        engine, fetcher = make_engine(session_factory, {
            listing_url(1): listing_page(names),
            listing_url(2): EMPTY_LISTING,
        })

        async def go():
            result = await engine.full_crawl()
            return result, await engine.repo.count_projects(initial=True), await engine.state.get(CrawlType.FULL)

        result, count, state = asyncio.run(go())
        assert count == 20
        assert result.status == CrawlStatus.COMPLETED
        assert result.progress.total == 20
        assert state.status == "completed"
        assert state.other_info["current_page"] == 2
        assert fetcher.visits == [listing_url(1), listing_url(2)]
        assert engine.browser.closed_sessions == ["full"]

    def test_last_update_time_advances_per_page(self, session_factory):
        engine, _ = make_engine(session_factory, {
            listing_url(1): listing_page(["A", "B"]),
            listing_url(2): listing_page(["C"]),
            listing_url(3): EMPTY_LISTING,
        })
        stamps = []
        checkpoint = engine.state.checkpoint

        async def recording_checkpoint(crawl_type, progress):
            await checkpoint(crawl_type, progress)
            stamps.append((progress.current_page, (await engine.state.get(crawl_type)).last_update_time))

        engine.state.checkpoint = recording_checkpoint
        asyncio.run(engine.full_crawl())

        assert [page for page, _ in stamps] == [1, 2, 3]
        times = [t for _, t in stamps]
        assert times[0] < times[1] < times[2]

    def test_projects_record_first_page(self, session_factory):
        engine, _ = make_engine(session_factory, {
            listing_url(1): listing_page(["A"]),
            listing_url(2): listing_page(["B"]),
            listing_url(3): EMPTY_LISTING,
        })

        async def go():
            await engine.full_crawl()
            return await engine.repo.get_by_link(project_url("B"))

        assert asyncio.run(go()).original_page_number == 2

    def test_start_page(self, session_factory):
        engine, fetcher = make_engine(session_factory, {
            listing_url(5): listing_page(["A"]),
            listing_url(6): EMPTY_LISTING,
        })
        asyncio.run(engine.full_crawl(start_page=5))
        assert fetcher.visits == [listing_url(5), listing_url(6)]

    def test_flaky_page_retried(self, session_factory):
        calls = {"n": 0}

        def flaky():
            calls["n"] += 1
            if calls["n"] == 1:
                raise FetchError("timeout")
            return listing_page(["A", "B"])

        engine, _ = make_engine(session_factory, {listing_url(1): flaky, listing_url(2): EMPTY_LISTING})
        result = asyncio.run(engine.full_crawl())
        assert calls["n"] == 2
        assert result.progress.total == 2
        assert result.progress.failed_count == 0

    def test_failed_page_skipped(self, session_factory):
        engine, fetcher = make_engine(session_factory, {
            listing_url(1): FetchError("down"),
            listing_url(2): listing_page(["A"]),
            listing_url(3): EMPTY_LISTING,
        })
        result = asyncio.run(engine.full_crawl())
        assert result.status == CrawlStatus.COMPLETED
        assert result.progress.failed_count == 1
        assert fetcher.visits.count(listing_url(1)) == 3

    def test_consecutive_failures_abort_run(self, session_factory):
        engine, _ = make_engine(session_factory, {}, thresholds__max_consecutive_page_failures=2)

        async def go():
            result = await engine.full_crawl(start_page=4)
            return result, await engine.state.get(CrawlType.FULL)

        result, state = asyncio.run(go())
        assert result.status == CrawlStatus.FAILED
        assert state.status == "failed"
        assert "SweepAborted" in state.error
        assert state.other_info["current_page"] == 5

    def test_already_running(self, session_factory):
        engine, _ = make_engine(session_factory, {})

        async def go():
            await engine.state.try_acquire(CrawlType.FULL)
            await engine.full_crawl()

        with pytest.raises(CrawlAlreadyRunning):
            asyncio.run(go())


class TestQuickUpdate:
    def test_only_first_pages(self, session_factory):
        pages = {listing_url(p): listing_page([f"P{p}"]) for p in range(1, 6)}
        engine, fetcher = make_engine(session_factory, pages)
        result = asyncio.run(engine.quick_update())
        assert result.status == CrawlStatus.COMPLETED
        assert fetcher.visits == [listing_url(1), listing_url(2), listing_url(3)]
        assert result.progress.total == 3

    def test_stops_early_on_empty(self, session_factory):
        engine, fetcher = make_engine(session_factory, {
            listing_url(1): listing_page(["A"]),
            listing_url(2): EMPTY_LISTING,
        })
        asyncio.run(engine.quick_update())
        assert fetcher.visits == [listing_url(1), listing_url(2)]


# ──────────────────────────────────────────────────
#  Detail enrichment and the failure counter
# ──────────────────────────────────────────────────

class TestInitialDetails:
    def test_rounds_create_investors_and_edges(self, session_factory):
        engine, fetcher = make_engine(session_factory, {project_url("Ripple"): detail_page("Ripple", rounds=ROUNDS)})
        seed_initial(engine, "Ripple")

        async def go():
            result = await engine.fetch_project_details()
            ripple = await engine.repo.get_by_link(project_url("Ripple"))
            return result, await engine.repo.get_project(ripple.id, with_edges=True)

        result, ripple = asyncio.run(go())
        assert result.status == CrawlStatus.COMPLETED
        assert ripple.detail_failures_number == 0
        assert ripple.detail_fetched_at is not None
        assert ripple.social_links["website"] == "https://example.org"
        assert ripple.team_members[0]["name"] == "Jane Doe"

        edges = {e.investor_project.project_name: e for e in ripple.investments_received}
        assert set(edges) == {"Paradigm", "Angel Bob"}
        assert edges["Paradigm"].lead is True
        assert edges["Paradigm"].formatted_amount == 10_000_000
        assert edges["Angel Bob"].investor_project.project_link.startswith("javascript:void(0)#")
        assert edges["Paradigm"].investor_project.is_initial is False
        assert "Expand More" in fetcher.clicks

    def test_zero_rounds_sets_sentinel(self, session_factory):
        engine, _ = make_engine(session_factory, {project_url("Solo"): detail_page("Solo", rounds_tab=False)})
        seed_initial(engine, "Solo")

        async def go():
            await engine.fetch_project_details()
            return await engine.repo.get_by_link(project_url("Solo"))

        solo = asyncio.run(go())
        assert solo.detail_failures_number == 99
        assert solo.detail_fetched_at is not None

    def test_empty_rounds_table_sets_sentinel(self, session_factory):
        engine, _ = make_engine(session_factory, {project_url("Solo"): detail_page("Solo", rounds=[])})
        seed_initial(engine, "Solo")

        async def go():
            await engine.fetch_project_details()
            return await engine.repo.get_by_link(project_url("Solo"))

        assert asyncio.run(go()).detail_failures_number == 99

    def test_failed_attempt_increments_by_one(self, session_factory):
        engine, _ = make_engine(
            session_factory,
            {project_url("Broken"): detail_page("Broken", logo=False)},
            retry__attempts=1,
        )
        seed_initial(engine, "Broken")

        async def go():
            result = await engine.fetch_project_details()
            return result, await engine.repo.get_by_link(project_url("Broken"))

        result, broken = asyncio.run(go())
        assert result.status == CrawlStatus.COMPLETED
        assert result.progress.failed_count == 1
        assert broken.detail_failures_number == 1
        assert broken.detail_fetched_at is None

    def test_each_retry_counts(self, session_factory):
        engine, fetcher = make_engine(session_factory, {project_url("Broken"): FetchError("timeout")})
        seed_initial(engine, "Broken")

        async def go():
            await engine.fetch_project_details()
            return await engine.repo.get_by_link(project_url("Broken"))

        assert asyncio.run(go()).detail_failures_number == 3
        assert fetcher.visits.count(project_url("Broken")) == 3

    def test_success_resets_counter(self, session_factory):
        engine, _ = make_engine(session_factory, {project_url("Ripple"): detail_page("Ripple", rounds=ROUNDS)})
        seed_initial(engine, "Ripple")

        async def go():
            ripple = await engine.repo.get_by_link(project_url("Ripple"))
            await engine.repo.record_detail_failure(ripple.id)
            await engine.repo.record_detail_failure(ripple.id)
            await engine.fetch_project_details()
            return await engine.repo.get_by_link(project_url("Ripple"))

        assert asyncio.run(go()).detail_failures_number == 0

    def test_reenrichment_keeps_edges_unique(self, session_factory):
        engine, _ = make_engine(session_factory, {project_url("Ripple"): detail_page("Ripple", rounds=ROUNDS)})
        seed_initial(engine, "Ripple")

        async def go():
            ripple = await engine.repo.get_by_link(project_url("Ripple"))
            await engine.enrich_project(engine.browser.fetcher, ripple, 1000)
            await engine.enrich_project(engine.browser.fetcher, ripple, 1000)
            return await engine.repo.count_relationships(ripple.id), await engine.repo.get_by_link(project_url("Ripple"))

        count, ripple = asyncio.run(go())
        assert count == 2
        assert ripple.detail_failures_number == 0

    def test_recycles_session(self, session_factory):
        names = [f"P{i}" for i in range(5)]
        pages = {project_url(n): detail_page(n, rounds=ROUNDS) for n in names}
        engine, _ = make_engine(session_factory, pages, session__recycle_after=2)
        seed_initial(engine, *names)
        asyncio.run(engine.fetch_project_details())
        assert engine.browser.recycled == ["detail", "detail"]

    def test_progress_checkpointed(self, session_factory):
        names = ["A", "B"]
        engine, _ = make_engine(session_factory, {project_url(n): detail_page(n, rounds=ROUNDS) for n in names})
        seed_initial(engine, *names)

        async def go():
            await engine.fetch_project_details()
            return await engine.state.progress(CrawlType.DETAIL)

        progress = asyncio.run(go())
        assert progress.total == 2
        assert progress.remaining == 0
        assert progress.last_item_key == project_url("B")


class TestSecondaryAndSpare:
    def test_investor_details_skip_rounds(self, session_factory):
        engine, fetcher = make_engine(session_factory, {project_url("Paradigm"): detail_page("Paradigm", rounds_tab=False)})

        async def go():
            await engine.repo.find_or_create_project(project_url("Paradigm"), {"project_name": "Paradigm"})
            result = await engine.fetch_investor_details()
            return result, await engine.repo.get_by_link(project_url("Paradigm"))

        result, paradigm = asyncio.run(go())
        assert result.status == CrawlStatus.COMPLETED
        assert paradigm.detail_failures_number == 0
        assert paradigm.logo is not None
        assert not any("Rounds" in c for c in fetcher.clicks)

    def test_repair_fixes_name(self, session_factory):
        link = project_url("Ripple Labs")
        engine, _ = make_engine(session_factory, {link: detail_page("Ripple Labs", rounds=ROUNDS)})

        async def go():
            await engine.repo.upsert_listing_batch([{
                "project_name": "Wrong Name", "project_link": link,
                "description": "payments", "is_initial": True, "original_page_number": 1,
            }])
            result = await engine.repair_projects()
            return result, await engine.repo.get_by_link(link)

        result, project = asyncio.run(go())
        assert result.progress.mode == "repair"
        assert project.project_name == "Ripple Labs"

    def test_retry_failed_mode(self, session_factory):
        engine, _ = make_engine(session_factory, {project_url("Flaky"): detail_page("Flaky", rounds=ROUNDS)})
        seed_initial(engine, "Flaky")

        async def go():
            flaky = await engine.repo.get_by_link(project_url("Flaky"))
            for _ in range(5):
                await engine.repo.record_detail_failure(flaky.id)
            result = await engine.retry_failed_projects()
            return result, await engine.repo.get_by_link(project_url("Flaky")), await engine.state.get(CrawlType.SPARE)

        result, flaky, state = asyncio.run(go())
        assert result.progress.total == 1
        assert flaky.detail_failures_number == 0
        assert state.other_info["mode"] == "retry_failed"


# ──────────────────────────────────────────────────
#  Run-level failures
# ──────────────────────────────────────────────────

class TestRunFailures:
    def test_queue_query_failure_marks_failed(self, session_factory):
        engine, _ = make_engine(session_factory, {})
        engine.repo.query_detail_candidates = AsyncMock(side_effect=SQLAlchemyError("db gone"))

        async def go():
            result = await engine.fetch_project_details()
            return result, await engine.state.get(CrawlType.DETAIL)

        result, state = asyncio.run(go())
        assert result.status == CrawlStatus.FAILED
        assert state.status == "failed"
        assert "db gone" in state.error
        assert engine.browser.closed_sessions == ["detail"]

    def test_failed_type_can_restart(self, session_factory):
        engine, _ = make_engine(session_factory, {})
        engine.repo.query_detail_candidates = AsyncMock(side_effect=[SQLAlchemyError("once"), []])

        async def go():
            first = await engine.fetch_project_details()
            second = await engine.fetch_project_details()
            return first, second

        first, second = asyncio.run(go())
        assert first.status == CrawlStatus.FAILED
        assert second.status == CrawlStatus.COMPLETED


# ──────────────────────────────────────────────────
#  Background runs / recovery
# ──────────────────────────────────────────────────

class TestBackgroundAndRecovery:
    def test_background_failure_is_logged(self, session_factory, caplog):
        engine, _ = make_engine(session_factory, {listing_url(1): EMPTY_LISTING})
        engine.state.release = AsyncMock(side_effect=SQLAlchemyError("db down"))

        async def go():
            task = await engine.start("quick")
            await asyncio.wait([task])
            await asyncio.sleep(0)
            return engine.active_tasks

        with caplog.at_level(logging.ERROR, logger="fundgraph.engine"):
            active = asyncio.run(go())

        assert active == {}
        assert any("db down" in r.getMessage() and "Background crawl died" in r.getMessage() for r in caplog.records)

    def test_start_runs_in_background(self, session_factory):
        engine, _ = make_engine(session_factory, {listing_url(1): EMPTY_LISTING})

        async def go():
            task = await engine.start("full")
            running = (await engine.state.get(CrawlType.FULL)).status
            with pytest.raises(CrawlAlreadyRunning):
                await engine.start("full")
            result = await task
            return running, result, engine.active_tasks

        running, result, active = asyncio.run(go())
        assert running == "running"
        assert result.status == CrawlStatus.COMPLETED
        assert active == {}

    def test_recovery_retriggers_each_once(self, session_factory):
        engine, _ = make_engine(session_factory, {})

        async def go():
            store = engine.state
            await store.try_acquire(CrawlType.FULL)
            await store.checkpoint(CrawlType.FULL, CrawlProgress(current_page=7))
            await store.try_acquire(CrawlType.SPARE)
            await store.checkpoint(CrawlType.SPARE, CrawlProgress(mode="retry_failed"))
            await store.try_acquire(CrawlType.DETAIL)
            await store.release(CrawlType.DETAIL, CrawlStatus.FAILED, "crash")
            await store.try_acquire(CrawlType.QUICK)
            await store.try_acquire(CrawlType.DETAIL2)
            await store.release(CrawlType.DETAIL2, CrawlStatus.COMPLETED)

            engine.start = AsyncMock()
            resumed = await engine.recover_on_startup()
            return resumed, engine.start.await_args_list, {s.type: s.status for s in await store.all_states()}

        resumed, calls, statuses = asyncio.run(go())
        assert sorted(resumed) == ["detail", "full", "retry-failed"]
        assert len(calls) == 3
        started = {c.args[0]: c.kwargs for c in calls}
        assert started["full"] == {"start_page": 7}
        assert statuses == {
            "full": "idle", "spare": "idle", "detail": "idle", "quick": "idle", "detail2": "completed",
        }

    def test_recovered_queue_not_smaller(self, session_factory):
        engine, _ = make_engine(session_factory, {})
        seed_initial(engine, "A", "B", "C")

        async def go():
            before = await engine.repo.query_detail_candidates(QueueKind.INITIAL)
            await engine.state.try_acquire(CrawlType.DETAIL)
            await engine.state.recover_interrupted([CrawlType.DETAIL])
            after = await engine.repo.query_detail_candidates(QueueKind.INITIAL)
            return {p.id for p in before}, {p.id for p in after}

        before, after = asyncio.run(go())
        assert after >= before

    def test_shutdown_leaves_running_for_recovery(self, session_factory):
        engine, _ = make_engine(session_factory, {})

        async def go():
            gate = asyncio.Event()

            async def stuck(*args, **kwargs):
                await gate.wait()

            engine._work_queue = stuck
            await engine.start("detail")
            await asyncio.sleep(0)
            await engine.shutdown()
            return await engine.state.get(CrawlType.DETAIL)

        state = asyncio.run(go())
        assert state.status == "running"
        assert engine.browser.force_closed is True


# ──────────────────────────────────────────────────
#  CLI
# ──────────────────────────────────────────────────

class TestMain:
    def test_db_failure_exits_1(self):
        with patch("api.database.init_db", AsyncMock(side_effect=SQLAlchemyError("no db"))):
            assert asyncio.run(main(["--crawl", "quick"])) == 1
