"""
╔══════════════════════════════════════════════════════════════╗
║                                                              ║
║   🕷️  CRAWL ENGINE — Fundraising Graph                        ║
║                                                              ║
║   Sweeps the fundraising listing, enriches project detail    ║
║   pages and links investors to the projects they funded.     ║
║                                                              ║
║   Usage:                                                     ║
║     python engine.py --crawl full             # Full sweep   ║
║     python engine.py --crawl full --start-page 40            ║
║     python engine.py --crawl quick            # Pages 1-3    ║
║     python engine.py --crawl detail           # Enrichment   ║
║     python engine.py --scheduler              # Daemon       ║
║                                                              ║
╚══════════════════════════════════════════════════════════════╝
"""

import asyncio
import argparse
import logging
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

# ── Internal modules ──
from adapters.base import CrawlItemError, ExtractionError, PageFetcher, ListingRow
from adapters.browser import CrawlerService
from adapters.rootdata import RootDataAdapter
from api.repository import ProjectRepository, QueueKind, EdgeData
from config.loader import CrawlerSettings, load_settings
from enrichment.crawl_state import (
    CrawlStateStore, CrawlType, CrawlStatus, SpareMode, CrawlProgress,
    CrawlAlreadyRunning, LONG_RUNNING_TYPES,
)
from stealth.behavior import Pacing
from stealth.fingerprint import ContextProfiles

logger = logging.getLogger("fundgraph.engine")


# ──────────────────────────────────────────────────
#  Crawl policies
# ──────────────────────────────────────────────────

@dataclass(frozen=True)
class CrawlPolicy:
    session_name: str
    queue: Optional[QueueKind]
    label: str


CRAWL_POLICIES = {
    CrawlType.FULL: CrawlPolicy("full", None, "Full listing sweep"),
    CrawlType.QUICK: CrawlPolicy("quick", None, "Quick listing update"),
    CrawlType.DETAIL: CrawlPolicy("detail", QueueKind.INITIAL, "Initial project details"),
    CrawlType.DETAIL2: CrawlPolicy("detail2", QueueKind.SECONDARY, "Investor project details"),
    CrawlType.SPARE: CrawlPolicy("spare", None, "Repair / retry-failed"),
}

SPARE_QUEUES = {
    SpareMode.REPAIR: QueueKind.REPAIR,
    SpareMode.RETRY_FAILED: QueueKind.RETRY_FAILED,
}

# Operation names accepted by the CLI, the API and the scheduler
OPERATIONS = {
    "full": (CrawlType.FULL, None),
    "quick": (CrawlType.QUICK, None),
    "detail": (CrawlType.DETAIL, None),
    "detail2": (CrawlType.DETAIL2, None),
    "repair": (CrawlType.SPARE, SpareMode.REPAIR),
    "retry-failed": (CrawlType.SPARE, SpareMode.RETRY_FAILED),
}


def resolve_operation(operation: str):
    try:
        return OPERATIONS[operation]
    except KeyError:
        raise ValueError(f"Unknown crawl operation '{operation}'. Available: {', '.join(OPERATIONS)}")


class SweepAborted(Exception):
    """Too many consecutive listing pages failed; the sweep stops where it is."""


@dataclass
class CrawlResult:
    crawl_type: CrawlType
    status: CrawlStatus
    progress: CrawlProgress
    error: Optional[str] = None
    elapsed: float = 0.0


# ──────────────────────────────────────────────────
#  Engine
# ──────────────────────────────────────────────────

class CrawlEngine:
    """
    Main orchestrator. Wires together:
    - Crawl state store (mutual exclusion, progress, recovery)
    - Browser service → Page fetchers, one session per crawl type
    - RootData adapter (HTML → records)
    - Entity repository (projects, investment edges)
    """

    def __init__(self, settings: CrawlerSettings, session_factory, browser=None,
                 pacing: Pacing = None, retry_wait=None):
        self.settings = settings
        self.repo = ProjectRepository(session_factory)
        self.state = CrawlStateStore(session_factory)
        self.browser = browser or CrawlerService(
            headless=settings.session.headless,
            profiles=ContextProfiles(),
            state_store=self.state,
        )
        self.adapter = RootDataAdapter(settings.selectors, settings.source.base_origin)
        self.pacing = pacing or Pacing(settings.pacing)
        self.retry_wait = retry_wait or wait_exponential(
            multiplier=1, min=settings.retry.backoff_min_s, max=settings.retry.backoff_max_s,
        )
        self._tasks: dict = {}

    # ── Entry points ────────────────────────────────

    async def run(self, operation: str, start_page: int = 1) -> CrawlResult:
        """Foreground form: acquire the crawl type and await the whole run."""
        crawl_type, mode = resolve_operation(operation)
        await self.state.try_acquire(crawl_type)
        return await self._execute(crawl_type, mode, start_page)

    async def start(self, operation: str, start_page: int = 1) -> asyncio.Task:
        """
        Background form: acquire the crawl type, schedule the run and return
        immediately. Raises CrawlAlreadyRunning before anything is scheduled.
        """
        crawl_type, mode = resolve_operation(operation)
        await self.state.try_acquire(crawl_type)
        task = asyncio.create_task(
            self._execute(crawl_type, mode, start_page),
            name=f"crawl-{operation}",
        )
        self._tasks[crawl_type] = task

        def _forget(done: asyncio.Task):
            if self._tasks.get(crawl_type) is done:
                del self._tasks[crawl_type]
            if not done.cancelled() and done.exception() is not None:
                error = done.exception()
                logger.error(
                    f"  💥 [{crawl_type.value}] Background crawl died before recording its outcome: "
                    f"{type(error).__name__}: {error}",
                    exc_info=error,
                )

        task.add_done_callback(_forget)
        return task

    async def full_crawl(self, start_page: int = 1) -> CrawlResult:
        return await self.run("full", start_page=start_page)

    async def quick_update(self) -> CrawlResult:
        return await self.run("quick")

    async def fetch_project_details(self) -> CrawlResult:
        return await self.run("detail")

    async def fetch_investor_details(self) -> CrawlResult:
        return await self.run("detail2")

    async def repair_projects(self) -> CrawlResult:
        return await self.run("repair")

    async def retry_failed_projects(self) -> CrawlResult:
        return await self.run("retry-failed")

    @property
    def active_tasks(self) -> dict:
        return dict(self._tasks)

    # ── Run wrapper ─────────────────────────────────

    async def _execute(self, crawl_type: CrawlType, mode: Optional[SpareMode], start_page: int) -> CrawlResult:
        """
        Run one crawl to its end state. Item failures are absorbed inside the
        runners; anything escaping them marks the type failed with the message.
        """
        policy = CRAWL_POLICIES[crawl_type]
        started = time.time()
        logger.info(f"  🚀 [{crawl_type.value}] {policy.label} started")

        try:
            if crawl_type == CrawlType.FULL:
                progress = await self._sweep_listing(crawl_type, start_page=start_page)
            elif crawl_type == CrawlType.QUICK:
                progress = await self._sweep_listing(crawl_type, start_page=1, max_pages=self.settings.quick_pages)
            elif crawl_type == CrawlType.SPARE:
                mode = mode or SpareMode.REPAIR
                progress = await self._work_queue(crawl_type, SPARE_QUEUES[mode], mode)
            else:
                progress = await self._work_queue(crawl_type, policy.queue)
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            logger.error(f"  ❌ [{crawl_type.value}] Crawl failed: {message}", exc_info=True)
            await self.state.release(crawl_type, CrawlStatus.FAILED, message)
            return CrawlResult(
                crawl_type, CrawlStatus.FAILED, await self.state.progress(crawl_type),
                error=message, elapsed=time.time() - started,
            )
        finally:
            await self.browser.close_session(policy.session_name)

        await self.state.release(crawl_type, CrawlStatus.COMPLETED)
        elapsed = time.time() - started
        logger.info(
            f"  ✅ [{crawl_type.value}] Completed in {elapsed:.1f}s "
            f"({progress.total} items, {progress.failed_count} failed)"
        )
        return CrawlResult(crawl_type, CrawlStatus.COMPLETED, progress, elapsed=elapsed)

    async def _with_retry(self, label: str, fn):
        """Retry `fn` on item-level errors with exponential backoff; reraise the last one."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.retry.attempts),
            wait=self.retry_wait,
            retry=retry_if_exception_type(CrawlItemError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                logger.debug(f"  [retry] {label} attempt {attempt.retry_state.attempt_number}")
                return await fn()

    async def _maybe_recycle(self, session_name: str, fetcher: PageFetcher, fetched: int) -> PageFetcher:
        recycle_after = self.settings.session.recycle_after
        if fetched and recycle_after and fetched % recycle_after == 0:
            logger.info(f"  ♻️  [{session_name}] Recycling browser session after {fetched} fetches")
            return await self.browser.recycle(session_name)
        return fetcher

    # ── Listing sweeps ──────────────────────────────

    async def fetch_listing_page(self, fetcher: PageFetcher, page: int, timeout_ms: int) -> list[ListingRow]:
        """Load one listing page. The empty-table marker means the listing has ended."""
        sel = self.settings.selectors
        await fetcher.navigate(self.settings.source.listing_url(page), timeout_ms)
        if await fetcher.is_present(sel.listing_empty):
            return []
        await fetcher.wait_for(sel.listing_container, timeout_ms)
        return self.adapter.parse_listing(await fetcher.content(), page)

    async def _sweep_listing(self, crawl_type: CrawlType, start_page: int = 1,
                             max_pages: Optional[int] = None) -> CrawlProgress:
        policy = CRAWL_POLICIES[crawl_type]
        tag = crawl_type.value
        timeout_ms = self.settings.timeout_for(tag)
        fail_limit = self.settings.thresholds.max_consecutive_page_failures

        fetcher = await self.browser.open_session(policy.session_name)
        progress = CrawlProgress(current_page=start_page)
        page = max(1, start_page)
        fetched = 0
        consecutive_failures = 0

        while max_pages is None or page < start_page + max_pages:
            fetcher = await self._maybe_recycle(policy.session_name, fetcher, fetched)
            progress.current_page = page
            fetched += 1

            try:
                rows = await self._with_retry(
                    f"{tag} page {page}",
                    lambda: self.fetch_listing_page(fetcher, page, timeout_ms),
                )
            except CrawlItemError as e:
                progress.failed_count += 1
                consecutive_failures += 1
                logger.warning(f"  ⚠️  [{tag}] Page {page} failed after retries: {e}")
                await self.state.checkpoint(crawl_type, progress)
                if fail_limit and consecutive_failures >= fail_limit:
                    raise SweepAborted(f"{consecutive_failures} consecutive listing pages failed, last page {page}")
                page += 1
                continue

            consecutive_failures = 0
            if not rows:
                logger.info(f"  🏁 [{tag}] Page {page} is empty, listing exhausted")
                await self.state.checkpoint(crawl_type, progress)
                break

            batch = [dict(row.to_dict(), is_initial=True) for row in rows]
            saved = await self.repo.upsert_listing_batch(batch)
            progress.total += saved
            progress.last_item_key = rows[-1].project_link
            await self.state.checkpoint(crawl_type, progress)
            logger.info(f"  📄 [{tag}] Page {page}: {saved} projects saved ({progress.total} total)")

            page += 1
            await self.pacing.between_pages()

        return progress

    # ── Detail queues ───────────────────────────────

    async def _work_queue(self, crawl_type: CrawlType, kind: QueueKind,
                          mode: Optional[SpareMode] = None) -> CrawlProgress:
        policy = CRAWL_POLICIES[crawl_type]
        tag = crawl_type.value if mode is None else f"{crawl_type.value}:{mode.value}"
        thresholds = self.settings.thresholds
        timeout_ms = self.settings.timeout_for(crawl_type.value)

        candidates = await self.repo.query_detail_candidates(
            kind,
            max_failures=thresholds.max_detail_failures,
            retry_floor=thresholds.retry_failed_floor,
            sentinel=thresholds.sentinel_failures,
        )
        progress = CrawlProgress(
            total=len(candidates),
            remaining=len(candidates),
            mode=mode.value if mode else None,
        )
        await self.state.checkpoint(crawl_type, progress)
        logger.info(f"  📋 [{tag}] {len(candidates)} projects queued")
        if not candidates:
            return progress

        fetcher = await self.browser.open_session(policy.session_name)
        for fetched, project in enumerate(candidates):
            fetcher = await self._maybe_recycle(policy.session_name, fetcher, fetched)
            try:
                await self._with_retry(
                    f"{tag} {project.project_name}",
                    lambda: self.enrich_project(fetcher, project, timeout_ms),
                )
            except CrawlItemError as e:
                progress.failed_count += 1
                logger.warning(f"  ⚠️  [{tag}] {project.project_name} failed after retries: {e}")

            progress.remaining -= 1
            progress.last_item_key = project.project_link
            await self.state.checkpoint(crawl_type, progress)
            if progress.remaining:
                await self.pacing.between_items()

        return progress

    async def enrich_project(self, fetcher: PageFetcher, project, timeout_ms: int):
        """
        One detail-page attempt for a project.

        Success (name, logo and at least one social link) stores the summary and
        resets the failure counter, or sets it to the sentinel when the rounds
        table yielded no investors. Any item error bumps the counter by one and
        propagates to the retry wrapper.
        """
        sel = self.settings.selectors
        try:
            await fetcher.navigate(project.project_link, timeout_ms)
            await fetcher.wait_for(sel.detail_ready, timeout_ms)
            if await fetcher.click_matching(sel.expand_pattern):
                await self.pacing.after_click()

            edges_found = None
            if project.is_initial:
                edges_found = await self.process_rounds(fetcher, project, timeout_ms)

            summary = self.adapter.parse_summary(await fetcher.content())
            if not summary.is_complete:
                raise ExtractionError(
                    f"Incomplete detail page for {project.project_name} "
                    f"(name={bool(summary.project_name)}, logo={bool(summary.logo)}, "
                    f"links={len(summary.social_links)})"
                )
        except CrawlItemError:
            failures = await self.repo.record_detail_failure(project.id)
            logger.debug(f"  [detail] {project.project_name} failures → {failures}")
            raise

        failures = self.settings.thresholds.sentinel_failures if edges_found == 0 else 0
        await self.repo.record_detail_success(project.id, summary.to_fields(), failures)
        logger.info(
            f"  🔎 [detail] {summary.project_name}: {len(summary.social_links)} links, "
            f"{len(summary.team_members)} team"
            + (f", {edges_found} investments" if edges_found is not None else "")
        )
        return summary

    async def process_rounds(self, fetcher: PageFetcher, project, timeout_ms: int) -> int:
        """
        Open the funding-rounds tab and link every investor to `project`.
        Returns the number of (round, investor) pairs on the page; a page
        without a rounds control has none.
        """
        sel = self.settings.selectors
        if not await fetcher.click_matching(sel.rounds_pattern):
            logger.debug(f"  [rounds] {project.project_name}: no rounds tab")
            return 0
        await self.pacing.after_click()
        await fetcher.wait_for(sel.rounds_table, timeout_ms)
        rounds = self.adapter.parse_rounds(await fetcher.content())

        edges = []
        for rnd in rounds:
            for investor in rnd.investors:
                investor_project = await self.repo.find_or_create_project(
                    investor.link,
                    {"project_name": investor.name, "logo": investor.logo},
                )
                edges.append(EdgeData(
                    investor_project_id=investor_project.id,
                    funded_project_id=project.id,
                    round=rnd.round,
                    amount=rnd.amount,
                    formatted_amount=rnd.formatted_amount,
                    valuation=rnd.valuation,
                    formatted_valuation=rnd.formatted_valuation,
                    date=rnd.date,
                    lead=investor.lead,
                ))

        inserted = await self.repo.create_relationships(edges)
        logger.debug(
            f"  [rounds] {project.project_name}: {len(rounds)} rounds, "
            f"{len(edges)} investor links ({inserted} new)"
        )
        return len(edges)

    # ── Status / recovery ───────────────────────────

    async def status(self) -> list[dict]:
        rows = await self.state.all_states()
        return [
            {
                "type": row.type,
                "status": row.status,
                "last_update_time": row.last_update_time,
                "error": row.error,
                "progress": row.other_info,
            }
            for row in rows
        ]

    async def reset_status(self) -> int:
        return await self.state.reset_all()

    async def recover_on_startup(self) -> list[str]:
        """
        Reset crawl types a previous process left running or failed, then
        re-trigger each long-running one exactly once in the background.
        """
        recovered = await self.state.recover_interrupted(list(CrawlType))
        started = []
        for row in recovered:
            crawl_type = CrawlType(row.type)
            if crawl_type not in LONG_RUNNING_TYPES:
                continue

            progress = CrawlProgress.from_dict(row.other_info)
            start_page = 1
            if crawl_type == CrawlType.FULL:
                operation = "full"
                start_page = progress.current_page or 1
            elif crawl_type == CrawlType.SPARE:
                operation = "retry-failed" if progress.mode == SpareMode.RETRY_FAILED.value else "repair"
            else:
                operation = crawl_type.value

            try:
                await self.start(operation, start_page=start_page)
            except CrawlAlreadyRunning:
                logger.info(f"  [recovery] {operation} already picked up elsewhere")
                continue
            logger.info(f"  🔁 [recovery] Resumed {operation}" + (f" at page {start_page}" if start_page > 1 else ""))
            started.append(operation)
        return started

    async def shutdown(self):
        """
        Cancel in-flight crawls and close the browser. Cancelled crawl types
        stay `running` so the next startup resumes them.
        """
        for task in list(self._tasks.values()):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        await self.browser.force_close()


# ──────────────────────────────────────────────────
#  CLI
# ──────────────────────────────────────────────────

def _print_banner(args, settings: CrawlerSettings):
    print()
    print("  ╔══════════════════════════════════════════╗")
    print("  ║   🕷️  CRAWL ENGINE                        ║")
    print("  ║   Fundraising Graph                      ║")
    print("  ╚══════════════════════════════════════════╝")
    print()
    print(f"  ⏰  {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"  🎯  Mode: {'SCHEDULER' if args.scheduler else args.crawl}")
    print(f"  🌍  Source: {settings.source.base_origin}")
    print(f"  🖥️  Headless: {'YES' if settings.session.headless else 'NO'}")
    print()


def _print_summary(result: CrawlResult):
    progress = result.progress
    print(f"\n{'='*60}")
    print("  📊  CRAWL SUMMARY")
    print(f"{'='*60}")
    print(f"  🏷️  Type: {result.crawl_type.value}" + (f" ({progress.mode})" if progress.mode else ""))
    print(f"  {'✅' if result.status == CrawlStatus.COMPLETED else '❌'}  Status: {result.status.value}")
    print(f"  ⏱️  Duration: {result.elapsed:.1f}s")
    print(f"  📝  Items: {progress.total}")
    print(f"  ⚠️  Failed: {progress.failed_count}")
    if progress.current_page:
        print(f"  📄  Last page: {progress.current_page}")
    if result.error:
        print(f"  💥  Error: {result.error}")
    print()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="🕷️ CRAWL — Fundraising Graph",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--crawl", type=str, default="", choices=list(OPERATIONS),
        help="Run one crawl operation in the foreground",
    )
    parser.add_argument(
        "--start-page", type=int, default=1,
        help="First listing page for a full sweep (default: 1)",
    )
    parser.add_argument(
        "--scheduler", action="store_true",
        help="Run the recurring schedule (quick twice daily, details every 30 min)",
    )
    parser.add_argument(
        "--headless", action="store_true",
        help="Force headless browser regardless of config",
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="Path to crawler YAML (default: $CRAWLER_CONFIG or config/crawler.yaml)",
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Debug logging with full tracebacks",
    )
    args = parser.parse_args(argv)
    if not args.crawl and not args.scheduler:
        parser.error("one of --crawl or --scheduler is required")
    return args


async def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(message)s",
    )

    settings = load_settings(args.config)
    if args.headless:
        settings.session.headless = True
    _print_banner(args, settings)

    from api.database import async_session, init_db
    try:
        await init_db()
    except (SQLAlchemyError, OSError) as e:
        print(f"  ❌  Could not initialise database: {e}")
        return 1

    engine = CrawlEngine(settings, async_session)

    if args.scheduler:
        from scheduler.jobs import CrawlScheduler
        scheduler = CrawlScheduler(engine, settings.schedule)
        await scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            scheduler.shutdown()
            await engine.shutdown()
        return 0

    try:
        result = await engine.run(args.crawl, start_page=args.start_page)
    except CrawlAlreadyRunning as e:
        print(f"\n  ⏭️  {e} — use POST /api/fundraising/status/reset if it is stale")
        return 1
    finally:
        await engine.browser.force_close()

    _print_summary(result)
    return 0 if result.status == CrawlStatus.COMPLETED else 1


def run_cli():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run_cli()
