"""
Crawl State Store — persisted status, progress and errors per crawl type.

Provides:
- CrawlType / CrawlStatus / SpareMode: the closed set of crawl types and states
- CrawlProgress: typed progress record stored in crawl_states.other_info
- CrawlStateStore: get / create / save, the atomic try_acquire gate,
  release, checkpoints, reset and startup recovery

The `running` status is the only mutual-exclusion mechanism between crawls of
the same type, across processes too, so try_acquire must stay a single
conditional UPDATE.
"""

import logging
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from api.models import CrawlState

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500


class CrawlType(str, Enum):
    FULL = "full"
    QUICK = "quick"
    DETAIL = "detail"
    DETAIL2 = "detail2"
    SPARE = "spare"


class CrawlStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SpareMode(str, Enum):
    """Which queue the `spare` crawl type is working through."""
    REPAIR = "repair"
    RETRY_FAILED = "retry_failed"


# Types whose interrupted runs are re-triggered on startup
LONG_RUNNING_TYPES = (CrawlType.FULL, CrawlType.DETAIL, CrawlType.DETAIL2, CrawlType.SPARE)


class CrawlAlreadyRunning(Exception):
    """Raised when a crawl type is started while another run of it is in progress."""

    def __init__(self, crawl_type):
        self.crawl_type = CrawlType(crawl_type)
        super().__init__(f"{self.crawl_type.value} crawl already in progress")


@dataclass
class CrawlProgress:
    """Progress checkpoint for one crawl run."""
    total: int = 0
    remaining: int = 0
    failed_count: int = 0
    last_item_key: Optional[str] = None
    current_page: Optional[int] = None
    mode: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Optional[dict]) -> "CrawlProgress":
        if not raw:
            return cls()
        known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class Lease:
    """Proof that the caller moved a crawl type into `running`."""
    crawl_type: CrawlType
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class CrawlStateStore:
    """
    Reads and writes crawl_states rows through an async session factory.
    Each call opens its own short session so callers never share transactions.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    # ── Basic access ────────────────────────────────

    async def get(self, crawl_type) -> Optional[CrawlState]:
        crawl_type = CrawlType(crawl_type)
        async with self.session_factory() as session:
            result = await session.execute(
                select(CrawlState).where(CrawlState.type == crawl_type.value)
            )
            return result.scalar_one_or_none()

    async def create_if_absent(self, crawl_type) -> CrawlState:
        crawl_type = CrawlType(crawl_type)
        existing = await self.get(crawl_type)
        if existing:
            return existing

        async with self.session_factory() as session:
            row = CrawlState(type=crawl_type.value, status=CrawlStatus.IDLE.value)
            session.add(row)
            try:
                await session.commit()
                return row
            except IntegrityError:
                # Another caller created it between our read and insert
                await session.rollback()
        return await self.get(crawl_type)

    async def save(self, state: CrawlState) -> CrawlState:
        async with self.session_factory() as session:
            merged = await session.merge(state)
            await session.commit()
            return merged

    async def all_states(self) -> List[CrawlState]:
        async with self.session_factory() as session:
            result = await session.execute(select(CrawlState).order_by(CrawlState.id))
            return list(result.scalars().all())

    # ── Mutual exclusion ────────────────────────────

    async def try_acquire(self, crawl_type) -> Lease:
        """
        Atomically flip a crawl type to `running`.
        Raises CrawlAlreadyRunning if it already is.
        """
        crawl_type = CrawlType(crawl_type)
        await self.create_if_absent(crawl_type)

        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            result = await session.execute(
                update(CrawlState)
                .where(
                    CrawlState.type == crawl_type.value,
                    CrawlState.status != CrawlStatus.RUNNING.value,
                )
                .values(status=CrawlStatus.RUNNING.value, error=None, last_update_time=now)
            )
            await session.commit()

        if result.rowcount != 1:
            raise CrawlAlreadyRunning(crawl_type)

        logger.info(f"  [state] {crawl_type.value} → running")
        return Lease(crawl_type=crawl_type, acquired_at=now)

    async def release(self, crawl_type, outcome, error: Optional[str] = None):
        """Move a crawl type to completed, failed (with error) or idle."""
        crawl_type = CrawlType(crawl_type)
        outcome = CrawlStatus(outcome)
        values = {
            "status": outcome.value,
            "last_update_time": datetime.now(timezone.utc),
            "error": error[:MAX_ERROR_LENGTH] if (error and outcome == CrawlStatus.FAILED) else None,
        }
        async with self.session_factory() as session:
            await session.execute(
                update(CrawlState).where(CrawlState.type == crawl_type.value).values(**values)
            )
            await session.commit()
        logger.info(f"  [state] {crawl_type.value} → {outcome.value}")

    # ── Progress ────────────────────────────────────

    async def checkpoint(self, crawl_type, progress: CrawlProgress):
        crawl_type = CrawlType(crawl_type)
        async with self.session_factory() as session:
            await session.execute(
                update(CrawlState)
                .where(CrawlState.type == crawl_type.value)
                .values(other_info=progress.to_dict(), last_update_time=datetime.now(timezone.utc))
            )
            await session.commit()

    async def progress(self, crawl_type) -> CrawlProgress:
        state = await self.get(crawl_type)
        return CrawlProgress.from_dict(state.other_info if state else None)

    # ── Reset / recovery ────────────────────────────

    async def reset_all(self) -> int:
        """Operator reset: every crawl type back to idle, errors and progress cleared."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(CrawlState).values(
                    status=CrawlStatus.IDLE.value,
                    error=None,
                    other_info=None,
                    last_update_time=datetime.now(timezone.utc),
                )
            )
            await session.commit()
        logger.info(f"  [state] Reset {result.rowcount} crawl states to idle")
        return result.rowcount

    async def recover_interrupted(self, crawl_types: Iterable = LONG_RUNNING_TYPES) -> List[CrawlState]:
        """
        Force rows left in running/failed back to idle.
        Returns the rows as they were before the reset, progress included.
        """
        types = [CrawlType(t).value for t in crawl_types]
        interrupted = (CrawlStatus.RUNNING.value, CrawlStatus.FAILED.value)

        async with self.session_factory() as session:
            result = await session.execute(
                select(CrawlState).where(
                    CrawlState.type.in_(types),
                    CrawlState.status.in_(interrupted),
                )
            )
            rows = list(result.scalars().all())
            if rows:
                await session.execute(
                    update(CrawlState)
                    .where(CrawlState.id.in_([r.id for r in rows]))
                    .values(status=CrawlStatus.IDLE.value, error=None)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

        for row in rows:
            logger.warning(f"  [state] Recovered interrupted {row.type} crawl (was {row.status})")
        return rows

    async def any_running(self) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CrawlState.id).where(CrawlState.status == CrawlStatus.RUNNING.value).limit(1)
            )
            return result.first() is not None
