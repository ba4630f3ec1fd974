"""
Entity Repository — Projects and InvestmentRelationships.

All writes go through here so that project identity (the canonical link) is
resolved in one place: listing upserts, find-or-create for investors
discovered in funding rounds, append-only edge creation, and the queue
queries that drive each detail crawl.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import select, update, func, or_, and_, exists, not_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from enrichment.links import PLACEHOLDER_SCHEME, name_from_link
from .models import Project, InvestmentRelationship

logger = logging.getLogger(__name__)

# Listing rows may only write these columns
LISTING_COLUMNS = (
    "project_name", "project_link", "description", "round", "amount",
    "formatted_amount", "valuation", "formatted_valuation", "date",
    "funded_at", "is_initial", "original_page_number",
)


class QueueKind(str, Enum):
    """Which projects a detail crawl works through."""
    INITIAL = "initial"
    SECONDARY = "secondary"
    REPAIR = "repair"
    RETRY_FAILED = "retry_failed"


@dataclass
class EdgeData:
    """One investor → funded-project edge discovered in a funding round."""
    investor_project_id: int
    funded_project_id: int
    round: Optional[str] = None
    amount: Optional[str] = None
    formatted_amount: Optional[float] = None
    valuation: Optional[str] = None
    formatted_valuation: Optional[float] = None
    date: Optional[int] = None
    lead: bool = False

    def key(self) -> Tuple:
        return (self.investor_project_id, self.funded_project_id, self.round, self.date)


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def _names_disagree(project: Project) -> bool:
    """Repair heuristic: stored name differs from the name embedded in the link."""
    from_link = name_from_link(project.project_link)
    if not from_link:
        return False
    normalize = lambda s: " ".join((s or "").lower().split())
    return normalize(from_link) != normalize(project.project_name)


class ProjectRepository:
    """Async data access for the fundraising graph."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    # ── Identity ────────────────────────────────────

    async def get_by_link(self, project_link: str) -> Optional[Project]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Project).where(Project.project_link == project_link)
            )
            return result.scalar_one_or_none()

    async def get_project(self, project_id: int, with_edges: bool = False) -> Optional[Project]:
        async with self.session_factory() as session:
            query = select(Project).where(Project.id == project_id)
            if with_edges:
                query = query.options(*self._edge_loaders())
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def find_or_create_project(self, project_link: str, seed: Optional[dict] = None) -> Project:
        """
        Return the project for a canonical link, creating a non-initial one if needed.
        `seed` supplies columns for a newly created row (at least project_name).
        """
        existing = await self.get_by_link(project_link)
        if existing:
            return existing

        seed = dict(seed or {})
        seed.pop("project_link", None)
        seed.setdefault("project_name", project_link)
        seed["is_initial"] = False

        async with self.session_factory() as session:
            project = Project(project_link=project_link, **seed)
            session.add(project)
            try:
                await session.commit()
                logger.debug(f"  [repo] Created project {project.project_name} ({project_link})")
                return project
            except IntegrityError:
                # Lost a race on the unique link; read the winner's row
                await session.rollback()

        existing = await self.get_by_link(project_link)
        if existing is None:
            raise RuntimeError(f"Project vanished after unique conflict: {project_link}")
        return existing

    # ── Listing ─────────────────────────────────────

    async def upsert_listing_batch(self, rows: List[dict]) -> int:
        """
        Insert-or-update listing rows keyed by project_link.
        On conflict every supplied column is overwritten except the key and
        original_page_number, which keeps the page where the project was first seen.
        """
        if not rows:
            return 0

        clean = []
        seen = set()
        for row in rows:
            link = row.get("project_link")
            if not link or link in seen:
                continue
            seen.add(link)
            clean.append({k: v for k, v in row.items() if k in LISTING_COLUMNS})
        if not clean:
            return 0

        async with self.session_factory() as session:
            dialect = session.bind.dialect.name
            insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
            now = datetime.now(timezone.utc)
            for row in clean:
                row.setdefault("created_at", now)
                row["updated_at"] = now

            stmt = insert_fn(Project).values(clean)
            update_columns = {
                col: getattr(stmt.excluded, col)
                for col in clean[0].keys()
                if col not in ("project_link", "created_at", "original_page_number")
            }
            update_columns["original_page_number"] = func.coalesce(
                Project.__table__.c.original_page_number,
                stmt.excluded.original_page_number,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[Project.__table__.c.project_link],
                set_=update_columns,
            )
            await session.execute(stmt)
            await session.commit()

        return len(clean)

    # ── Edges ───────────────────────────────────────

    async def create_relationships(self, edges: Iterable[EdgeData]) -> int:
        """
        Append investment edges. An edge already recorded for the same
        (investor, funded project, round, date) is skipped, so re-enriching a
        project never multiplies its edges. Returns the number inserted.
        """
        edges = list(edges)
        if not edges:
            return 0

        funded_ids = {e.funded_project_id for e in edges}
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    InvestmentRelationship.investor_project_id,
                    InvestmentRelationship.funded_project_id,
                    InvestmentRelationship.round,
                    InvestmentRelationship.date,
                ).where(InvestmentRelationship.funded_project_id.in_(funded_ids))
            )
            known = {tuple(row) for row in result.all()}

            inserted = 0
            for edge in edges:
                if edge.key() in known:
                    continue
                known.add(edge.key())
                session.add(InvestmentRelationship(
                    investor_project_id=edge.investor_project_id,
                    funded_project_id=edge.funded_project_id,
                    round=edge.round,
                    amount=edge.amount,
                    formatted_amount=edge.formatted_amount,
                    valuation=edge.valuation,
                    formatted_valuation=edge.formatted_valuation,
                    date=edge.date,
                    lead=edge.lead,
                ))
                inserted += 1
            await session.commit()

        return inserted

    async def count_relationships(self, funded_project_id: Optional[int] = None) -> int:
        async with self.session_factory() as session:
            query = select(func.count(InvestmentRelationship.id))
            if funded_project_id is not None:
                query = query.where(InvestmentRelationship.funded_project_id == funded_project_id)
            return (await session.execute(query)).scalar() or 0

    # ── Detail queues ───────────────────────────────

    async def query_detail_candidates(
        self,
        kind: QueueKind,
        max_failures: int = 3,
        retry_floor: int = 3,
        sentinel: int = 99,
        limit: Optional[int] = None,
    ) -> List[Project]:
        """Projects that still need detail enrichment, in processing order."""
        kind = QueueKind(kind)
        real_link = not_(Project.project_link.like(f"{PLACEHOLDER_SCHEME}%"))

        if kind == QueueKind.INITIAL:
            has_edges = exists().where(InvestmentRelationship.funded_project_id == Project.id)
            query = (
                select(Project)
                .where(
                    Project.is_initial.is_(True),
                    not_(has_edges),
                    Project.detail_failures_number <= max_failures,
                    real_link,
                )
                .order_by(
                    Project.original_page_number.is_(None),
                    Project.original_page_number.asc(),
                    Project.id.asc(),
                )
            )
        elif kind == QueueKind.SECONDARY:
            query = (
                select(Project)
                .where(
                    Project.is_initial.is_(False),
                    Project.social_links.is_(None),
                    Project.detail_failures_number <= max_failures,
                    real_link,
                )
                .order_by(Project.id.asc())
            )
        elif kind == QueueKind.RETRY_FAILED:
            query = (
                select(Project)
                .where(
                    Project.is_initial.is_(True),
                    Project.detail_failures_number > retry_floor,
                    Project.detail_failures_number < sentinel,
                    real_link,
                )
                .order_by(Project.detail_failures_number.asc(), Project.id.asc())
            )
        else:
            query = (
                select(Project)
                .where(
                    Project.description.is_not(None),
                    Project.description != "",
                    real_link,
                )
                .order_by(Project.id.asc())
            )

        if limit and kind != QueueKind.REPAIR:
            query = query.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(query)
            projects = list(result.scalars().all())

        if kind == QueueKind.REPAIR:
            projects = [p for p in projects if _names_disagree(p)]
            if limit:
                projects = projects[:limit]
        return projects

    # ── Detail outcomes ─────────────────────────────

    async def record_detail_success(self, project_id: int, fields: dict, failures_number: int = 0):
        """Persist extracted detail fields and mark the fetch time."""
        values = {k: v for k, v in fields.items() if v is not None}
        values["detail_fetched_at"] = _now_ms()
        values["detail_failures_number"] = failures_number
        values["updated_at"] = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            await session.execute(
                update(Project).where(Project.id == project_id).values(**values)
            )
            await session.commit()

    async def record_detail_failure(self, project_id: int) -> int:
        """Bump the failure counter. detail_fetched_at is left alone."""
        async with self.session_factory() as session:
            await session.execute(
                update(Project)
                .where(Project.id == project_id)
                .values(detail_failures_number=Project.detail_failures_number + 1)
            )
            await session.commit()
            result = await session.execute(
                select(Project.detail_failures_number).where(Project.id == project_id)
            )
            return result.scalar() or 0

    # ── Read side (API) ─────────────────────────────

    @staticmethod
    def _edge_loaders():
        return (
            selectinload(Project.investments_received).selectinload(InvestmentRelationship.investor_project),
            selectinload(Project.investments_given).selectinload(InvestmentRelationship.funded_project),
        )

    async def search_projects(
        self,
        page: int = 1,
        limit: int = 30,
        keyword: Optional[str] = None,
        sort: Optional[str] = None,
        initial_only: bool = True,
    ) -> Tuple[List[Project], int]:
        """Paginated project listing with edges and counterparties loaded."""
        query = select(Project)
        if initial_only:
            query = query.where(Project.is_initial.is_(True))
        if keyword:
            pattern = f"%{keyword}%"
            query = query.where(or_(
                Project.project_name.ilike(pattern),
                and_(Project.description.is_not(None), Project.description.ilike(pattern)),
            ))

        async with self.session_factory() as session:
            count_query = select(func.count()).select_from(query.subquery())
            total = (await session.execute(count_query)).scalar() or 0

            if sort == "fundedAt":
                query = query.order_by(Project.funded_at.desc().nulls_last(), Project.id.asc())
            else:
                query = query.order_by(Project.id.asc())
            query = query.options(*self._edge_loaders())
            query = query.offset((page - 1) * limit).limit(limit)
            result = await session.execute(query)
            projects = list(result.scalars().all())

        return projects, total

    async def count_projects(self, initial: Optional[bool] = None) -> int:
        async with self.session_factory() as session:
            query = select(func.count(Project.id))
            if initial is not None:
                query = query.where(Project.is_initial.is_(initial))
            return (await session.execute(query)).scalar() or 0
