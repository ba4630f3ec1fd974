"""
Fundraising graph queries and crawl control endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from engine import OPERATIONS
from enrichment.crawl_state import CrawlAlreadyRunning
from ..models import Project
from ..schemas import (
    ProjectBrief, ProjectResponse, ProjectList, InvestorEdge, InvestmentEdge,
    CrawlStartResponse, CrawlStateResponse, StatusResetResponse,
)

router = APIRouter(prefix="/fundraising", tags=["fundraising"])

EDGE_COLUMNS = ("round", "amount", "formatted_amount", "valuation", "formatted_valuation", "date", "lead")


def get_crawl_engine(request: Request):
    """The CrawlEngine created in the app lifespan."""
    engine = getattr(request.app.state, "crawl_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Crawl engine not initialised")
    return engine


def get_repository(engine=Depends(get_crawl_engine)):
    return engine.repo


def _edge_fields(edge) -> dict:
    return {col: getattr(edge, col) for col in EDGE_COLUMNS}


def project_response(project: Project) -> ProjectResponse:
    """Project with both directions of its investment edges resolved."""
    response = ProjectResponse.model_validate(project)
    response.investors = [
        InvestorEdge(investor=ProjectBrief.model_validate(edge.investor_project), **_edge_fields(edge))
        for edge in project.investments_received
    ]
    response.investments = [
        InvestmentEdge(funded=ProjectBrief.model_validate(edge.funded_project), **_edge_fields(edge))
        for edge in project.investments_given
    ]
    return response


# ── Queries ──────────────────────────────────────

@router.get("/", response_model=ProjectList)
async def list_projects(
    page: int = Query(1, ge=1),
    limit: int = Query(30, ge=5, le=50),
    keyword: Optional[str] = Query(None, max_length=200),
    sort: Optional[str] = Query(None, pattern="^fundedAt$"),
    repo=Depends(get_repository),
):
    """Listing-sourced projects with their investors and investments."""
    projects, total = await repo.search_projects(page=page, limit=limit, keyword=keyword, sort=sort)
    return ProjectList(
        items=[project_response(p) for p in projects],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/projects/{project_id}", response_model=ProjectResponse)
async def get_project(project_id: int, repo=Depends(get_repository)):
    project = await repo.get_project(project_id, with_edges=True)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project_response(project)


# ── Crawl control ────────────────────────────────

@router.post("/crawl/{operation}", response_model=CrawlStartResponse)
async def start_crawl(
    operation: str,
    start_page: int = Query(1, ge=1, description="First listing page (full sweep only)"),
    engine=Depends(get_crawl_engine),
):
    """Start a crawl in the background. 409 if that crawl type is already running."""
    if operation not in OPERATIONS:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown crawl operation '{operation}'. Available: {', '.join(OPERATIONS)}",
        )
    try:
        await engine.start(operation, start_page=start_page if operation == "full" else 1)
    except CrawlAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    return CrawlStartResponse(message=f"{operation} crawl started", operation=operation)


@router.get("/status", response_model=list[CrawlStateResponse])
async def crawl_status(engine=Depends(get_crawl_engine)):
    return [CrawlStateResponse(**row) for row in await engine.status()]


@router.post("/status/reset", response_model=StatusResetResponse)
async def reset_status(engine=Depends(get_crawl_engine)):
    """Operator override: every crawl type back to idle."""
    count = await engine.reset_status()
    return StatusResetResponse(message="Crawl states reset to idle", reset=count)
