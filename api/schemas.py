"""
Pydantic schemas for API request/response validation.
"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel


# ── Projects ─────────────────────────────────────

class ProjectBrief(BaseModel):
    """The other end of an investment edge."""
    id: int
    project_name: str
    project_link: str
    logo: Optional[str] = None
    is_initial: bool = False

    class Config:
        from_attributes = True


class EdgeFields(BaseModel):
    round: Optional[str] = None
    amount: Optional[str] = None
    formatted_amount: Optional[float] = None
    valuation: Optional[str] = None
    formatted_valuation: Optional[float] = None
    date: Optional[int] = None
    lead: bool = False


class InvestorEdge(EdgeFields):
    """Someone who invested in this project."""
    investor: ProjectBrief


class InvestmentEdge(EdgeFields):
    """A project this project invested in."""
    funded: ProjectBrief


class ProjectResponse(BaseModel):
    id: int
    project_name: str
    project_link: str
    description: Optional[str] = None
    logo: Optional[str] = None
    social_links: Optional[Dict[str, Any]] = None
    team_members: Optional[List[Dict[str, Any]]] = None
    round: Optional[str] = None
    amount: Optional[str] = None
    formatted_amount: Optional[float] = None
    valuation: Optional[str] = None
    formatted_valuation: Optional[float] = None
    date: Optional[str] = None
    funded_at: Optional[int] = None
    is_initial: bool
    original_page_number: Optional[int] = None
    detail_fetched_at: Optional[int] = None
    detail_failures_number: int = 0
    investors: List[InvestorEdge] = []
    investments: List[InvestmentEdge] = []

    class Config:
        from_attributes = True


class ProjectList(BaseModel):
    items: List[ProjectResponse]
    total: int
    page: int
    limit: int


# ── Crawl control ────────────────────────────────

class CrawlStartResponse(BaseModel):
    message: str
    operation: str


class CrawlStateResponse(BaseModel):
    type: str
    status: str
    last_update_time: Optional[datetime] = None
    error: Optional[str] = None
    progress: Optional[Dict[str, Any]] = None


class StatusResetResponse(BaseModel):
    message: str
    reset: int
