"""
CRAWL — Page Fetcher Contract
Abstract browser capability the crawl engine drives, the item-level error
types it raises, and the records a site adapter extracts from rendered HTML.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Optional


# ──────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────

class CrawlItemError(Exception):
    """A single page or project could not be crawled. Counted, never fatal to a run."""


class FetchError(CrawlItemError):
    """Navigation failed, timed out, or an awaited element never appeared."""


class ExtractionError(CrawlItemError):
    """The page loaded but its content could not be parsed into records."""


# ──────────────────────────────────────────────────
#  Data Models
# ──────────────────────────────────────────────────

@dataclass
class ListingRow:
    """One row of the fundraising listing table."""
    project_name: str
    project_link: str
    description: Optional[str] = None
    round: Optional[str] = None
    amount: Optional[str] = None
    formatted_amount: Optional[float] = None
    valuation: Optional[str] = None
    formatted_valuation: Optional[float] = None
    date: Optional[str] = None
    funded_at: Optional[int] = None
    original_page_number: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class InvestorRef:
    """An investor named in one funding round."""
    name: str
    link: str
    logo: Optional[str] = None
    lead: bool = False


@dataclass
class RoundRow:
    """One funding round from a project's detail page."""
    round: Optional[str] = None
    amount: Optional[str] = None
    formatted_amount: Optional[float] = None
    valuation: Optional[str] = None
    formatted_valuation: Optional[float] = None
    date: Optional[int] = None
    investors: list = field(default_factory=list)


@dataclass
class TeamMember:
    name: str
    position: Optional[str] = None
    avatar_url: Optional[str] = None
    profile_url: Optional[str] = None


@dataclass
class ProjectSummary:
    """Detail-page fields for one project."""
    project_name: Optional[str] = None
    logo: Optional[str] = None
    social_links: dict = field(default_factory=dict)
    team_members: list = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return bool(self.project_name and self.logo and self.social_links)

    def to_fields(self) -> dict:
        return {
            "project_name": self.project_name,
            "logo": self.logo,
            "social_links": self.social_links,
            "team_members": [asdict(m) for m in self.team_members],
        }


# ──────────────────────────────────────────────────
#  Fetcher
# ──────────────────────────────────────────────────

class PageFetcher(ABC):
    """
    Browser capability used by the crawl engine.
    Implementations raise FetchError for anything that stops a page from
    rendering; parsing is left to the site adapter.
    """

    @abstractmethod
    async def navigate(self, url: str, timeout_ms: int):
        """Load a URL and wait for the network to settle."""

    @abstractmethod
    async def wait_for(self, selector: str, timeout_ms: int):
        """Wait for a selector to appear. FetchError on timeout."""

    @abstractmethod
    async def is_present(self, selector: str) -> bool:
        """True if at least one element currently matches."""

    @abstractmethod
    async def click_matching(self, pattern: str, selector: str = "button", timeout_ms: int = 5000) -> int:
        """
        Click every element matching `selector` whose text matches `pattern`
        (case-insensitive regex). Returns how many were clicked.
        """

    @abstractmethod
    async def content(self) -> str:
        """Current rendered HTML."""

    async def close(self):
        pass


# ── Utility helpers for adapters ──

def _safe_text(node, selector: str, default: Optional[str] = None) -> Optional[str]:
    """Safely extract text from a CSS selector within a node."""
    el = node.select_one(selector) if selector else None
    if not el:
        return default
    text = el.get_text(" ", strip=True)
    return text or default


def _safe_attr(node, selector: str, attr: str, default: Optional[str] = None) -> Optional[str]:
    """Safely extract an attribute from a CSS selector within a node."""
    el = node.select_one(selector) if selector else None
    if not el:
        return default
    value = el.get(attr)
    return value if value else default

