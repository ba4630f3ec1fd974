"""
CRAWL — RootData Fundraising Adapter
Site: https://www.rootdata.com/Fundraising

Turns rendered HTML from the fundraising listing and project detail pages into
ListingRow / RoundRow / ProjectSummary records. Pure parsing: no browser calls,
so it is exercised directly against HTML fixtures.
"""

from typing import Optional

from bs4 import BeautifulSoup

from config.loader import SelectorConfig
from enrichment.links import BASE_ORIGIN, canonicalize_link
from enrichment.parsers import parse_amount, parse_date
from .base import (
    ListingRow, InvestorRef, RoundRow, TeamMember, ProjectSummary,
    ExtractionError, _safe_text, _safe_attr,
)

LEAD_MARKER = "*"


class RootDataAdapter:
    """Parses RootData fundraising pages."""

    def __init__(self, selectors: Optional[SelectorConfig] = None, base_origin: str = BASE_ORIGIN):
        self.selectors = selectors or SelectorConfig()
        self.base_origin = base_origin

    def _soup(self, html: str) -> BeautifulSoup:
        if not html:
            raise ExtractionError("Empty page content")
        return BeautifulSoup(html, "html.parser")

    def _absolute(self, href: Optional[str]) -> Optional[str]:
        if not href:
            return None
        if href.startswith("//"):
            return "https:" + href
        if href.startswith("/"):
            return self.base_origin.rstrip("/") + href
        return href

    # ── Listing ─────────────────────────────────────

    def is_empty_listing(self, html: str) -> bool:
        soup = self._soup(html)
        return soup.select_one(self.selectors.listing_empty) is not None

    def parse_listing(self, html: str, page: int) -> list[ListingRow]:
        """
        Extract listing rows. Cells: project (link + description), round,
        amount, valuation, date. The header row has no <td> and is skipped.
        """
        soup = self._soup(html)
        if soup.select_one(self.selectors.listing_empty):
            return []

        rows = []
        for tr in soup.select(self.selectors.listing_rows):
            cells = tr.find_all("td")
            if not cells:
                continue

            anchor = cells[0].find("a")
            if anchor is None:
                continue
            name = anchor.get_text(" ", strip=True)
            if not name:
                continue

            full_text = cells[0].get_text(" ", strip=True)
            description = full_text.replace(name, "", 1).strip() or None
            cell = lambda i: cells[i].get_text(" ", strip=True) if len(cells) > i else None

            amount = cell(2)
            valuation = cell(3)
            date = cell(4)
            rows.append(ListingRow(
                project_name=name,
                project_link=canonicalize_link(anchor.get("href"), name, self.base_origin),
                description=description,
                round=cell(1) or None,
                amount=amount or None,
                formatted_amount=parse_amount(amount),
                valuation=valuation or None,
                formatted_valuation=parse_amount(valuation),
                date=date or None,
                funded_at=parse_date(date),
                original_page_number=page,
            ))
        return rows

    # ── Detail: rounds ──────────────────────────────

    def parse_rounds(self, html: str) -> list[RoundRow]:
        """
        Extract funding rounds. Cells: round, amount, valuation, date, investors.
        Investors whose name carries '*' led the round.
        """
        soup = self._soup(html)
        rounds = []
        for tr in soup.select(self.selectors.rounds_rows):
            cells = tr.find_all("td")
            if len(cells) < 5:
                continue

            amount = cells[1].get_text(" ", strip=True)
            valuation = cells[2].get_text(" ", strip=True)
            date = cells[3].get_text(" ", strip=True)

            investors = []
            for anchor in cells[4].find_all("a"):
                raw_name = anchor.get_text(" ", strip=True)
                name = raw_name.replace(LEAD_MARKER, "").strip()
                if not name:
                    continue
                logo = anchor.find("img")
                investors.append(InvestorRef(
                    name=name,
                    link=canonicalize_link(anchor.get("href"), name, self.base_origin),
                    logo=self._absolute(logo.get("src")) if logo else None,
                    lead=LEAD_MARKER in raw_name,
                ))

            rounds.append(RoundRow(
                round=cells[0].get_text(" ", strip=True) or None,
                amount=amount or None,
                formatted_amount=parse_amount(amount),
                valuation=valuation or None,
                formatted_valuation=parse_amount(valuation),
                date=parse_date(date),
                investors=investors,
            ))
        return rounds

    # ── Detail: summary panel ───────────────────────

    def parse_summary(self, html: str) -> ProjectSummary:
        sel = self.selectors
        soup = self._soup(html)

        social_links = {}
        for anchor in soup.select(sel.social_links):
            href = anchor.get("href")
            if not href or href.startswith("javascript:"):
                continue
            label = _safe_text(anchor, "span") or anchor.get_text(" ", strip=True)
            key = (label or "link").strip().lower()
            social_links.setdefault(key, self._absolute(href))

        team = []
        for item in soup.select(sel.team_members):
            name = _safe_text(item, sel.team_name)
            if not name:
                continue
            team.append(TeamMember(
                name=name,
                position=_safe_text(item, sel.team_position),
                avatar_url=self._absolute(_safe_attr(item, sel.team_avatar, "src")),
                profile_url=self._absolute(_safe_attr(item, sel.team_profile, "href")),
            ))

        return ProjectSummary(
            project_name=_safe_text(soup, sel.project_name),
            logo=self._absolute(_safe_attr(soup, sel.project_logo, "src")),
            social_links=social_links,
            team_members=team,
        )
