"""
Load and validate the crawler configuration file.

The YAML file tells the engine where the source lives, which selectors the
page fetcher should use, and how patient to be with it (retries, pacing,
timeouts, failure thresholds). Every key has a default so a partial file works.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml


CONFIG_DIR = Path(__file__).parent
DEFAULT_CONFIG_PATH = CONFIG_DIR / "crawler.yaml"


@dataclass
class SourceConfig:
    base_origin: str = "https://www.rootdata.com"
    listing_path: str = "/Fundraising?page={page}"

    def listing_url(self, page: int) -> str:
        return self.base_origin.rstrip("/") + self.listing_path.format(page=page)


@dataclass
class SelectorConfig:
    """CSS selectors and button-text patterns owned by the page fetcher."""
    listing_empty: str = "tr.b-table-empty-row"
    listing_container: str = ".main_container"
    listing_rows: str = ".main_container tr"
    detail_ready: str = ".base_info"
    project_name: str = ".base_info h1"
    project_logo: str = ".base_info img.logo, .base_info .logo img"
    social_links: str = ".links a"
    team_members: str = ".team_member .item"
    team_name: str = ".content h2"
    team_position: str = ".content p"
    team_avatar: str = ".logo-wraper img"
    team_profile: str = "a.card"
    rounds_table: str = ".investor .watermusk_table"
    rounds_rows: str = ".investor .watermusk_table tr"
    expand_pattern: str = r"expand\s*more"
    rounds_pattern: str = "rounds"


@dataclass
class ThresholdConfig:
    max_detail_failures: int = 3   # detail queues take projects at or below this
    retry_failed_floor: int = 3    # retry-failed takes projects strictly above this
    sentinel_failures: int = 99    # "confirmed nothing left to fetch"
    max_consecutive_page_failures: int = 3  # listing sweep gives up after this many


@dataclass
class RetryConfig:
    attempts: int = 3
    backoff_min_s: float = 2.0
    backoff_max_s: float = 5.0


@dataclass
class PacingConfig:
    item_delay_min_s: float = 1.0
    item_delay_max_s: float = 2.0
    page_delay_s: float = 2.0
    click_settle_s: float = 1.0


@dataclass
class SessionConfig:
    recycle_after: int = 20
    headless: bool = True


@dataclass
class ScheduleConfig:
    timezone: str = "UTC"
    quick_times: List[str] = field(default_factory=lambda: ["05:00", "17:00"])
    detail_interval_minutes: int = 30


@dataclass
class CrawlerSettings:
    """Complete configuration for the fundraising crawler."""
    source: SourceConfig = field(default_factory=SourceConfig)
    selectors: SelectorConfig = field(default_factory=SelectorConfig)
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    pacing: PacingConfig = field(default_factory=PacingConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    timeouts_ms: Dict[str, int] = field(default_factory=lambda: {
        "full": 30000,
        "quick": 30000,
        "detail": 30000,
        "detail2": 10000,
        "spare": 20000,
    })
    quick_pages: int = 3

    def timeout_for(self, crawl_type: str) -> int:
        return self.timeouts_ms.get(crawl_type, 30000)


def _section(cls, raw: Optional[dict]):
    """Build a dataclass from a YAML mapping, ignoring unknown keys."""
    raw = raw or {}
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def _env_flag(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings(path: Optional[str] = None) -> CrawlerSettings:
    """
    Load crawler settings from YAML.
    Path resolution: explicit argument → $CRAWLER_CONFIG → config/crawler.yaml.
    A missing default file yields pure defaults; a missing explicit file is an error.
    """
    explicit = path or os.getenv("CRAWLER_CONFIG")
    config_path = Path(explicit) if explicit else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        if explicit:
            raise FileNotFoundError(f"Crawler config not found: {config_path}")
        raw = {}
    else:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    settings = CrawlerSettings(
        source=_section(SourceConfig, raw.get("source")),
        selectors=_section(SelectorConfig, raw.get("selectors")),
        thresholds=_section(ThresholdConfig, raw.get("thresholds")),
        retry=_section(RetryConfig, raw.get("retry")),
        pacing=_section(PacingConfig, raw.get("pacing")),
        session=_section(SessionConfig, raw.get("session")),
        schedule=_section(ScheduleConfig, raw.get("schedule")),
        quick_pages=raw.get("quick_pages", 3),
    )
    settings.timeouts_ms.update(raw.get("timeouts_ms") or {})

    headless = _env_flag("CRAWLER_HEADLESS")
    if headless is not None:
        settings.session.headless = headless

    return settings
