"""Crawler configuration — source, selectors, thresholds, pacing, schedule."""
from .loader import CrawlerSettings, load_settings

__all__ = ["CrawlerSettings", "load_settings"]
