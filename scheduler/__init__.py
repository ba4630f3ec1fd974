"""CRAWL Scheduler — recurring quick updates and detail enrichment."""
from .jobs import CrawlScheduler

__all__ = ["CrawlScheduler"]
