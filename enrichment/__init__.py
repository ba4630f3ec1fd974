"""CRAWL Enrichment — Value parsing, link canonicalization and crawl state."""
from .parsers import parse_amount, parse_date
from .links import canonicalize_link, is_placeholder_link, name_from_link

__all__ = ["parse_amount", "parse_date", "canonicalize_link", "is_placeholder_link", "name_from_link"]
