"""
Project link canonicalization.

Every Project is deduplicated by its canonical link, so the same logical link
must always produce byte-identical output. Investors the source renders
without a real page ("javascript:void(0)") get a synthetic key instead.
"""

import re
import uuid
from typing import Optional
from urllib.parse import parse_qsl, quote, unquote, urlencode, urlsplit, urlunsplit

BASE_ORIGIN = "https://www.rootdata.com"

PLACEHOLDER_SCHEME = "javascript:"
PLACEHOLDER_PREFIX = "javascript:void(0)#"

_ABSOLUTE_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def is_placeholder_link(link: Optional[str]) -> bool:
    """True for empty links and the source's non-navigable 'void' links."""
    if not link or not link.strip():
        return True
    return link.strip().lower().startswith(PLACEHOLDER_SCHEME)


def _placeholder_key(fallback_name: Optional[str]) -> str:
    name = (fallback_name or "").strip()
    token = quote(name, safe="") if name else uuid.uuid4().hex
    return f"{PLACEHOLDER_PREFIX}{token}"


def _dedupe_query(query: str) -> str:
    seen = set()
    pairs = []
    for key, value in parse_qsl(query, keep_blank_values=True):
        if key in seen:
            continue
        seen.add(key)
        pairs.append((key, value))
    return urlencode(pairs, quote_via=quote, safe="=/")


def _dedupe_fragment(fragment: str) -> str:
    parts = []
    for part in fragment.split("#"):
        if part and part not in parts:
            parts.append(part)
    return "#".join(parts)


def canonicalize_link(raw_path: Optional[str], fallback_name: Optional[str] = None,
                      base_origin: str = BASE_ORIGIN) -> str:
    """
    Produce the stable identity string for a scraped project link.

    1. placeholder / empty links → 'javascript:void(0)#<name or random token>'
    2. relative paths are joined to the base origin with exactly one slash
    3. doubled path slashes collapse
    4. query keys deduplicated (first wins), repeated fragments deduplicated
    Never raises; unparseable input falls back to the trimmed string.
    """
    if is_placeholder_link(raw_path):
        return _placeholder_key(fallback_name)

    path = raw_path.strip()
    if not _ABSOLUTE_RE.match(path):
        if path.startswith("//"):
            path = "https:" + path
        else:
            path = base_origin.rstrip("/") + "/" + path.lstrip("/")

    try:
        parts = urlsplit(path)
    except ValueError:
        return path

    clean_path = re.sub(r"/{2,}", "/", parts.path)
    return urlunsplit((
        parts.scheme.lower(),
        parts.netloc.lower(),
        clean_path,
        _dedupe_query(parts.query),
        _dedupe_fragment(parts.fragment),
    ))


def name_from_link(link: Optional[str]) -> str:
    """
    Project name implied by a detail link — its last path segment, URL-decoded.
    e.g. 'https://www.rootdata.com/Projects/detail/Ripple%20Labs?k=MTA=' → 'Ripple Labs'
    """
    if is_placeholder_link(link):
        return ""
    try:
        path = urlsplit(link.strip()).path
    except ValueError:
        return ""
    segments = [s for s in path.split("/") if s]
    if not segments:
        return ""
    return unquote(segments[-1]).strip()
