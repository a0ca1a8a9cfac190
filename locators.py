"""
URL handling for Recipe Dredger: canonical locators, slug titles and the
alternate endpoints tried when a detail page comes back incomplete.
"""

import logging
import re
from typing import List, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

import config

logger = logging.getLogger("dredger.locators")

FALLBACK_TITLE = "Untitled Recipe"

# Variant markers appended by alternates_for(), in priority order.
PRINT_QUERY = "output=1"
SINGLE_PAGE_QUERY = "page=all"
LIGHTWEIGHT_SUFFIX = "/amp"


def _is_tracking_key(key: str) -> bool:
    key = key.lower()
    return key in config.TRACKING_PARAMS or key.startswith(config.TRACKING_PREFIXES)


def normalize(raw, base: str = config.SITE_ROOT) -> Optional[str]:
    """
    Resolve a possibly-relative reference into a canonical absolute locator.

    The fragment and tracking query keys are dropped; every other query key
    is kept in its original order. Returns None for anything that cannot be
    turned into an http(s) URL.
    """
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = urlparse(urljoin(base, raw.strip()))
        scheme = parsed.scheme.lower()
        if scheme not in ('http', 'https') or not parsed.hostname:
            return None
        query = [
            (k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
            if not _is_tracking_key(k)
        ]
        return urlunparse((
            scheme,
            parsed.netloc.lower(),
            parsed.path or '/',
            parsed.params,
            urlencode(query),
            '',
        ))
    except ValueError as e:
        logger.debug(f"Dropping malformed locator {raw!r}: {e}")
        return None


def strip_query(locator: str) -> str:
    return locator.split('?', 1)[0]


def is_detail_url(locator: Optional[str]) -> bool:
    if not locator:
        return False
    return bool(config.DETAIL_PATH_PATTERN.search(urlparse(locator).path))


def slug_title(locator: str) -> Optional[str]:
    """Human-readable title guessed from the last path segment."""
    path = urlparse(locator).path.rstrip('/')
    slug = path.rsplit('/', 1)[-1] if path else ''
    title = " ".join(re.sub(r'[-_]+', ' ', slug).split())
    return title or None


def site_name(locator: str) -> str:
    host = urlparse(locator).hostname or ''
    return host[4:] if host.startswith('www.') else host


def alternates_for(locator: str) -> List[str]:
    """
    Same-page variants to retry, in order: bare URL, print view,
    single-page view, lightweight (AMP) markup.
    """
    bare = strip_query(normalize(locator) or locator).rstrip('/')
    candidates = [
        bare,
        f"{bare}?{PRINT_QUERY}",
        f"{bare}?{SINGLE_PAGE_QUERY}",
        f"{bare}{LIGHTWEIGHT_SUFFIX}",
    ]
    alternates: List[str] = []
    for candidate in candidates:
        url = normalize(candidate)
        if url and url not in alternates:
            alternates.append(url)
    return alternates
