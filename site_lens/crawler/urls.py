# site_lens/crawler/urls.py
"""
URL canonicalisation, skip rules and same-origin link extraction for SiteLens.
"""
from __future__ import annotations

import re
from typing import Iterable, List, Optional
from urllib.parse import parse_qsl, quote, unquote, urlencode, urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup
from bs4.element import Tag

__all__ = (
    "TRACKING_PARAMS",
    "canonicalize_url",
    "should_skip_url",
    "origin_of",
    "filter_links",
    "extract_links",
)

TRACKING_PARAMS = frozenset({"fbclid", "gclid", "yclid", "mc_eid"})
SKIP_FILE_EXT = re.compile(r"\.(pdf|zip|docx?|xlsx?|pptx?|csv|mp4|mp3|avi|mov|exe|dmg|rar)$", re.IGNORECASE)
SKIP_PATH_PATTERNS = (
    re.compile(r"/logout", re.IGNORECASE),
    re.compile(r"/signout", re.IGNORECASE),
    re.compile(r"^/account(?:/|$)", re.IGNORECASE),
    re.compile(r"/cart", re.IGNORECASE),
    re.compile(r"/checkout", re.IGNORECASE),
)
_IGNORED_HREF = re.compile(r"^(mailto:|tel:|javascript:)", re.IGNORECASE)
_DEFAULT_PORTS = {"http": 80, "https": 443}
_SEGMENT_SAFE = ":@!$&'()*+,;=-._~"
_ENCODED_SLASH = re.compile(r"%2f", re.IGNORECASE)


def _is_tracking(key: str) -> bool:
    lowered = key.lower()
    return lowered.startswith("utm_") or lowered in TRACKING_PARAMS


def _netloc(scheme: str, host: str, port: Optional[int]) -> str:
    if ":" in host:  # IPv6
        host = f"[{host}]"
    if port is None or _DEFAULT_PORTS.get(scheme) == port:
        return host
    return f"{host}:{port}"


def _canonical_path(raw_path: str) -> str:
    # %2F inside a segment names a different resource than a real separator
    stack: List[str] = []
    for segment in raw_path.split("/"):
        value = "%2F".join(quote(unquote(piece), safe=_SEGMENT_SAFE) for piece in _ENCODED_SLASH.split(segment))
        if value in ("", "."):
            continue
        if value == "..":
            if stack:
                stack.pop()
            continue
        stack.append(value)
    return "/" + "/".join(stack)


def canonicalize_url(raw_url: str, *, strip_tracking: bool = True) -> Optional[str]:
    """
    Canonical form used as the crawl dedupe key, or None for non-http(s)/garbage.

    Drops the fragment and tracking parameters, trims trailing slashes,
    resolves dot segments and sorts query parameters by key, then value.
    """
    if not isinstance(raw_url, str) or not raw_url.strip():
        return None
    try:
        parts = urlsplit(raw_url.strip())
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS or not parts.hostname:
        return None

    path = _canonical_path(parts.path)

    query = parse_qsl(parts.query, keep_blank_values=True)
    if strip_tracking:
        query = [(k, v) for k, v in query if not _is_tracking(k)]
    query.sort()

    return urlunsplit((scheme, _netloc(scheme, parts.hostname.lower(), port), path, urlencode(query), ""))


def origin_of(url: str) -> Optional[str]:
    """``scheme://host[:port]`` of a URL, or None."""
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS or not parts.hostname:
        return None
    return f"{scheme}://{_netloc(scheme, parts.hostname.lower(), port)}"


def should_skip_url(url: str) -> bool:
    """True for non-http(s) URLs, binary downloads and session/commerce paths."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return True
    if parts.scheme.lower() not in _DEFAULT_PORTS:
        return True
    path = parts.path or "/"
    if SKIP_FILE_EXT.search(path):
        return True
    return any(pattern.search(path) for pattern in SKIP_PATH_PATTERNS)


def filter_links(hrefs: Iterable[str], page_url: str, start_origin: str) -> List[str]:
    """
    Resolve raw hrefs against ``page_url`` and keep canonical same-origin
    crawl candidates (sorted, unique).
    """
    output = set()
    for href in hrefs:
        if not isinstance(href, str):
            continue
        raw = href.strip()
        if not raw or _IGNORED_HREF.match(raw):
            continue
        try:
            absolute = urljoin(page_url, raw)
        except ValueError:
            continue
        if origin_of(absolute) != start_origin:
            continue
        normalized = canonicalize_url(absolute)
        if normalized is None or should_skip_url(normalized):
            continue
        output.add(normalized)
    return sorted(output)


def extract_links(html: str, page_url: str, start_origin: str) -> List[str]:
    """Same-origin crawl candidates from the ``<a href>`` tags of rendered HTML."""
    soup = BeautifulSoup(html or "", "html.parser")
    hrefs: List[str] = []
    for tag in soup.find_all("a", href=True):
        if not isinstance(tag, Tag):
            continue
        href_val = tag.get("href")
        if isinstance(href_val, str):
            hrefs.append(href_val)
    return filter_links(hrefs, page_url, start_origin)
