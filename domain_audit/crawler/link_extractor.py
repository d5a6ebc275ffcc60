# domain_audit/crawler/link_extractor.py
"""
Link classification and URL normalization utilities for domain_audit.
"""
from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from typing import Iterable, List
from urllib.parse import parse_qsl, quote, unquote, urldefrag, urlencode, urljoin, urlparse, urlunparse

_FUNCTIONAL_SCHEMES = ("mailto:", "tel:")
_SKIPPED_SCHEMES = ("javascript:", "data:", "about:", "#")


def normalize_url(url: str) -> str:
    """
    Normalize URL for deduplication: lowercase scheme and host, resolve dot
    segments, drop the fragment and trailing slash (except root), sort query.
    """
    url, _ = urldefrag(url.strip())
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()
    path = unquote(parsed.path or "/")
    norm = posixpath.normpath(path)
    if not norm.startswith("/"):
        norm = "/" + norm
    if norm.startswith("//"):
        norm = "/" + norm.lstrip("/")
    if norm != "/":
        norm = norm.rstrip("/")
    norm = quote(norm, safe="/:@!$&'()*+,;=-._~")
    qs = parse_qsl(parsed.query, keep_blank_values=True)
    qs.sort()
    query = urlencode(qs, doseq=True)
    return urlunparse((scheme, netloc, norm, "", query, ""))


def host_of(url: str) -> str:
    host = urlparse(url).hostname or ""
    return host[4:] if host.startswith("www.") else host


def is_internal(url: str, domain: str) -> bool:
    """True for http(s) URLs on *domain* (a leading ``www.`` is ignored)."""
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and host_of(url) == domain


@dataclass(slots=True)
class ClassifiedLinks:
    internal: List[str] = field(default_factory=list)
    external: List[str] = field(default_factory=list)
    mailto: List[str] = field(default_factory=list)
    tel: List[str] = field(default_factory=list)


def classify_links(page_url: str, hrefs: Iterable[str], domain: str) -> ClassifiedLinks:
    """
    Resolve raw hrefs against *page_url* and split them into internal,
    external and functional (mailto:/tel:) links. Each list keeps first-seen
    order without duplicates.
    """
    result = ClassifiedLinks()
    seen: set[str] = set()
    for raw in hrefs:
        href = raw.strip()
        if not href or href.lower().startswith(_SKIPPED_SCHEMES):
            continue
        lowered = href.lower()
        if lowered.startswith(_FUNCTIONAL_SCHEMES):
            if href in seen:
                continue
            seen.add(href)
            (result.mailto if lowered.startswith("mailto:") else result.tel).append(href)
            continue
        absolute = urljoin(page_url, href)
        if urlparse(absolute).scheme not in ("http", "https"):
            continue
        norm = normalize_url(absolute)
        if norm in seen:
            continue
        seen.add(norm)
        if is_internal(norm, domain):
            result.internal.append(norm)
        else:
            result.external.append(norm)
    return result


__all__ = ["ClassifiedLinks", "classify_links", "host_of", "is_internal", "normalize_url"]
