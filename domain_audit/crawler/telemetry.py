# domain_audit/crawler/telemetry.py
"""
Per-page telemetry derived from one completed HTTP exchange.

Everything here is a pure function of the response: no network calls, no
script evaluation. Technology detection is a lookup of known signatures in
headers and body text.
"""
from __future__ import annotations

import re
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlparse

from domain_audit.crawler.models import CachingInfo, FetchResult, SecurityReport, Technology, Telemetry

# (header, weight, recommendation when missing or malformed)
SECURITY_CHECKS: Sequence[Tuple[str, int, str]] = (
    (
        "strict-transport-security",
        10,
        "Add a Strict-Transport-Security header with a positive max-age (e.g. max-age=31536000).",
    ),
    (
        "content-security-policy",
        10,
        "Define a Content-Security-Policy to restrict where scripts and resources load from.",
    ),
    (
        "x-frame-options",
        8,
        "Set X-Frame-Options to DENY or SAMEORIGIN to prevent clickjacking.",
    ),
    (
        "x-content-type-options",
        8,
        "Set X-Content-Type-Options: nosniff to disable MIME type sniffing.",
    ),
    (
        "referrer-policy",
        7,
        "Add a Referrer-Policy such as strict-origin-when-cross-origin.",
    ),
)
_MAX_SECURITY_POINTS = sum(weight for _, weight, _ in SECURITY_CHECKS)

_REFERRER_POLICIES = frozenset(
    (
        "no-referrer",
        "no-referrer-when-downgrade",
        "origin",
        "origin-when-cross-origin",
        "same-origin",
        "strict-origin",
        "strict-origin-when-cross-origin",
        "unsafe-url",
    )
)

_MAX_AGE_RE = re.compile(r"max-age\s*=\s*\"?(\d+)\"?", re.IGNORECASE)
_S_MAXAGE_RE = re.compile(r"s-maxage\s*=\s*\"?(\d+)\"?", re.IGNORECASE)
_GENERATOR_RE = re.compile(
    r"<meta[^>]+name=[\"']generator[\"'][^>]+content=[\"']([^\"']+)[\"']", re.IGNORECASE
)

# header -> [(substring, technology, category)]; substrings are lower-case
HEADER_SIGNATURES: Mapping[str, Sequence[Tuple[str, str, str]]] = {
    "server": (
        ("apache", "Apache", "Web Servers"),
        ("nginx", "Nginx", "Web Servers"),
        ("microsoft-iis", "Microsoft IIS", "Web Servers"),
        ("litespeed", "LiteSpeed", "Web Servers"),
        ("openresty", "OpenResty", "Web Servers"),
        ("caddy", "Caddy", "Web Servers"),
        ("cloudflare", "Cloudflare", "CDN"),
        ("cloudfront", "Amazon CloudFront", "CDN"),
        ("gws", "Google Web Server", "Web Servers"),
        ("vercel", "Vercel", "Hosting Platforms"),
        ("netlify", "Netlify", "Hosting Platforms"),
    ),
    "x-powered-by": (
        ("php", "PHP", "Programming Languages"),
        ("asp.net", "ASP.NET", "Backend Frameworks"),
        ("express", "Express.js", "Backend Frameworks"),
        ("next.js", "Next.js", "JavaScript Frameworks"),
        ("nuxt", "Nuxt.js", "JavaScript Frameworks"),
        ("wp engine", "WP Engine", "Hosting Platforms"),
    ),
    "set-cookie": (
        ("phpsessid", "PHP", "Programming Languages"),
        ("jsessionid", "Java", "Programming Languages"),
        ("asp.net_sessionid", "ASP.NET", "Backend Frameworks"),
        ("laravel_session", "Laravel", "Backend Frameworks"),
        ("csrftoken", "Django", "Backend Frameworks"),
        ("_rails_session", "Ruby on Rails", "Backend Frameworks"),
        ("wordpress_", "WordPress", "CMS"),
        ("_shopify", "Shopify", "Ecommerce"),
        ("__cf_bm", "Cloudflare", "CDN"),
    ),
    "x-generator": (
        ("drupal", "Drupal", "CMS"),
        ("wordpress", "WordPress", "CMS"),
    ),
    "x-drupal-cache": (("", "Drupal", "CMS"),),
    "x-shopify-stage": (("", "Shopify", "Ecommerce"),),
    "x-vercel-id": (("", "Vercel", "Hosting Platforms"),),
    "x-nf-request-id": (("", "Netlify", "Hosting Platforms"),),
    "cf-ray": (("", "Cloudflare", "CDN"),),
    "x-varnish": (("", "Varnish", "Caching"),),
}

# (substring in lower-cased body, technology, category)
BODY_SIGNATURES: Sequence[Tuple[str, str, str]] = (
    ("/wp-content/", "WordPress", "CMS"),
    ("/wp-includes/", "WordPress", "CMS"),
    ("drupal-settings-json", "Drupal", "CMS"),
    ("/sites/default/files/", "Drupal", "CMS"),
    ("/media/jui/", "Joomla", "CMS"),
    ("static.wixstatic.com", "Wix", "CMS"),
    ("static1.squarespace.com", "Squarespace", "CMS"),
    ("cdn.shopify.com", "Shopify", "Ecommerce"),
    ("__next_data__", "Next.js", "JavaScript Frameworks"),
    ("/_next/static/", "Next.js", "JavaScript Frameworks"),
    ("window.__nuxt__", "Nuxt.js", "JavaScript Frameworks"),
    ("data-reactroot", "React", "JavaScript Frameworks"),
    ("ng-version=", "Angular", "JavaScript Frameworks"),
    ("data-v-app", "Vue.js", "JavaScript Frameworks"),
    ("id=\"___gatsby\"", "Gatsby", "JavaScript Frameworks"),
    ("jquery", "jQuery", "JavaScript Libraries"),
    ("googletagmanager.com/gtm.js", "Google Tag Manager", "Tag Managers"),
    ("googletagmanager.com/gtag/js", "Google Analytics", "Analytics"),
    ("google-analytics.com/analytics.js", "Google Analytics", "Analytics"),
    ("static.hotjar.com", "Hotjar", "Analytics"),
    ("plausible.io/js", "Plausible", "Analytics"),
    ("matomo.js", "Matomo", "Analytics"),
    ("connect.facebook.net", "Facebook Pixel", "Advertising"),
    ("fonts.googleapis.com", "Google Font API", "Font Services"),
    ("cdn.jsdelivr.net", "jsDelivr", "CDN"),
    ("cdnjs.cloudflare.com", "cdnjs", "CDN"),
    ("bootstrap.min.css", "Bootstrap", "CSS Frameworks"),
)

_GENERATOR_SIGNATURES: Sequence[Tuple[str, str, str]] = (
    ("wordpress", "WordPress", "CMS"),
    ("drupal", "Drupal", "CMS"),
    ("joomla", "Joomla", "CMS"),
    ("wix", "Wix", "CMS"),
    ("squarespace", "Squarespace", "CMS"),
    ("hugo", "Hugo", "Static Site Generators"),
    ("gatsby", "Gatsby", "JavaScript Frameworks"),
    ("ghost", "Ghost", "CMS"),
)


def parse_max_age(value: str) -> int:
    """Return the numeric max-age directive, 0 when absent or malformed."""
    match = _MAX_AGE_RE.search(value)
    return int(match.group(1)) if match else 0


def security_report(headers: Mapping[str, str], url: str) -> SecurityReport:
    """Score the security headers of one response. Deterministic for equal input."""
    present: Dict[str, bool] = {}
    recommendations: List[str] = []
    earned = 0

    hsts = headers.get("strict-transport-security", "")
    hsts_max_age = parse_max_age(hsts) if hsts else 0
    lowered_hsts = hsts.lower()

    for name, weight, advice in SECURITY_CHECKS:
        value = headers.get(name, "").strip()
        valid = _is_valid(name, value, hsts_max_age)
        present[name] = valid
        if valid:
            earned += weight
        else:
            recommendations.append(advice)

    return SecurityReport(
        is_https=urlparse(url).scheme == "https",
        headers=present,
        hsts_max_age=hsts_max_age,
        hsts_include_subdomains="includesubdomains" in lowered_hsts,
        hsts_preload="preload" in lowered_hsts,
        score=round(100 * earned / _MAX_SECURITY_POINTS),
        recommendations=recommendations,
    )


def _is_valid(name: str, value: str, hsts_max_age: int) -> bool:
    if not value:
        return False
    lowered = value.lower()
    if name == "strict-transport-security":
        return hsts_max_age > 0
    if name == "x-frame-options":
        return lowered in ("deny", "sameorigin")
    if name == "x-content-type-options":
        return lowered == "nosniff"
    if name == "referrer-policy":
        # comma-separated fallback lists are allowed
        tokens = [t.strip() for t in lowered.split(",") if t.strip()]
        return any(t in _REFERRER_POLICIES for t in tokens)
    return True


def caching_info(headers: Mapping[str, str]) -> CachingInfo:
    cache_control = headers.get("cache-control", "").lower()
    max_age = _MAX_AGE_RE.search(cache_control)
    s_maxage = _S_MAXAGE_RE.search(cache_control)
    directives = {d.strip().split("=", 1)[0] for d in cache_control.split(",") if d.strip()}
    return CachingInfo(
        max_age=int(max_age.group(1)) if max_age else None,
        s_maxage=int(s_maxage.group(1)) if s_maxage else None,
        no_store="no-store" in directives,
        no_cache="no-cache" in directives,
        has_etag="etag" in headers,
        has_last_modified="last-modified" in headers,
        has_expires="expires" in headers,
    )


def detect_technologies(headers: Mapping[str, str], body: Optional[str] = None) -> List[Technology]:
    """Match headers and (optionally) body text against known signatures."""
    found: Dict[str, Technology] = {}

    def add(name: str, category: str, source: str) -> None:
        found.setdefault(name, Technology(name=name, category=category, source=source))

    for header, signatures in HEADER_SIGNATURES.items():
        value = headers.get(header)
        if value is None:
            continue
        lowered = value.lower()
        for needle, name, category in signatures:
            if needle in lowered:
                add(name, category, f"header:{header}")

    if body:
        lowered_body = body.lower()
        generator = _GENERATOR_RE.search(body)
        if generator:
            content = generator.group(1).lower()
            for needle, name, category in _GENERATOR_SIGNATURES:
                if needle in content:
                    add(name, category, "meta:generator")
        for needle, name, category in BODY_SIGNATURES:
            if needle in lowered_body:
                add(name, category, "body")

    return sorted(found.values(), key=lambda t: (t.category, t.name))


def download_speed(size_bytes: int, elapsed_ms: float) -> float:
    """Bytes per second; 0 for empty or instantaneous responses."""
    if size_bytes <= 0 or elapsed_ms <= 0:
        return 0.0
    return size_bytes / (elapsed_ms / 1000.0)


class PageTelemetryExtractor:
    """Derives Telemetry from a completed FetchResult."""

    def extract(self, response: FetchResult, url: Optional[str] = None, elapsed_ms: Optional[float] = None) -> Telemetry:
        """
        Build telemetry for *response*.

        *elapsed_ms* is the end-to-end time measured by the caller; the
        transport's own timing is used when it is omitted.
        """
        headers = response.headers
        page_url = url or response.url
        elapsed = response.elapsed_ms if elapsed_ms is None else elapsed_ms
        size = len(response.body)
        body_text = response.text() if response.body else None
        return Telemetry(
            security=security_report(headers, page_url),
            compression=headers.get("content-encoding") or None,
            caching=caching_info(headers),
            technologies=detect_technologies(headers, body_text),
            response_time=round(elapsed, 2),
            page_size=size,
            download_speed=round(download_speed(size, elapsed), 2),
        )


__all__ = [
    "PageTelemetryExtractor",
    "caching_info",
    "detect_technologies",
    "download_speed",
    "parse_max_age",
    "security_report",
]
