# domain_audit/crawler/models.py
"""
Data models for the domain_audit crawler.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


class ErrorKind(str, Enum):
    """Classified reason a page did not complete successfully."""

    # transport level, produced by NetworkTransport
    TIMEOUT = "timeout"
    CONNECTION_FAILURE = "connection_failure"
    MALFORMED_RESPONSE = "malformed_response"
    PROTOCOL_ERROR = "protocol_error"
    # well-formed 4xx/5xx response
    HTTP_ERROR = "http_error"
    # redirect resolution
    REDIRECT_LOOP = "redirect_loop"
    TOO_MANY_REDIRECTS = "too_many_redirects"
    # document could not be parsed
    PARSE_FAILURE = "parse_failure"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.TIMEOUT, ErrorKind.CONNECTION_FAILURE)


class Outcome(str, Enum):
    """Final state of a dispatched URL."""

    SUCCESS = "success"
    BAD_REQUEST = "bad_request"
    REDIRECT_ERROR = "redirect_error"
    CONTENT_ERROR = "content_error"

    @classmethod
    def for_error(cls, kind: ErrorKind) -> Outcome:
        if kind in (ErrorKind.REDIRECT_LOOP, ErrorKind.TOO_MANY_REDIRECTS):
            return cls.REDIRECT_ERROR
        if kind is ErrorKind.PARSE_FAILURE:
            return cls.CONTENT_ERROR
        return cls.BAD_REQUEST


@dataclass(slots=True)
class FetchResult:
    """Normalized outcome of one NetworkTransport.fetch call."""

    url: str
    elapsed_ms: float
    attempts: int = 1
    status_code: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    encoding: str = "utf-8"
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "").split(";", 1)[0].strip().lower()

    def text(self) -> str:
        return self.body.decode(self.encoding or "utf-8", errors="replace")


@dataclass(slots=True)
class RedirectHop:
    url: str
    status_code: int
    location: Optional[str] = None


@dataclass(slots=True)
class RedirectChain:
    """Hops taken from a requested URL to its final resolved URL."""

    url: str
    final_url: str
    hops: List[RedirectHop] = field(default_factory=list)
    has_loop: bool = False
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    # final non-redirect response; None when the chain ended in an error
    response: Optional[FetchResult] = None
    # transport attempts summed over all hops
    attempts: int = 0

    @property
    def redirect_count(self) -> int:
        return sum(1 for hop in self.hops if hop.location is not None)


@dataclass(slots=True)
class SecurityReport:
    """Security-header presence, validity and derived score."""

    is_https: bool
    headers: Dict[str, bool]
    hsts_max_age: int
    hsts_include_subdomains: bool
    hsts_preload: bool
    score: int
    recommendations: List[str]


@dataclass(slots=True)
class CachingInfo:
    max_age: Optional[int] = None
    s_maxage: Optional[int] = None
    no_store: bool = False
    no_cache: bool = False
    has_etag: bool = False
    has_last_modified: bool = False
    has_expires: bool = False

    @property
    def cacheable(self) -> bool:
        return not self.no_store and bool(self.max_age or self.s_maxage or self.has_etag or self.has_last_modified)


@dataclass(slots=True, frozen=True)
class Technology:
    name: str
    category: str
    source: str


@dataclass(slots=True)
class Telemetry:
    security: SecurityReport
    compression: Optional[str]
    caching: CachingInfo
    technologies: List[Technology]
    response_time: float
    page_size: int
    download_speed: float


@dataclass(slots=True)
class PageResult:
    """Transport-level record of one crawled page."""

    url: str
    final_url: str
    status_code: Optional[int]
    response_time: float
    page_size: int
    redirect_chain: RedirectChain
    security_headers: Optional[SecurityReport] = None
    technologies: List[Technology] = field(default_factory=list)
    compression: Optional[str] = None
    caching: Optional[CachingInfo] = None
    download_speed: float = 0.0
    content_type: str = ""
    error: Optional[str] = None
    fetched_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass(slots=True)
class PageStat:
    response_time: float
    page_size: int
    status_code: Optional[int]


@dataclass(slots=True)
class BadRequest:
    error_kind: ErrorKind
    attempts: int
    last_error: Optional[str] = None
    status_code: Optional[int] = None


@dataclass(slots=True)
class ExternalLink:
    """External link found on crawled pages and, once checked, its status."""

    url: str
    sources: List[str] = field(default_factory=list)
    checked: bool = False
    status_code: Optional[int] = None
    final_url: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
