# File: domain_audit/aggregator.py
"""domain_audit.aggregator: builds the crawl report handed to the reporting layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, TypedDict, Union

from domain_audit.crawler.crawler import CrawlResult
from domain_audit.crawler.models import Outcome, PageResult


class PageInfo(TypedDict, total=False):
    """Transport-level facts about one crawled page."""

    url: str
    final_url: str
    status_code: Union[int, None]
    response_time: float
    page_size: int
    download_speed: float
    redirects: int
    security_score: Union[int, None]
    recommendations: List[str]
    technologies: List[str]
    compression: Union[str, None]
    cacheable: bool
    error: Union[str, None]


class BadRequestInfo(TypedDict, total=False):
    url: str
    outcome: str
    error_kind: str
    attempts: int
    last_error: Union[str, None]
    status_code: Union[int, None]


class ExternalLinkInfo(TypedDict, total=False):
    url: str
    sources: List[str]
    checked: bool
    status_code: Union[int, None]
    final_url: Union[str, None]
    error_kind: Union[str, None]


@dataclass(slots=True)
class CrawlReport:
    """Summary of a crawl: pages, failures, external and functional links."""

    base_url: str = ""
    pages: List[PageInfo] = field(default_factory=list)
    bad_requests: List[BadRequestInfo] = field(default_factory=list)
    external_links: List[ExternalLinkInfo] = field(default_factory=list)
    mailto_links: Dict[str, List[str]] = field(default_factory=dict)
    tel_links: Dict[str, List[str]] = field(default_factory=dict)
    outcomes: Dict[str, int] = field(default_factory=dict)
    findings: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    aborted: bool = False
    abort_reason: Union[str, None] = None
    duration: float = 0.0

    raw_result: Union[CrawlResult, None] = None

    def json(self, *, pretty: bool = False) -> str:
        """JSON representation of the report without the raw crawl result."""
        output = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "raw_result"}
        return json.dumps(output, ensure_ascii=False, indent=2 if pretty else None, default=str)


def _page_info(page: PageResult) -> PageInfo:
    security = page.security_headers
    return {
        "url": page.url,
        "final_url": page.final_url,
        "status_code": page.status_code,
        "response_time": page.response_time,
        "page_size": page.page_size,
        "download_speed": page.download_speed,
        "redirects": page.redirect_chain.redirect_count,
        "security_score": security.score if security else None,
        "recommendations": list(security.recommendations) if security else [],
        "technologies": [t.name for t in page.technologies],
        "compression": page.compression,
        "cacheable": page.caching.cacheable if page.caching else False,
        "error": page.error,
    }


def aggregate_results(result: CrawlResult) -> CrawlReport:
    """Collect a finished crawl into a CrawlReport."""
    state = result.state
    report = CrawlReport(
        base_url=result.base_url,
        raw_result=result,
        aborted=result.aborted,
        abort_reason=result.abort_reason,
        duration=round(result.duration, 3),
        findings=result.findings,
    )
    report.pages = sorted((_page_info(p) for p in result.pages), key=lambda p: p["url"])

    for url, bad in sorted(state.bad_requests.items()):
        report.bad_requests.append(
            {
                "url": url,
                "outcome": Outcome.for_error(bad.error_kind).value,
                "error_kind": bad.error_kind.value,
                "attempts": bad.attempts,
                "last_error": bad.last_error,
                "status_code": bad.status_code,
            }
        )

    for url, link in sorted(state.external_links.items()):
        report.external_links.append(
            {
                "url": url,
                "sources": sorted(link.sources),
                "checked": link.checked,
                "status_code": link.status_code,
                "final_url": link.final_url,
                "error_kind": link.error_kind.value if link.error_kind else None,
            }
        )

    report.mailto_links = {k: sorted(v) for k, v in sorted(state.mailto_links.items())}
    report.tel_links = {k: sorted(v) for k, v in sorted(state.tel_links.items())}

    counts: Dict[str, int] = {o.value: 0 for o in Outcome}
    redirected = state.redirected
    for url in state.visited - redirected.keys():
        outcome = state.outcome(url)
        if outcome is not None:
            counts[outcome.value] += 1
    report.outcomes = counts
    return report
