# File: tests/test_crawler.py
# Test-suite for the async crawl orchestrator
from __future__ import annotations

import asyncio
import time
from collections import Counter
from typing import Optional

import pytest
from aiohttp import web

from conftest import SITE, FakeTransport, html_page, redirect
from domain_audit.analyzers import AnalyzerPipeline
from domain_audit.config import CrawlConfig
from domain_audit.crawler.crawler import CrawlOrchestrator, CrawlResult, CrawlStatus
from domain_audit.crawler.models import ErrorKind, Outcome, PageStat
from domain_audit.crawler.state import CrawlState
from domain_audit.crawler.telemetry import PageTelemetryExtractor
from domain_audit.exceptions import StorageError
from domain_audit.storage import MemoryStorage

ROOT = f"{SITE}/"
#: seconds a slow test-server handler sleeps
SLOW_SLEEP: float = 0.5


async def run_crawler(
    config: CrawlConfig,
    base_url: str = SITE,
    transport: Optional[FakeTransport] = None,
    **kwargs,
) -> CrawlResult:
    """Run one crawl with a safety timeout."""
    async with CrawlOrchestrator(config, base_url, transport=transport, **kwargs) as crawler:
        return await asyncio.wait_for(crawler.crawl(), timeout=15.0)


def star_site(pages: int) -> dict:
    """Root linking to /p1 ... /p{pages}; every page links back to root."""
    routes = {ROOT: html_page(*(f"/p{i}" for i in range(1, pages + 1)))}
    for i in range(1, pages + 1):
        routes[f"{SITE}/p{i}"] = html_page("/")
    return routes


# --------------------------------------------------------------------------- #
#                      End-to-end against a real HTTP server                  #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio()
async def test_three_page_site_is_crawled_completely(serve_app, make_config):
    hits: Counter = Counter()
    links = '<a href="/">Home</a><a href="/about">About</a><a href="/contact">Contact</a>'
    external = '<a href="http://external.example/">Elsewhere</a>'

    async def page(request):
        hits[request.path] += 1
        return web.Response(text=f"<html><body>{links}{external}</body></html>", content_type="text/html")

    app = web.Application()
    for path in ("/", "/about", "/contact"):
        app.router.add_get(path, page)

    cfg = make_config(max_parallel_crawl=2, max_external_links=0)
    async with serve_app(app) as base:
        result = await run_crawler(cfg, base)

    assert not result.aborted
    assert set(result.state.stats) == {f"{base}/", f"{base}/about", f"{base}/contact"}
    assert result.state.queue == []
    assert result.state.bad_requests == {}
    assert hits == {"/": 1, "/about": 1, "/contact": 1}
    assert list(result.state.external_links) == ["http://external.example/"]
    assert not result.state.external_links["http://external.example/"].checked
    assert all(page.security_headers is not None for page in result.pages)


@pytest.mark.asyncio()
async def test_redirect_loop_is_recorded(serve_app, make_config):
    hits: Counter = Counter()

    async def loop_a(_):
        hits["a"] += 1
        return web.Response(status=301, headers={"Location": "/b"})

    async def loop_b(_):
        hits["b"] += 1
        return web.Response(status=301, headers={"Location": "/a"})

    app = web.Application()
    app.router.add_get("/a", loop_a)
    app.router.add_get("/b", loop_b)

    async with serve_app(app) as base:
        result = await run_crawler(make_config(), f"{base}/a")

    bad = result.state.bad_requests[f"{base}/a"]
    assert bad.error_kind is ErrorKind.REDIRECT_LOOP
    assert result.state.outcome(f"{base}/a") is Outcome.REDIRECT_ERROR
    assert hits == {"a": 1, "b": 1}
    assert result.pages == []


@pytest.mark.asyncio()
async def test_timeout_is_recorded_with_attempts(serve_app, make_config):
    async def slow(_):
        await asyncio.sleep(SLOW_SLEEP)
        return web.Response(text="<html></html>", content_type="text/html")

    app = web.Application()
    app.router.add_get("/", slow)

    cfg = make_config(request_timeout=0.05, max_retries=2, retry_backoff=0)
    async with serve_app(app) as base:
        result = await run_crawler(cfg, base)

    bad = result.state.bad_requests[f"{base}/"]
    assert bad.error_kind is ErrorKind.TIMEOUT
    assert bad.attempts == 3
    assert result.state.stats == {}


# --------------------------------------------------------------------------- #
#                          Worker pool and dedup                              #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio()
async def test_parallelism_is_bounded(make_config):
    transport = FakeTransport(star_site(30), delay=0.02)
    result = await run_crawler(make_config(max_parallel_crawl=3), transport=transport)

    assert len(result.state.stats) == 31
    assert transport.peak == 3


@pytest.mark.asyncio()
async def test_each_url_is_fetched_once(make_config):
    paths = [f"/p{i}" for i in range(8)]
    variants = [v for p in paths for v in (p, f"{p}/", f"{p}#frag", f"{SITE}{p}")]
    routes = {ROOT: html_page(*variants)}
    for p in paths:
        routes[f"{SITE}{p}"] = html_page("/", *variants)
    transport = FakeTransport(routes, delay=0.005)

    result = await run_crawler(make_config(max_parallel_crawl=4), transport=transport)

    assert set(transport.calls.values()) == {1}
    assert len(transport.calls) == 9
    assert result.state.visited == set(result.state.stats)
    assert result.state.queue == []


@pytest.mark.asyncio()
async def test_global_pacing_spaces_requests(make_config):
    transport = FakeTransport(star_site(3))
    cfg = make_config(max_parallel_crawl=4, crawl_delay=0.05, pacing="global")

    started = time.monotonic()
    await run_crawler(cfg, transport=transport)

    # four requests, three gaps
    assert time.monotonic() - started >= 0.14


@pytest.mark.asyncio()
async def test_worker_pacing_spaces_one_workers_requests(make_config):
    transport = FakeTransport(star_site(3))
    cfg = make_config(max_parallel_crawl=1, crawl_delay=0.05, pacing="worker")

    await run_crawler(cfg, transport=transport)

    times = [t for t, _ in transport.started]
    assert len(times) == 4
    assert all(later - earlier >= 0.045 for earlier, later in zip(times, times[1:]))


@pytest.mark.asyncio()
async def test_worker_pacing_does_not_serialise_the_pool(make_config):
    transport = FakeTransport(star_site(3))
    cfg = make_config(max_parallel_crawl=4, crawl_delay=0.2, pacing="worker")

    await run_crawler(cfg, transport=transport)

    times = sorted(t for t, _ in transport.started)
    assert len(times) == 4
    # root plus at least two pages from idle workers start without waiting out the delay
    assert times[2] - times[0] < 0.1


# --------------------------------------------------------------------------- #
#                           Per-page classification                           #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio()
async def test_http_error_is_a_bad_request(make_config):
    transport = FakeTransport({ROOT: html_page("/missing")})
    result = await run_crawler(make_config(), transport=transport)

    bad = result.state.bad_requests[f"{SITE}/missing"]
    assert bad.error_kind is ErrorKind.HTTP_ERROR
    assert bad.status_code == 404
    assert bad.attempts == 1
    assert result.state.outcome(f"{SITE}/missing") is Outcome.BAD_REQUEST
    assert f"{SITE}/missing" in result.state.stats


@pytest.mark.asyncio()
async def test_parse_failure_is_a_content_error(make_config, monkeypatch):
    def explode(html, base_url):
        raise ValueError("unparseable")

    monkeypatch.setattr("domain_audit.crawler.crawler.parse_html", explode)
    transport = FakeTransport({ROOT: html_page("/other")})
    result = await run_crawler(make_config(), transport=transport)

    assert result.state.bad_requests[ROOT].error_kind is ErrorKind.PARSE_FAILURE
    assert result.state.outcome(ROOT) is Outcome.CONTENT_ERROR
    assert ROOT in result.state.stats
    assert transport.calls == {ROOT: 1}


@pytest.mark.asyncio()
async def test_non_html_pages_are_not_parsed(make_config):
    transport = FakeTransport(
        {
            ROOT: html_page("/file.pdf"),
            f"{SITE}/file.pdf": (200, {"content-type": "application/pdf"}, "<a href='/hidden'>x</a>"),
        }
    )
    result = await run_crawler(make_config(), transport=transport)

    assert result.state.outcome(f"{SITE}/file.pdf") is Outcome.SUCCESS
    assert f"{SITE}/hidden" not in transport.calls


@pytest.mark.asyncio()
async def test_internal_redirect_claims_final_url(make_config):
    transport = FakeTransport(
        {
            ROOT: html_page("/old"),
            f"{SITE}/old": redirect("/new"),
            f"{SITE}/new": html_page("/"),
        }
    )
    result = await run_crawler(make_config(), transport=transport)

    page = next(p for p in result.pages if p.url == f"{SITE}/old")
    assert page.final_url == f"{SITE}/new"
    assert page.redirect_chain.redirect_count == 1
    assert f"{SITE}/new" in result.state.visited
    assert transport.calls[f"{SITE}/new"] == 1


@pytest.mark.asyncio()
async def test_offsite_redirect_target_is_not_parsed(make_config):
    landing = "https://elsewhere.example/landing"
    transport = FakeTransport(
        {
            ROOT: html_page("/go"),
            f"{SITE}/go": redirect(landing),
            landing: html_page("/deeper", "https://third.example/"),
        }
    )
    pipeline = AnalyzerPipeline([TitleAnalyzer()])
    result = await run_crawler(make_config(), transport=transport, pipeline=pipeline)
    state = result.state

    assert f"{SITE}/go" in state.stats
    assert state.outcome(f"{SITE}/go") is Outcome.SUCCESS
    assert transport.calls[landing] == 1
    assert f"{SITE}/go" not in result.findings
    assert ROOT in result.findings
    assert landing not in state.visited
    assert "https://elsewhere.example/deeper" not in transport.calls
    assert "https://third.example/" not in state.external_links
    assert all(f"{SITE}/go" not in link.sources for link in state.external_links.values())


@pytest.mark.asyncio()
async def test_unknown_charset_does_not_stop_the_crawl(serve_app, make_config):
    async def home(_):
        return web.Response(
            body=b'<html><body><a href="/ok">ok</a></body></html>',
            headers={"Content-Type": "text/html; charset=x-bogus"},
        )

    async def ok(_):
        return web.Response(text="<html><body>fine</body></html>", content_type="text/html")

    app = web.Application()
    app.router.add_get("/", home)
    app.router.add_get("/ok", ok)

    async with serve_app(app) as base:
        result = await run_crawler(make_config(), base)

    assert set(result.state.stats) == {f"{base}/", f"{base}/ok"}
    assert result.state.bad_requests == {}
    assert not result.aborted


class FlakyExtractor(PageTelemetryExtractor):
    def extract(self, response, url=None, elapsed_ms=None):
        if url == f"{SITE}/p1":
            raise LookupError("unknown encoding: x-bogus")
        return super().extract(response, url, elapsed_ms)


@pytest.mark.asyncio()
async def test_unexpected_page_error_fails_only_that_page(make_config):
    transport = FakeTransport(star_site(2))
    async with CrawlOrchestrator(make_config(), SITE, transport=transport) as crawler:
        crawler.extractor = FlakyExtractor()
        result = await asyncio.wait_for(crawler.crawl(), timeout=15.0)

    bad = result.state.bad_requests[f"{SITE}/p1"]
    assert bad.error_kind is ErrorKind.MALFORMED_RESPONSE
    assert bad.last_error.startswith("LookupError")
    assert result.state.outcome(f"{SITE}/p1") is Outcome.BAD_REQUEST
    assert f"{SITE}/p2" in result.state.stats
    assert not result.aborted


@pytest.mark.asyncio()
async def test_functional_and_external_links(make_config):
    transport = FakeTransport(
        {
            ROOT: html_page(
                "mailto:team@site.test",
                "tel:+15551234",
                "https://one.example/",
                "https://two.example/",
            ),
            "https://one.example/": html_page(),
            "https://two.example/": html_page(),
        }
    )
    result = await run_crawler(make_config(max_external_links=1), transport=transport)
    state = result.state

    assert state.mailto_links == {"mailto:team@site.test": [ROOT]}
    assert state.tel_links == {"tel:+15551234": [ROOT]}
    checked = [link for link in state.external_links.values() if link.checked]
    assert len(checked) == 1
    assert checked[0].status_code == 200
    assert transport.calls["https://one.example/"] + transport.calls["https://two.example/"] == 1


# --------------------------------------------------------------------------- #
#                                 Analyzers                                   #
# --------------------------------------------------------------------------- #


class TitleAnalyzer:
    name = "title"

    def analyze(self, document, page_result):
        return {"title": document.title, "status": page_result.status_code}


class BrokenAnalyzer:
    name = "broken"

    def analyze(self, document, page_result):
        raise ValueError("analyzer bug")


@pytest.mark.asyncio()
async def test_analyzer_failure_is_isolated(make_config):
    transport = FakeTransport(star_site(2))
    pipeline = AnalyzerPipeline([TitleAnalyzer(), BrokenAnalyzer()])

    result = await run_crawler(make_config(), transport=transport, pipeline=pipeline)

    assert len(result.state.stats) == 3
    assert result.state.bad_requests == {}
    assert result.findings[ROOT]["title"] == {"title": "Page", "status": 200}
    assert result.findings[ROOT]["broken"]["error"].startswith("ValueError")


# --------------------------------------------------------------------------- #
#                    Abort, cancellation, storage, resume                     #
# --------------------------------------------------------------------------- #


@pytest.mark.asyncio()
async def test_page_limit_aborts(make_config):
    transport = FakeTransport(star_site(10))
    result = await run_crawler(make_config(max_parallel_crawl=1, max_pages=2), transport=transport)

    assert result.aborted
    assert result.abort_reason == "page limit reached"
    assert len(result.state.stats) == 2
    assert result.state.queue


@pytest.mark.asyncio()
async def test_page_limit_equal_to_site_size_completes(make_config):
    transport = FakeTransport(star_site(2))
    result = await run_crawler(make_config(max_parallel_crawl=1, max_pages=3), transport=transport)

    assert not result.aborted
    assert len(result.state.stats) == 3


@pytest.mark.asyncio()
async def test_caller_abort_finishes_in_flight_pages(make_config):
    transport = FakeTransport(star_site(20), delay=0.05)
    storage = MemoryStorage()

    async with CrawlOrchestrator(make_config(), SITE, transport=transport, storage=storage) as crawler:
        task = asyncio.create_task(crawler.crawl())
        await asyncio.sleep(0.12)
        await crawler.abort()
        result = await asyncio.wait_for(task, timeout=5.0)

    assert result.aborted
    assert crawler.status is CrawlStatus.TERMINATED
    assert result.state.queue
    assert all(result.state.outcome(url) is not None for url in result.state.visited)
    assert storage.saves == 1
    assert storage.saved["site.test"]["queue"] == result.state.queue


@pytest.mark.asyncio()
async def test_cancellation_persists_resumable_state(make_config):
    transport = FakeTransport(star_site(20), delay=0.05)
    storage = MemoryStorage()

    async with CrawlOrchestrator(make_config(), SITE, transport=transport, storage=storage) as crawler:
        task = asyncio.create_task(crawler.crawl())
        await asyncio.sleep(0.12)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert crawler.abort_reason == "cancelled"
    assert crawler.status is CrawlStatus.TERMINATED
    assert storage.saves == 1
    restored = storage.load("site.test")
    assert all(restored.outcome(url) is not None for url in restored.visited)
    assert restored.pending() + len(restored.visited) == 21


class FailingStorage:
    def load(self, domain):
        return None

    def save(self, state):
        raise StorageError(state.domain, OSError("disk full"))


@pytest.mark.asyncio()
async def test_storage_failure_surfaces(make_config):
    transport = FakeTransport(star_site(5))
    with pytest.raises(StorageError):
        await run_crawler(make_config(checkpoint_every=1), transport=transport, storage=FailingStorage())


@pytest.mark.asyncio()
async def test_checkpoints_are_written(make_config):
    transport = FakeTransport(star_site(5))
    storage = MemoryStorage()
    await run_crawler(make_config(max_parallel_crawl=1, checkpoint_every=3), transport=transport, storage=storage)

    # six pages -> two checkpoints, plus the final save
    assert storage.saves == 3


@pytest.mark.asyncio()
async def test_resume_skips_finished_pages(make_config):
    storage = MemoryStorage()
    previous = CrawlState(SITE)
    previous.enqueue([ROOT])
    previous.dequeue()
    previous.record_stat(ROOT, PageStat(response_time=10.0, page_size=100, status_code=200))
    previous.enqueue([f"{SITE}/p1"])
    storage.save(previous)

    transport = FakeTransport(star_site(2))
    result = await run_crawler(make_config(), transport=transport, storage=storage)

    assert ROOT not in transport.calls
    assert transport.calls[f"{SITE}/p1"] == 1
    assert f"{SITE}/p2" not in transport.calls
    assert set(result.state.stats) == {ROOT, f"{SITE}/p1"}


@pytest.mark.asyncio()
async def test_resume_does_not_refetch_redirect_targets(make_config):
    storage = MemoryStorage()
    routes = {
        ROOT: html_page("/old"),
        f"{SITE}/old": redirect("/new"),
        f"{SITE}/new": html_page("/"),
    }
    await run_crawler(make_config(), transport=FakeTransport(routes), storage=storage)

    transport = FakeTransport(routes)
    result = await run_crawler(make_config(), transport=transport, storage=storage)

    assert not transport.calls
    assert result.state.queue == []
    assert result.state.redirected == {f"{SITE}/new": f"{SITE}/old"}
    assert result.state.outcome(f"{SITE}/new") is Outcome.SUCCESS


@pytest.mark.asyncio()
async def test_resume_disabled_starts_fresh(make_config):
    storage = MemoryStorage()
    previous = CrawlState(SITE)
    previous.try_claim(ROOT)
    previous.record_stat(ROOT, PageStat(response_time=10.0, page_size=100, status_code=200))
    storage.save(previous)

    transport = FakeTransport(star_site(1))
    result = await run_crawler(make_config(), transport=transport, storage=storage, resume=False)

    assert transport.calls[ROOT] == 1
    assert len(result.state.stats) == 2


@pytest.mark.asyncio()
async def test_crawl_runs_once(make_config):
    transport = FakeTransport(star_site(1))
    async with CrawlOrchestrator(make_config(), SITE, transport=transport) as crawler:
        await crawler.crawl()
        with pytest.raises(RuntimeError):
            await crawler.crawl()


@pytest.mark.asyncio()
async def test_crawl_requires_context(make_config):
    crawler = CrawlOrchestrator(make_config(), SITE, transport=FakeTransport({}))
    with pytest.raises(RuntimeError):
        await crawler.crawl()


@pytest.mark.asyncio()
async def test_worker_helpers_require_a_running_crawl(make_config):
    async with CrawlOrchestrator(make_config(), SITE, transport=FakeTransport({})) as crawler:
        with pytest.raises(RuntimeError, match="not running"):
            await crawler._next_url()
        with pytest.raises(RuntimeError, match="not running"):
            await crawler._process(ROOT)
