# File: tests/conftest.py
from __future__ import annotations

import asyncio
import time
from collections import Counter
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional, Tuple

import pytest
from aiohttp import web

from domain_audit.config import CrawlConfig
from domain_audit.crawler.models import ErrorKind, FetchResult

Route = Tuple[int, Dict[str, str], str]

SITE = "http://site.test"


def html_page(*hrefs: str, title: str = "Page", extra: str = "") -> Route:
    """A 200 text/html response linking to *hrefs*."""
    links = "".join(f'<a href="{h}">{h}</a>' for h in hrefs)
    body = f"<html><head><title>{title}</title></head><body>{links}{extra}</body></html>"
    return 200, {"content-type": "text/html; charset=utf-8"}, body


def redirect(location: str, status: int = 301) -> Route:
    return status, {"location": location}, ""


class FakeTransport:
    """In-memory transport: serves fixed routes and records every fetch.

    ``active``/``peak`` count fetches running at the same time; ``started``
    holds the monotonic start time of every fetch.
    """

    def __init__(self, routes: Dict[str, Route], delay: float = 0.0) -> None:
        self.routes = routes
        self.delay = delay
        self.calls: Counter[str] = Counter()
        self.active = 0
        self.peak = 0
        self.failures: Dict[str, ErrorKind] = {}
        self.started: List[Tuple[float, str]] = []

    async def fetch(self, url: str) -> FetchResult:
        self.calls[url] += 1
        self.started.append((time.monotonic(), url))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        if url in self.failures:
            return FetchResult(url=url, elapsed_ms=1.0, attempts=1, error_kind=self.failures[url], error="boom")
        status, headers, body = self.routes.get(url, (404, {"content-type": "text/html"}, "not found"))
        return FetchResult(
            url=url,
            elapsed_ms=1.0,
            status_code=status,
            headers=dict(headers),
            body=body.encode("utf-8"),
        )


@pytest.fixture()
def make_config() -> Callable[..., CrawlConfig]:
    """Factory for fast test configs; keyword arguments override the defaults."""

    def _make(**overrides) -> CrawlConfig:
        values = dict(
            max_parallel_crawl=2,
            crawl_delay=0.0,
            max_retries=0,
            request_timeout=2.0,
            max_redirects=5,
            user_agent="TestAgent/1.0",
            max_external_links=0,
            retry_backoff=0.0,
            checkpoint_every=0,
        )
        values.update(overrides)
        return CrawlConfig(**values)

    return _make


@pytest.fixture()
def serve_app(unused_tcp_port: int):
    """Return an async context manager that serves an aiohttp app and yields its base URL."""

    @asynccontextmanager
    async def _serve(app: web.Application, port: Optional[int] = None):
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", port or unused_tcp_port)
        await site.start()
        try:
            yield f"http://127.0.0.1:{port or unused_tcp_port}"
        finally:
            await runner.cleanup()

    return _serve
