from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from domain_audit.analyzers import AnalysisInput, AnalyzerPipeline
from domain_audit.config import CrawlConfig
from domain_audit.crawler.fetcher import NetworkTransport
from domain_audit.crawler.link_extractor import classify_links, host_of, is_internal, normalize_url
from domain_audit.crawler.models import ErrorKind, FetchResult, PageResult, PageStat
from domain_audit.crawler.pacing import Pacer
from domain_audit.crawler.redirects import RedirectResolver, Transport
from domain_audit.crawler.state import CrawlState
from domain_audit.crawler.telemetry import PageTelemetryExtractor
from domain_audit.logger import LOGGER_NAME
from domain_audit.parser.html_parser import parse_html
from domain_audit.storage import StorageAdapter

__all__ = ("CrawlOrchestrator", "CrawlResult", "CrawlStatus")


class CrawlStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    ABORTED = "aborted"
    TERMINATED = "terminated"


@dataclass(slots=True)
class CrawlResult:
    """Everything a finished (or aborted) crawl produced."""
    base_url: str
    state: CrawlState
    pages: List[PageResult] = field(default_factory=list)
    findings: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    abort_reason: Optional[str] = None
    duration: float = 0.0

    @property
    def aborted(self) -> bool:
        return self.abort_reason is not None


class CrawlOrchestrator:
    """Breadth-first crawl of one domain with a fixed pool of async workers.

    Abort policy: once aborted, workers stop taking new URLs but pages
    already in flight run to completion. Cancelling the task running
    :meth:`crawl` instead cancels in-flight requests. Both paths persist the
    state accumulated so far.
    """

    def __init__(
        self,
        config: CrawlConfig,
        base_url: str,
        *,
        transport: Optional[Transport] = None,
        storage: Optional[StorageAdapter] = None,
        pipeline: Optional[AnalyzerPipeline] = None,
        resume: bool = True,
    ) -> None:
        self.config = config
        self.base_url = normalize_url(base_url)
        self.domain = host_of(self.base_url)
        self.transport = transport
        self._owns_transport = transport is None
        self.storage = storage
        self.pipeline = pipeline or AnalyzerPipeline()
        self.resume = resume
        self.extractor = PageTelemetryExtractor()
        self.resolver: Optional[RedirectResolver] = None
        self.state: Optional[CrawlState] = None
        self.status = CrawlStatus.IDLE
        self.abort_reason: Optional[str] = None
        self.pages: List[PageResult] = []
        self.logger = logging.getLogger(LOGGER_NAME)
        self._cond: Optional[asyncio.Condition] = None
        self._aborted = False
        self._in_flight = 0
        self._dispatched = 0
        self._completed = 0

    async def __aenter__(self) -> CrawlOrchestrator:
        if self.transport is None:
            transport = NetworkTransport(self.config)
            await transport.__aenter__()
            self.transport = transport
        self.resolver = RedirectResolver(self.transport, self.config)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_transport and isinstance(self.transport, NetworkTransport):
            await self.transport.__aexit__(exc_type, exc, tb)

    # ------------------------------------------------------------------ #
    # Lifecycle                                                          #
    # ------------------------------------------------------------------ #

    async def crawl(self) -> CrawlResult:
        if self.status is not CrawlStatus.IDLE:
            raise RuntimeError("crawl() can only run once per orchestrator")
        if self.resolver is None:
            raise RuntimeError("Use 'async with CrawlOrchestrator(...)' before crawl()")

        start = time.monotonic()
        self.state = self._initial_state()
        self._cond = asyncio.Condition()
        self.status = CrawlStatus.RUNNING
        self.logger.info(
            "Starting crawl of %s with %d workers (%d queued)",
            self.base_url, self.config.max_parallel_crawl, self.state.pending(),
        )

        shared = Pacer(self.config.crawl_delay) if self.config.pacing == "global" else None
        workers = [
            asyncio.create_task(self._worker(i + 1, shared or Pacer(self.config.crawl_delay)))
            for i in range(self.config.max_parallel_crawl)
        ]
        try:
            await asyncio.gather(*workers)
            if not self._aborted:
                self.status = CrawlStatus.DRAINING
                await self._check_external_links()
            findings = await self.pipeline.drain()
        except asyncio.CancelledError:
            self._mark_aborted("cancelled")
            await self._stop(workers)
            self._persist()
            self.status = CrawlStatus.TERMINATED
            raise
        except Exception:
            await self._stop(workers)
            self.status = CrawlStatus.TERMINATED
            raise

        self._persist()
        self.status = CrawlStatus.TERMINATED
        duration = time.monotonic() - start
        self.logger.info(
            "Finished: %d pages in %.2f s (%.2f pages/s)%s",
            len(self.pages), duration, len(self.pages) / duration if duration else 0,
            f" - aborted: {self.abort_reason}" if self.abort_reason else "",
        )
        if self.state.bad_requests:
            self.logger.info("Bad requests: %d", len(self.state.bad_requests))
        return CrawlResult(
            base_url=self.base_url,
            state=self.state,
            pages=list(self.pages),
            findings=findings,
            abort_reason=self.abort_reason,
            duration=duration,
        )

    async def abort(self, reason: str = "aborted by caller") -> None:
        """Stop dispatching new URLs; pages in flight are allowed to finish."""
        if self._cond is None:
            self._mark_aborted(reason)
            return
        async with self._cond:
            self._mark_aborted(reason)
            self._cond.notify_all()

    def _mark_aborted(self, reason: str) -> None:
        if self._aborted:
            return
        self._aborted = True
        self.abort_reason = reason
        if self.status in (CrawlStatus.IDLE, CrawlStatus.RUNNING):
            self.status = CrawlStatus.ABORTED
        self.logger.warning("Crawl of %s aborted: %s", self.base_url, reason)

    async def _stop(self, workers: List[asyncio.Task[None]]) -> None:
        for w in workers:
            w.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        await self.pipeline.cancel()

    def _initial_state(self) -> CrawlState:
        if self.storage is not None and self.resume:
            restored = self.storage.load(self.domain)
            if restored is not None:
                self.logger.info("Resuming crawl of %s", self.domain)
                if not restored.visited and not restored.pending():
                    restored.enqueue([self.base_url])
                return restored
        state = CrawlState(self.base_url)
        state.enqueue([state.base_url])
        return state

    def _persist(self) -> None:
        if self.storage is not None and self.state is not None:
            self.storage.save(self.state)

    # ------------------------------------------------------------------ #
    # Worker pool                                                        #
    # ------------------------------------------------------------------ #

    async def _worker(self, worker_id: int, pacer: Pacer) -> None:
        processed = 0
        while True:
            url = await self._next_url()
            if url is None:
                break
            try:
                await pacer.wait()
                try:
                    await self._process(url)
                except Exception as exc:
                    self._record_crash(url, exc)
                processed += 1
                self._completed += 1
                every = self.config.checkpoint_every
                if every and self._completed % every == 0:
                    self._persist()
            finally:
                await self._release()
        self.logger.debug("[Worker %d] finished - processed %d pages", worker_id, processed)

    def _running(self) -> Tuple[CrawlState, asyncio.Condition, RedirectResolver]:
        if self.state is None or self._cond is None or self.resolver is None:
            raise RuntimeError("Crawl not running; use 'async with CrawlOrchestrator(...)' and crawl()")
        return self.state, self._cond, self.resolver

    def _record_crash(self, url: str, exc: Exception) -> None:
        """An unexpected error on one page fails that page only."""
        self.logger.exception("Unexpected error while crawling %s", url)
        state, _, _ = self._running()
        state.record_failure(url, ErrorKind.MALFORMED_RESPONSE, 1, f"{type(exc).__name__}: {exc}")

    async def _next_url(self) -> Optional[str]:
        """Next URL to dispatch, or None once the pool agrees the crawl is over."""
        state, cond, _ = self._running()
        async with cond:
            while True:
                if self._aborted:
                    return None
                limit = self.config.max_pages
                if limit and self._dispatched >= limit and state.pending():
                    self._mark_aborted("page limit reached")
                    cond.notify_all()
                    return None
                url = state.dequeue()
                if url is not None:
                    self._in_flight += 1
                    self._dispatched += 1
                    return url
                if self._in_flight == 0:
                    # queue empty and nobody can enqueue more
                    cond.notify_all()
                    return None
                await cond.wait()

    async def _release(self) -> None:
        _, cond, _ = self._running()
        async with cond:
            self._in_flight -= 1
            cond.notify_all()

    # ------------------------------------------------------------------ #
    # One page                                                           #
    # ------------------------------------------------------------------ #

    async def _process(self, url: str) -> None:
        state, _, resolver = self._running()
        self.logger.info("Crawling %s (%d left in queue)", url, state.pending())

        started = time.monotonic()
        chain = await resolver.resolve(url)
        elapsed_ms = (time.monotonic() - started) * 1000.0

        if chain.error_kind is not None or chain.response is None:
            kind = chain.error_kind or ErrorKind.PROTOCOL_ERROR
            state.record_failure(url, kind, chain.attempts, chain.error)
            return

        response = chain.response
        telemetry = self.extractor.extract(response, chain.final_url, elapsed_ms)
        page = PageResult(
            url=url,
            final_url=chain.final_url,
            status_code=response.status_code,
            response_time=telemetry.response_time,
            page_size=telemetry.page_size,
            redirect_chain=chain,
            security_headers=telemetry.security,
            technologies=telemetry.technologies,
            compression=telemetry.compression,
            caching=telemetry.caching,
            download_speed=telemetry.download_speed,
            content_type=response.content_type,
        )
        self.pages.append(page)
        state.record_stat(
            url,
            PageStat(response_time=page.response_time, page_size=page.page_size, status_code=page.status_code),
        )

        status = response.status_code or 0
        if status >= 400:
            page.error = f"HTTP {status}"
            state.record_failure(url, ErrorKind.HTTP_ERROR, chain.attempts, page.error, status_code=status)
            return
        if not is_internal(chain.final_url, self.domain):
            self.logger.debug("%s redirected off-site to %s", url, chain.final_url)
            return
        if chain.final_url != url:
            state.claim_redirect_target(normalize_url(chain.final_url), url)
        if not self._is_html(response):
            return

        try:
            document = parse_html(response.text(), chain.final_url)
        except Exception as e:
            self.logger.warning("Could not parse %s: %s", url, e)
            page.error = f"parse failure: {e}"
            state.record_failure(url, ErrorKind.PARSE_FAILURE, chain.attempts, page.error, status_code=status)
            return

        self.pipeline.submit(AnalysisInput(document=document, url=url, page_data=page))

        links = classify_links(chain.final_url, document.links, self.domain)
        added = state.enqueue(links.internal)
        for link in links.external:
            state.record_external(link, url)
        for link in links.mailto + links.tel:
            state.record_functional(link, url)
        self.logger.debug(
            "%s: %d internal (%d new), %d external links", url, len(links.internal), added, len(links.external)
        )

    @staticmethod
    def _is_html(response: FetchResult) -> bool:
        ctype = response.content_type
        return not ctype or "html" in ctype

    # ------------------------------------------------------------------ #
    # External links                                                     #
    # ------------------------------------------------------------------ #

    async def _check_external_links(self) -> None:
        state, _, resolver = self._running()
        limit = self.config.max_external_links
        targets = list(state.external_links)[:limit]
        if not targets:
            return
        self.logger.info("Checking %d external links", len(targets))
        semaphore = asyncio.Semaphore(self.config.max_parallel_crawl)

        async def check(link: str) -> None:
            async with semaphore:
                chain = await resolver.resolve(link)
            if chain.response is not None:
                status = chain.response.status_code
            else:
                status = chain.hops[-1].status_code if chain.hops else None
            state.record_external_check(link, status, chain.final_url, chain.error_kind)

        await asyncio.gather(*(check(link) for link in targets))
