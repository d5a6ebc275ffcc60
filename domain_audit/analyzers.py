# File: domain_audit/analyzers.py
"""domain_audit.analyzers: the boundary between the crawl core and content analyzers.

For every completed page the crawler submits ``{document, url, page_data}``.
Analyzers run independently of the worker that produced the page: the
worker returns to the queue as soon as the page is submitted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol, Set

from domain_audit.crawler.models import PageResult
from domain_audit.logger import LOGGER_NAME
from domain_audit.parser.html_parser import ParsedDocument

__all__ = ["AnalysisInput", "Analyzer", "AnalyzerPipeline", "Findings"]

Findings = Dict[str, Any]

logger = logging.getLogger(LOGGER_NAME)


@dataclass(frozen=True, slots=True)
class AnalysisInput:
    """Read-only input handed to every analyzer."""

    document: ParsedDocument
    url: str
    page_data: PageResult


class Analyzer(Protocol):
    """A content analyzer registered into the pipeline."""

    name: str

    def analyze(self, document: ParsedDocument, page_result: PageResult) -> Findings:
        """Return findings for one page. Must not mutate its input."""
        ...


class AnalyzerPipeline:
    """Runs registered analyzers for submitted pages and collects their findings."""

    def __init__(self, analyzers: List[Analyzer] | None = None) -> None:
        self._analyzers: List[Analyzer] = list(analyzers or [])
        self._tasks: Set[asyncio.Task[None]] = set()
        self.findings: Dict[str, Dict[str, Findings]] = {}

    def register(self, analyzer: Analyzer) -> None:
        self._analyzers.append(analyzer)

    @property
    def analyzers(self) -> List[Analyzer]:
        return list(self._analyzers)

    def submit(self, payload: AnalysisInput) -> None:
        """Schedule every analyzer for *payload* and return immediately."""
        for analyzer in self._analyzers:
            task = asyncio.create_task(self._run(analyzer, payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, analyzer: Analyzer, payload: AnalysisInput) -> None:
        try:
            result = await asyncio.to_thread(analyzer.analyze, payload.document, payload.page_data)
        except Exception as exc:
            logger.exception("Analyzer %s failed on %s", analyzer.name, payload.url)
            result = {"error": f"{type(exc).__name__}: {exc}"}
        self.findings.setdefault(payload.url, {})[analyzer.name] = result

    async def drain(self) -> Dict[str, Dict[str, Findings]]:
        """Wait for all submitted analyzers to finish and return the findings."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
        return self.findings

    async def cancel(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
