# File: domain_audit/engine.py
"""domain_audit.engine: orchestration layer that runs a crawl and builds its report."""

from __future__ import annotations

import asyncio
from typing import Iterable, Optional

from domain_audit.aggregator import CrawlReport, aggregate_results
from domain_audit.analyzers import Analyzer, AnalyzerPipeline
from domain_audit.config import CrawlConfig, load_config
from domain_audit.crawler.crawler import CrawlOrchestrator, CrawlResult
from domain_audit.logger import logger
from domain_audit.storage import StorageAdapter

__all__ = ["Engine", "run_crawl"]


async def run_crawl(
    config: CrawlConfig,
    base_url: str,
    *,
    storage: Optional[StorageAdapter] = None,
    analyzers: Iterable[Analyzer] = (),
) -> CrawlResult:
    """
    Crawl *base_url* inside an orchestrator context and return the result.

    Parameters
    ----------
    config : CrawlConfig
        Crawl settings.
    base_url : str
        Root URL of the domain to crawl.
    storage : StorageAdapter, optional
        Used to resume a previous crawl and to persist this one.
    analyzers : iterable of Analyzer
        Registered into the analyzer pipeline for every parsed page.
    """
    pipeline = AnalyzerPipeline(list(analyzers))
    async with CrawlOrchestrator(config, base_url, storage=storage, pipeline=pipeline) as crawler:
        return await crawler.crawl()


class Engine:
    """Facade for callers and tests: load the config, run the crawl, aggregate the report."""

    @staticmethod
    def load_config(path: Optional[str]) -> CrawlConfig:
        """Load the config from YAML/JSON."""
        return load_config(path)

    def __init__(
        self,
        config: CrawlConfig,
        *,
        storage: Optional[StorageAdapter] = None,
        analyzers: Iterable[Analyzer] = (),
    ) -> None:
        self.config = config
        self.storage = storage
        self.analyzers = list(analyzers)

    def start_crawl(self, base_url: str) -> CrawlReport:
        """Run the crawl to completion and return the aggregated report."""
        logger.info("Starting crawl of %s", base_url)
        try:
            result = asyncio.run(
                run_crawl(self.config, base_url, storage=self.storage, analyzers=self.analyzers)
            )
        except Exception as exc:
            logger.error("Crawl failed: %s", exc)
            raise

        try:
            return aggregate_results(result)
        except Exception as exc:
            logger.error("Aggregation failed: %s", exc)
            raise
