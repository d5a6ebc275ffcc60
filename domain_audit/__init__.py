"""
domain_audit package initializer.
Defines package version and exposes the crawl entry points.
"""
__version__ = "0.1.0"

from domain_audit.config import CrawlConfig, load_config
from domain_audit.crawler.crawler import CrawlOrchestrator, CrawlResult, CrawlStatus
from domain_audit.engine import Engine, run_crawl

__all__ = [
    "__version__",
    "CrawlConfig",
    "CrawlOrchestrator",
    "CrawlResult",
    "CrawlStatus",
    "Engine",
    "load_config",
    "run_crawl",
]
