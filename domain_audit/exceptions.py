"""Exceptions raised by the domain_audit crawl core.

Per-page failures are never raised; they are recorded as ``BadRequest``
entries in the crawl state. Only conditions fatal to the whole crawl
surface as exceptions.
"""


class CrawlError(Exception):
    """Base class for crawl-fatal errors."""


class StorageError(CrawlError):
    """Raised when crawl state cannot be saved or restored."""

    def __init__(self, domain: str, original: Exception):
        self.domain = domain
        self.original = original
        super().__init__(f"Storage failed for {domain}: {original}")


class CrawlStateError(CrawlError):
    """Raised when persisted crawl state is unreadable or inconsistent."""
