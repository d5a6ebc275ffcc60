# domain_audit/crawler/redirects.py
"""
Redirect resolution on top of the network transport.
"""
from __future__ import annotations

import logging
from typing import Protocol, Set
from urllib.parse import urljoin

from domain_audit.config import CrawlConfig
from domain_audit.crawler.link_extractor import normalize_url
from domain_audit.crawler.models import ErrorKind, FetchResult, RedirectChain, RedirectHop
from domain_audit.logger import LOGGER_NAME

REDIRECT_STATUS = frozenset((301, 302, 303, 307, 308))


class Transport(Protocol):
    """Anything that can fetch one URL the way NetworkTransport does."""

    async def fetch(self, url: str) -> FetchResult:
        ...


class RedirectResolver:
    """Follows Location headers hop by hop, building a RedirectChain."""

    def __init__(self, transport: Transport, config: CrawlConfig) -> None:
        self.transport = transport
        self.config = config
        self.logger = logging.getLogger(LOGGER_NAME)

    async def resolve(self, url: str) -> RedirectChain:
        """
        Resolve *url* to its final response.

        Stops on a non-redirect response, on a URL repeating within this
        chain (``has_loop``), or when another hop would exceed
        ``max_redirects``. Issues at most ``max_redirects + 1`` fetches.
        """
        chain = RedirectChain(url=url, final_url=url)
        seen: Set[str] = {normalize_url(url)}
        current = url
        while True:
            result = await self.transport.fetch(current)
            chain.attempts += result.attempts
            if not result.ok:
                chain.error_kind = result.error_kind
                chain.error = result.error
                chain.final_url = current
                return chain

            status = result.status_code or 0
            location = result.headers.get("location")
            if status not in REDIRECT_STATUS or not location:
                chain.hops.append(RedirectHop(url=current, status_code=status))
                chain.final_url = current
                chain.response = result
                return chain

            target = urljoin(current, location.strip())
            chain.hops.append(RedirectHop(url=current, status_code=status, location=target))
            chain.final_url = target

            key = normalize_url(target)
            if key in seen:
                chain.has_loop = True
                chain.error_kind = ErrorKind.REDIRECT_LOOP
                chain.error = f"redirect loop detected at {target}"
                self.logger.info("Redirect loop: %s -> %s", url, target)
                return chain
            if chain.redirect_count > self.config.max_redirects:
                chain.error_kind = ErrorKind.TOO_MANY_REDIRECTS
                chain.error = "too many redirects"
                self.logger.info("Too many redirects from %s (%d hops)", url, chain.redirect_count)
                return chain
            seen.add(key)
            current = target


__all__ = ["REDIRECT_STATUS", "RedirectResolver", "Transport"]
