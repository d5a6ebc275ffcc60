# domain_audit/crawler/fetcher.py
"""
Network transport: issues one HTTP request with timeout, retry/backoff and cancellation.

Knows nothing about crawling. Redirects are not followed here; a 3xx is
returned like any other well-formed response.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import time
from typing import Dict, Mapping, Optional

from aiohttp import (
    ClientConnectionError,
    ClientError,
    ClientPayloadError,
    ClientResponseError,
    ClientSession,
    ClientTimeout,
    InvalidURL,
)

from domain_audit.config import CrawlConfig
from domain_audit.crawler.models import ErrorKind, FetchResult
from domain_audit.logger import LOGGER_NAME

_MAX_BACKOFF = 60.0


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000.0


def _known_charset(charset: Optional[str]) -> str:
    """The declared charset if Python has a codec for it, otherwise utf-8."""
    if not charset:
        return "utf-8"
    try:
        codecs.lookup(charset)
    except LookupError:
        return "utf-8"
    return charset


def _flatten_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Lower-case header names; repeated headers are joined (Set-Cookie by newline)."""
    flat: Dict[str, str] = {}
    for name, value in headers.items():
        key = name.lower()
        if key in flat:
            sep = "\n" if key == "set-cookie" else ", "
            flat[key] = f"{flat[key]}{sep}{value}"
        else:
            flat[key] = value
    return flat


class NetworkTransport:
    """Fetches single URLs with a per-attempt timeout and bounded retries."""

    def __init__(self, config: CrawlConfig, session: Optional[ClientSession] = None) -> None:
        self.config = config
        self.session = session
        self._owns_session = session is None
        self.logger = logging.getLogger(LOGGER_NAME)

    async def __aenter__(self) -> NetworkTransport:
        if self.session is None:
            self.session = ClientSession(
                timeout=ClientTimeout(total=self.config.request_timeout),
                headers={"User-Agent": self.config.user_agent},
                raise_for_status=False,
            )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch *url* once, retrying only timeouts and connection failures.

        Well-formed 4xx/5xx responses are returned after a single attempt.
        Cancellation of the caller propagates into the running attempt and
        no further attempts are made.
        """
        if not self.session:
            raise RuntimeError("Session not initialized")

        start = time.monotonic()
        attempts = 0
        while True:
            attempts += 1
            try:
                result = await asyncio.wait_for(self._attempt(url), timeout=self.config.request_timeout)
            except asyncio.TimeoutError:
                kind, message = ErrorKind.TIMEOUT, f"no response within {self.config.request_timeout}s"
            except ClientConnectionError as e:
                kind, message = ErrorKind.CONNECTION_FAILURE, str(e) or type(e).__name__
            except (ClientPayloadError, ClientResponseError) as e:
                kind, message = ErrorKind.MALFORMED_RESPONSE, str(e) or type(e).__name__
            except (InvalidURL, ClientError) as e:
                kind, message = ErrorKind.PROTOCOL_ERROR, str(e) or type(e).__name__
            else:
                result.attempts = attempts
                result.elapsed_ms = _elapsed_ms(start)
                return result

            if not kind.retryable or attempts > self.config.max_retries:
                self.logger.warning("Failed %s after %d attempt(s): %s (%s)", url, attempts, kind.value, message)
                return FetchResult(
                    url=url,
                    elapsed_ms=_elapsed_ms(start),
                    attempts=attempts,
                    error_kind=kind,
                    error=message,
                )

            backoff = min(_MAX_BACKOFF, self.config.retry_backoff * 2 ** (attempts - 1))
            self.logger.debug(
                "Retry %d/%d for %s after %.2f s (%s)", attempts, self.config.max_retries, url, backoff, kind.value
            )
            if backoff > 0:
                await asyncio.sleep(backoff)

    async def _attempt(self, url: str) -> FetchResult:
        if self.session is None:
            raise RuntimeError("Session not initialized")
        async with self.session.get(
            url,
            allow_redirects=False,
            headers={"User-Agent": self.config.user_agent},
        ) as resp:
            body = await resp.read()
            return FetchResult(
                url=url,
                elapsed_ms=0.0,
                status_code=resp.status,
                headers=_flatten_headers(resp.headers),
                body=body,
                encoding=_known_charset(resp.charset),
            )


__all__ = ["NetworkTransport"]
