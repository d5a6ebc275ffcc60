# domain_audit/crawler/pacing.py
"""Request pacing: enforces crawl_delay between dispatches."""
from __future__ import annotations

import asyncio
import time


class Pacer:
    """Spaces consecutive requests at least *delay* seconds apart.

    One instance per worker gives per-worker spacing; a single instance
    shared by the whole pool gives a global rate limit.
    """

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self._lock = asyncio.Lock()
        self._last_request_ts: float | None = None

    async def wait(self) -> None:
        async with self._lock:
            if self._last_request_ts is not None:
                wait = self.delay - (time.monotonic() - self._last_request_ts)
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_request_ts = time.monotonic()
