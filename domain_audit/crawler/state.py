# domain_audit/crawler/state.py
"""
Mutable ledger of one crawl: visited set, pending queue, per-URL stats and
failures.

All mutation goes through the methods below. Each method holds the state
lock for its whole body and never awaits, so claim/enqueue/dequeue are
atomic with respect to every worker.
"""
from __future__ import annotations

import threading
from collections import deque
from dataclasses import asdict
from typing import Any, Deque, Dict, Iterable, List, Optional, Set

from domain_audit.crawler.link_extractor import host_of, normalize_url
from domain_audit.crawler.models import BadRequest, ErrorKind, ExternalLink, Outcome, PageStat
from domain_audit.exceptions import CrawlStateError

STATE_VERSION = 1


class CrawlState:
    """Visited/queue/stats/failure ledger shared by the crawl workers."""

    def __init__(self, base_url: str) -> None:
        self.base_url = normalize_url(base_url)
        self.domain = host_of(self.base_url)
        self._lock = threading.Lock()
        self._visited: Set[str] = set()
        self._queue: Deque[str] = deque()
        self._queued: Set[str] = set()
        self._stats: Dict[str, PageStat] = {}
        self._bad_requests: Dict[str, BadRequest] = {}
        self._external: Dict[str, ExternalLink] = {}
        self._mailto: Dict[str, List[str]] = {}
        self._tel: Dict[str, List[str]] = {}
        # redirect target -> page whose chain ended there
        self._redirected: Dict[str, str] = {}

    # ------------------------------------------------------------------ #
    # Dedup gate and queue                                               #
    # ------------------------------------------------------------------ #

    def try_claim(self, url: str) -> bool:
        """Mark *url* visited; True only for the first caller."""
        with self._lock:
            return self._claim(url)

    def _claim(self, url: str) -> bool:
        if url in self._visited:
            return False
        self._visited.add(url)
        return True

    def claim_redirect_target(self, target: str, source: str) -> bool:
        """Mark *target* visited as the end of *source*'s redirect chain.

        The target is never dispatched on its own; its outcome is the
        source's.
        """
        with self._lock:
            if not self._claim(target):
                return False
            self._redirected[target] = source
            return True

    def enqueue(self, urls: Iterable[str]) -> int:
        """Append URLs that are neither visited nor already queued. Returns the count added."""
        added = 0
        with self._lock:
            for url in urls:
                if url in self._visited or url in self._queued:
                    continue
                self._queue.append(url)
                self._queued.add(url)
                added += 1
        return added

    def dequeue(self) -> Optional[str]:
        """Pop the oldest queued URL and mark it visited in the same step."""
        with self._lock:
            while self._queue:
                url = self._queue.popleft()
                self._queued.discard(url)
                if self._claim(url):
                    return url
            return None

    # ------------------------------------------------------------------ #
    # Per-URL records                                                    #
    # ------------------------------------------------------------------ #

    def record_stat(self, url: str, stat: PageStat) -> None:
        with self._lock:
            self._stats[url] = stat

    def record_failure(
        self,
        url: str,
        error_kind: ErrorKind,
        attempts: int = 1,
        last_error: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        with self._lock:
            self._bad_requests[url] = BadRequest(
                error_kind=error_kind,
                attempts=attempts,
                last_error=last_error,
                status_code=status_code,
            )

    def record_external(self, url: str, source: str) -> None:
        with self._lock:
            link = self._external.setdefault(url, ExternalLink(url=url))
            if source not in link.sources:
                link.sources.append(source)

    def record_external_check(
        self,
        url: str,
        status_code: Optional[int],
        final_url: Optional[str],
        error_kind: Optional[ErrorKind],
    ) -> None:
        with self._lock:
            link = self._external.setdefault(url, ExternalLink(url=url))
            link.checked = True
            link.status_code = status_code
            link.final_url = final_url
            link.error_kind = error_kind

    def record_functional(self, link: str, source: str) -> None:
        """Record a mailto: or tel: link and the page it was found on."""
        target = self._mailto if link.lower().startswith("mailto:") else self._tel
        with self._lock:
            sources = target.setdefault(link, [])
            if source not in sources:
                sources.append(source)

    def outcome(self, url: str) -> Optional[Outcome]:
        """Outcome of a finished URL; None while it is pending or in flight."""
        with self._lock:
            for key in (url, self._redirected.get(url)):
                bad = self._bad_requests.get(key)
                if bad is not None:
                    return Outcome.for_error(bad.error_kind)
                if key in self._stats:
                    return Outcome.SUCCESS
            return None

    # ------------------------------------------------------------------ #
    # Read-only views                                                    #
    # ------------------------------------------------------------------ #

    @property
    def visited(self) -> Set[str]:
        with self._lock:
            return set(self._visited)

    @property
    def queue(self) -> List[str]:
        with self._lock:
            return list(self._queue)

    @property
    def stats(self) -> Dict[str, PageStat]:
        with self._lock:
            return dict(self._stats)

    @property
    def bad_requests(self) -> Dict[str, BadRequest]:
        with self._lock:
            return dict(self._bad_requests)

    @property
    def external_links(self) -> Dict[str, ExternalLink]:
        with self._lock:
            return dict(self._external)

    @property
    def mailto_links(self) -> Dict[str, List[str]]:
        with self._lock:
            return {k: list(v) for k, v in self._mailto.items()}

    @property
    def tel_links(self) -> Dict[str, List[str]]:
        with self._lock:
            return {k: list(v) for k, v in self._tel.items()}

    @property
    def redirected(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._redirected)

    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    # ------------------------------------------------------------------ #
    # Serialization                                                      #
    # ------------------------------------------------------------------ #

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "version": STATE_VERSION,
                "base_url": self.base_url,
                "domain": self.domain,
                "visited": sorted(self._visited),
                "queue": list(self._queue),
                "stats": {url: asdict(stat) for url, stat in self._stats.items()},
                "bad_requests": {
                    url: {**asdict(bad), "error_kind": bad.error_kind.value}
                    for url, bad in self._bad_requests.items()
                },
                "external_links": {
                    url: {**asdict(link), "error_kind": link.error_kind.value if link.error_kind else None}
                    for url, link in self._external.items()
                },
                "mailto_links": {k: list(v) for k, v in self._mailto.items()},
                "tel_links": {k: list(v) for k, v in self._tel.items()},
                "redirected": dict(self._redirected),
            }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CrawlState:
        try:
            state = cls(data["base_url"])
            state._visited = set(data.get("visited", []))
            for url in data.get("queue", []):
                if url not in state._visited and url not in state._queued:
                    state._queue.append(url)
                    state._queued.add(url)
            state._stats = {url: PageStat(**stat) for url, stat in data.get("stats", {}).items()}
            state._bad_requests = {
                url: BadRequest(**{**bad, "error_kind": ErrorKind(bad["error_kind"])})
                for url, bad in data.get("bad_requests", {}).items()
            }
            state._external = {
                url: ExternalLink(
                    **{**link, "error_kind": ErrorKind(link["error_kind"]) if link.get("error_kind") else None}
                )
                for url, link in data.get("external_links", {}).items()
            }
            state._mailto = {k: list(v) for k, v in data.get("mailto_links", {}).items()}
            state._tel = {k: list(v) for k, v in data.get("tel_links", {}).items()}
            state._redirected = {str(k): str(v) for k, v in data.get("redirected", {}).items()}
            # pages that were in flight when the state was saved go back to the front of the queue
            unfinished = sorted(
                state._visited - state._stats.keys() - state._bad_requests.keys() - state._redirected.keys()
            )
            for url in reversed(unfinished):
                state._visited.discard(url)
                if url not in state._queued:
                    state._queue.appendleft(url)
                    state._queued.add(url)
        except (KeyError, TypeError, ValueError) as exc:
            raise CrawlStateError(f"Invalid crawl state: {exc}") from exc
        return state


__all__ = ["CrawlState", "STATE_VERSION"]
