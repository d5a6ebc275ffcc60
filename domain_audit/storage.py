# File: domain_audit/storage.py
"""domain_audit.storage: persisting crawl state so an interrupted crawl can resume."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

from domain_audit.crawler.state import CrawlState
from domain_audit.exceptions import CrawlStateError, StorageError
from domain_audit.logger import logger

__all__ = ["JsonStateStorage", "MemoryStorage", "StorageAdapter", "STATE_FILE"]

STATE_FILE = "crawl-state.json"


class StorageAdapter(Protocol):
    """Persistence collaborator used at crawl start, on checkpoints and at crawl end."""

    def save(self, state: CrawlState) -> None:
        """Persist *state*; raise StorageError on failure."""
        ...

    def load(self, domain: str) -> Optional[CrawlState]:
        """Return the saved state for *domain*, or None."""
        ...


class JsonStateStorage:
    """Stores one JSON document per domain under ``<root>/<domain>/crawl-state.json``."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root).expanduser()

    def path_for(self, domain: str) -> Path:
        return self.root / domain.replace(":", "_") / STATE_FILE

    def save(self, state: CrawlState) -> None:
        path = self.path_for(state.domain)
        tmp = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(state.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise StorageError(state.domain, exc) from exc
        logger.debug("Saved crawl state for %s to %s", state.domain, path)

    def load(self, domain: str) -> Optional[CrawlState]:
        path = self.path_for(domain)
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            state = CrawlState.from_dict(data)
        except (OSError, json.JSONDecodeError, CrawlStateError) as exc:
            raise StorageError(domain, exc) from exc
        logger.info("Restored crawl state for %s: %d visited, %d queued", domain, len(state.visited), state.pending())
        return state


class MemoryStorage:
    """Keeps serialized states in a dict; useful when embedding the crawler."""

    def __init__(self) -> None:
        self.saved: Dict[str, dict] = {}
        self.saves = 0

    def save(self, state: CrawlState) -> None:
        self.saved[state.domain] = state.to_dict()
        self.saves += 1

    def load(self, domain: str) -> Optional[CrawlState]:
        data = self.saved.get(domain)
        return CrawlState.from_dict(data) if data is not None else None
