# === FILE: domain_audit/config.py ===
"""
Loading and validation of the crawl configuration.
The schema is described with Pydantic, which also checks the values.
"""
from __future__ import annotations

import errno
import json
import os
from pathlib import Path
from typing import Any, Callable, Literal, Union

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


class CrawlConfig(BaseModel):
    """Immutable settings for one crawl, fixed when the crawl starts."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_parallel_crawl: int = Field(5, ge=1, description="Number of concurrent workers.")
    crawl_delay: float = Field(0.1, ge=0, description="Minimum spacing between a worker's requests (seconds).")
    max_retries: int = Field(3, ge=0, description="Retries for timeouts and connection failures.")
    request_timeout: float = Field(30.0, gt=0, description="Timeout for one request attempt (seconds).")
    max_redirects: int = Field(5, ge=1, description="Maximum redirect hops followed per URL.")
    user_agent: str = Field("DomainAuditBot/1.0", min_length=1, description="User-Agent header.")
    max_external_links: int = Field(100, ge=0, description="External links checked after the crawl (0 = none).")

    max_pages: int = Field(0, ge=0, description="Page limit that aborts the crawl (0 = unlimited).")
    retry_backoff: float = Field(1.0, ge=0, description="Base delay for exponential retry backoff (seconds).")
    checkpoint_every: int = Field(3, ge=0, description="Save state every N pages (0 = only at the end).")
    pacing: Literal["worker", "global"] = Field(
        "worker", description="Apply crawl_delay per worker or across the whole pool."
    )

    @field_validator("user_agent", mode="before")
    def _strip_user_agent(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v


_DEFAULT_CFG = Path("configs/crawl.yaml")


def _parse_yaml(text: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML: {exc}") from exc


def _parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON: {exc}") from exc


_PARSERS: dict[str, Callable[[str], Any]] = {
    ".yaml": _parse_yaml,
    ".yml": _parse_yaml,
    ".json": _parse_json,
}


def load_config(path: Union[str, Path, None]) -> CrawlConfig:
    """
    Read a YAML or JSON file into a validated CrawlConfig.

    ``None`` means ``configs/crawl.yaml`` relative to the working directory.
    Raises FileNotFoundError for a missing file, ValueError for an unknown
    suffix or unparsable content, TypeError when the top level is not a
    mapping and pydantic's ValidationError for out-of-range values.
    """
    path_obj = _DEFAULT_CFG if path is None else Path(path).expanduser().resolve()
    if not path_obj.is_file():
        raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), str(path_obj))

    parser = _PARSERS.get(path_obj.suffix.lower())
    if parser is None:
        raise ValueError(f"Unsupported config format: {path_obj.suffix}")

    data = parser(path_obj.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise TypeError(f"Top level of {path_obj.name} must be a mapping, got {type(data).__name__}")
    return CrawlConfig(**data)


__all__ = ["CrawlConfig", "load_config"]
