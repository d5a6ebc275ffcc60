# === FILE: domain_audit/parser/html_parser.py ===
"""HTML parsing for domain_audit.

The crawler needs two things from a page: a queryable tree to hand to the
analyzers and the raw outbound hrefs to classify. :func:`parse_html` wraps
BeautifulSoup with the tolerant ``html.parser`` backend, so malformed
markup still yields a (possibly partial) tree instead of an exception.

* soup: the :class:`bs4.BeautifulSoup` tree, read-only for analyzers.
* title: document <title> text or ``""`` if absent.
* links: href values of <a> and <area> tags, in document order.
* generator: content of ``<meta name="generator">`` if present.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from bs4 import BeautifulSoup
from bs4.element import Tag

__all__: Sequence[str] = ("ParsedDocument", "parse_html")


@dataclass(slots=True)
class ParsedDocument:
    """Parsed page handed to the analyzer boundary."""

    url: str
    soup: BeautifulSoup
    title: str
    links: list[str] = field(default_factory=list)
    generator: str = ""

    def text(self) -> str:
        """Visible text without script/style content."""
        parts = []
        for node in self.soup.find_all(string=True):
            if node.parent is not None and node.parent.name in ("script", "style", "noscript", "template"):
                continue
            stripped = node.strip()
            if stripped:
                parts.append(stripped)
        return " ".join(parts)


def parse_html(html: str, base_url: str) -> ParsedDocument:
    """Parse *html* fetched from *base_url*.

    Hrefs are returned raw; resolving and classifying them is the crawler's
    job (see :func:`domain_audit.crawler.link_extractor.classify_links`).
    """
    soup = BeautifulSoup(html, "html.parser")

    title_tag = soup.find("title")
    title = title_tag.get_text(strip=True) if title_tag else ""

    links: list[str] = []
    for tag in soup.find_all(("a", "area"), href=True):
        if not isinstance(tag, Tag):
            continue
        href = tag.get("href")
        if isinstance(href, str) and href.strip():
            links.append(href.strip())

    generator = ""
    meta = soup.find("meta", attrs={"name": "generator"})
    if isinstance(meta, Tag):
        content = meta.get("content")
        if isinstance(content, str):
            generator = content.strip()

    return ParsedDocument(url=base_url, soup=soup, title=title, links=links, generator=generator)
