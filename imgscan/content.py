"""HTML and CSS parsing that turns page content into image candidates."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from .models import (
    SOURCE_CSS_BACKGROUND,
    SOURCE_DOM_IMAGE,
    SOURCE_IFRAME,
    SOURCE_LAZY_ATTRIBUTE,
    SOURCE_METADATA,
    AssetCandidate,
    PageContent,
)
from .urls import normalize_url, parse_srcset

logger = logging.getLogger("imgscan")

# Checked in order; the first non-empty attribute wins for an element.
LAZY_ATTRIBUTES = (
    "data-src",
    "data-lazy-src",
    "data-original",
    "data-url",
    "data-lazy",
    "data-delayed-url",
    "data-bg",
    "data-background",
)

CSS_URL_PATTERN = re.compile(r"url\(\s*(['\"]?)([^'\")]+?)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_PATTERN = re.compile(r"@import\s+['\"]([^'\"]+)['\"]", re.IGNORECASE)


@dataclass
class Extraction:
    """Deduplicated candidates plus the raw counters used for scan stats."""

    candidates: List[AssetCandidate] = field(default_factory=list)
    total_found: int = 0

    @property
    def unique_found(self) -> int:
        return len(self.candidates)

    def by_source(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for candidate in self.candidates:
            counts[candidate.source] = counts.get(candidate.source, 0) + 1
        return counts


def css_urls(css: str) -> List[str]:
    """Return raw ``url(...)`` and ``@import`` references found in CSS text."""
    if not css:
        return []
    found = [match.group(2).strip() for match in CSS_URL_PATTERN.finditer(css)]
    found.extend(match.group(1).strip() for match in CSS_IMPORT_PATTERN.finditer(css))
    return found


def _iter_image_elements(soup: BeautifulSoup) -> Iterator[str]:
    for img in soup.find_all("img"):
        src = img.get("src")
        if src:
            yield src
        yield from parse_srcset(img.get("srcset"))
    for source in soup.select("picture source"):
        if source.get("src"):
            yield source["src"]
        yield from parse_srcset(source.get("srcset"))


def _iter_lazy_attributes(soup: BeautifulSoup) -> Iterator[str]:
    for element in soup.find_all(True):
        for name in LAZY_ATTRIBUTES:
            value = element.get(name)
            if isinstance(value, list):
                value = " ".join(value)
            if value and value.strip():
                yield value
                break


def _iter_css_references(soup: BeautifulSoup, extra_styles: Iterable[str]) -> Iterator[str]:
    for element in soup.find_all(style=True):
        yield from css_urls(element["style"])
    seen_blocks = set()
    for style in soup.find_all("style"):
        text = style.get_text()
        seen_blocks.add(text)
        yield from css_urls(text)
    for text in extra_styles:
        if text not in seen_blocks:
            seen_blocks.add(text)
            yield from css_urls(text)


def collect_image_strings(node: Any, out: List[str], under_image: bool = False) -> None:
    """Collect every string reachable through a key whose name contains ``image``."""
    if isinstance(node, str):
        if under_image:
            out.append(node)
    elif isinstance(node, list):
        for item in node:
            collect_image_strings(item, out, under_image)
    elif isinstance(node, dict):
        for key, value in node.items():
            is_image_key = isinstance(key, str) and "image" in key.lower()
            collect_image_strings(value, out, under_image or is_image_key)


def _iter_metadata(soup: BeautifulSoup) -> Iterator[str]:
    for meta in soup.find_all("meta"):
        key = meta.get("property") or meta.get("name") or meta.get("itemprop") or ""
        content = meta.get("content")
        if content and "image" in key.lower():
            yield content
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            data = json.loads(raw)
        except ValueError as exc:
            logger.debug("Skipping unparsable structured data block: %s", exc)
            continue
        found: List[str] = []
        collect_image_strings(data, found)
        yield from found


def iter_signals(html: str, extra_styles: Iterable[str] = ()) -> Iterator[Tuple[str, str]]:
    """Yield ``(signal, raw_url)`` pairs for one document in signal order."""
    soup = BeautifulSoup(html or "", "html.parser")
    for raw in _iter_image_elements(soup):
        yield SOURCE_DOM_IMAGE, raw
    for raw in _iter_lazy_attributes(soup):
        yield SOURCE_LAZY_ATTRIBUTE, raw
    for raw in _iter_css_references(soup, extra_styles):
        yield SOURCE_CSS_BACKGROUND, raw
    for raw in _iter_metadata(soup):
        yield SOURCE_METADATA, raw


class CandidateSet:
    """Ordered candidates keyed by normalized URL; the first signal seen wins."""

    def __init__(self) -> None:
        self._by_url: Dict[str, AssetCandidate] = {}
        self.total = 0

    def add(self, raw: str, source: str, base_url: str) -> Optional[AssetCandidate]:
        url = normalize_url(raw, base_url)
        if url is None:
            return None
        self.total += 1
        existing = self._by_url.get(url)
        if existing is not None:
            return existing
        candidate = AssetCandidate(url=url, source=source, order=len(self._by_url))
        self._by_url[url] = candidate
        return candidate

    def __len__(self) -> int:
        return len(self._by_url)

    def items(self) -> List[AssetCandidate]:
        return sorted(self._by_url.values(), key=lambda candidate: candidate.order)


def extract_candidates(page: PageContent) -> Extraction:
    """Run all signal sources over the page and its iframe documents."""
    candidates = CandidateSet()
    for source, raw in iter_signals(page.html, page.styles):
        candidates.add(raw, source, page.url)
    for frame in page.frames:
        base = frame.url or page.url
        for _source, raw in iter_signals(frame.html):
            candidates.add(raw, SOURCE_IFRAME, base)
    extraction = Extraction(candidates=candidates.items(), total_found=candidates.total)
    logger.debug(
        "Extracted %d candidates (%d raw references) from %s",
        extraction.unique_found,
        extraction.total_found,
        page.url,
    )
    return extraction


def iframe_sources(html: str, page_url: str, limit: int) -> List[str]:
    """Return absolute http(s) ``src`` URLs of top-level iframes."""
    soup = BeautifulSoup(html or "", "html.parser")
    sources: List[str] = []
    for frame in soup.find_all("iframe"):
        src = (frame.get("src") or "").strip()
        if not src or src.lower().startswith(("data:", "javascript:", "about:")):
            continue
        absolute = urljoin(page_url, src)
        if urlsplit(absolute).scheme in ("http", "https") and absolute not in sources:
            sources.append(absolute)
        if len(sources) >= limit:
            break
    return sources
