"""Page fetchers: the lightweight HTTP loader and the strategy selector."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Dict, List, Optional, Protocol, Tuple
from urllib.parse import urlsplit

import aiohttp

from .config import SEARCH_REFERER, ScanConfig
from .content import iframe_sources
from .errors import ExternalServiceError, FetchTimeoutError
from .models import FetchStrategy, FrameDocument, PageContent

logger = logging.getLogger("imgscan")

PAGE_ACCEPT = (
    "text/html,application/xhtml+xml,application/xml;q=0.9,"
    "image/avif,image/webp,image/apng,*/*;q=0.8"
)


class PageFetcher(Protocol):
    """Anything that can turn a URL into page content."""

    async def fetch(self, url: str) -> PageContent:
        ...


def select_strategy(hostname: str, config: ScanConfig) -> FetchStrategy:
    """Pick the fetch strategy for a host; pure and repeatable."""
    if config.always_render:
        return FetchStrategy.RENDER
    host = (hostname or "").lower()
    if any(domain.lower() in host for domain in config.render_domains):
        return FetchStrategy.RENDER
    return FetchStrategy.STATIC


def pick_user_agent(config: ScanConfig, rng: Optional[random.Random] = None) -> str:
    chooser = rng or random
    return chooser.choice(config.user_agents)


def browser_headers(url: str, user_agent: str) -> Dict[str, str]:
    """Headers mimicking a browser arriving from a search results page."""
    return {
        "User-Agent": user_agent,
        "Accept": PAGE_ACCEPT,
        "Accept-Language": "en-US,en;q=0.9",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
        "Referer": SEARCH_REFERER,
        "Upgrade-Insecure-Requests": "1",
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "cross-site",
        "Origin": "{0.scheme}://{0.netloc}".format(urlsplit(url)),
    }


class StaticFetcher:
    """Single HTTP GET per document, no script execution."""

    strategy = FetchStrategy.STATIC

    def __init__(self, config: ScanConfig) -> None:
        self.config = config

    async def fetch(self, url: str) -> PageContent:
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
        headers = browser_headers(url, pick_user_agent(self.config))
        async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
            final_url, html = await self._get_text(session, url)
            frames: List[FrameDocument] = []
            for frame_url in iframe_sources(html, final_url, self.config.max_iframes):
                try:
                    frame_final, frame_html = await self._get_text(session, frame_url)
                except (ExternalServiceError, FetchTimeoutError) as exc:
                    logger.debug("Skipping iframe %s: %s", frame_url, exc)
                    continue
                frames.append(FrameDocument(url=frame_final, html=frame_html))
        return PageContent(url=final_url, html=html, strategy=self.strategy, frames=frames)

    async def _get_text(
        self, session: aiohttp.ClientSession, url: str
    ) -> Tuple[str, str]:
        try:
            async with session.get(
                url, allow_redirects=True, max_redirects=self.config.max_redirects
            ) as response:
                if response.status >= 400:
                    raise ExternalServiceError(
                        f"{url} answered HTTP {response.status}", service="static"
                    )
                html = await response.text(errors="replace")
                return str(response.url), html
        except asyncio.TimeoutError as exc:
            raise FetchTimeoutError(
                f"static fetch of {url} exceeded {self.config.request_timeout:.0f}s"
            ) from exc
        except aiohttp.ClientError as exc:
            raise ExternalServiceError(f"{url}: {exc}", service="static") from exc
