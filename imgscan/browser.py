"""Headless Chromium ownership and the rendering page fetcher."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Playwright,
    Route,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .config import ScanConfig
from .errors import ExternalServiceError, FetchTimeoutError
from .fetchers import pick_user_agent
from .models import FetchStrategy, FrameDocument, PageContent

logger = logging.getLogger("imgscan")

BLOCKED_RESOURCE_TYPES = frozenset({"font", "media", "stylesheet"})

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-blink-features=AutomationControlled",
]

SCROLL_SCRIPT = """
([step, interval, maxSteps]) => new Promise((resolve) => {
    let travelled = 0;
    let steps = 0;
    const timer = setInterval(() => {
        window.scrollBy(0, step);
        travelled += step;
        steps += 1;
        if (travelled >= document.body.scrollHeight || steps >= maxSteps) {
            clearInterval(timer);
            resolve();
        }
    }, interval);
})
"""

STYLE_TEXT_SCRIPT = "els => els.map(el => el.textContent || '')"
IFRAME_SRC_SCRIPT = "els => els.map(el => el.src).filter(Boolean)"


class BrowserManager:
    """Owns one lazily launched Chromium shared by all render fetches.

    ``acquire`` health-checks the cached browser and relaunches it after a
    disconnect; pages are never shared, only the browser process is.
    """

    def __init__(
        self,
        config: ScanConfig,
        playwright_factory: Callable[[], Any] = async_playwright,
    ) -> None:
        self.config = config
        self._playwright_factory = playwright_factory
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()
        self.launches = 0

    async def acquire(self) -> Browser:
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            if self._browser is not None:
                logger.info("Browser disconnected; relaunching")
                self._browser = None
            if self._playwright is None:
                self._playwright = await self._playwright_factory().start()
            browser = await self._playwright.chromium.launch(
                headless=True, args=LAUNCH_ARGS
            )
            browser.on("disconnected", self._on_disconnected)
            self._browser = browser
            self.launches += 1
            logger.debug("Launched headless browser (launch #%d)", self.launches)
            return browser

    def _on_disconnected(self, browser: Browser) -> None:
        if self._browser is browser:
            logger.warning("Headless browser disconnected")
            self._browser = None

    async def close(self) -> None:
        async with self._lock:
            browser, self._browser = self._browser, None
            playwright, self._playwright = self._playwright, None
            if browser is not None:
                try:
                    await browser.close()
                except PlaywrightError as exc:
                    logger.debug("Ignoring error while closing browser: %s", exc)
            if playwright is not None:
                await playwright.stop()


async def _block_heavy_resources(route: Route) -> None:
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


class RenderingFetcher:
    """Loads a page in headless Chromium so scripts and lazy content run."""

    strategy = FetchStrategy.RENDER

    def __init__(self, config: ScanConfig, browsers: BrowserManager) -> None:
        self.config = config
        self.browsers = browsers

    async def fetch(self, url: str) -> PageContent:
        width, height = self.config.viewport
        timeout_ms = int(self.config.render_timeout * 1000)
        context: Optional[BrowserContext] = None
        try:
            browser = await self.browsers.acquire()
            context = await browser.new_context(
                user_agent=pick_user_agent(self.config),
                viewport={"width": width, "height": height},
                ignore_https_errors=True,
            )
            context.set_default_navigation_timeout(timeout_ms)
            await context.route("**/*", _block_heavy_resources)
            page = await context.new_page()

            logger.info("Rendering %s", url)
            await page.goto(url, wait_until="networkidle")
            await asyncio.wait_for(
                page.evaluate(
                    SCROLL_SCRIPT,
                    [
                        self.config.scroll_step,
                        self.config.scroll_interval_ms,
                        self.config.max_scroll_steps,
                    ],
                ),
                self.config.render_timeout,
            )
            if self.config.settle_delay:
                await page.wait_for_timeout(int(self.config.settle_delay * 1000))

            html = await page.content()
            final_url = page.url
            styles: List[str] = await page.eval_on_selector_all("style", STYLE_TEXT_SCRIPT)
            frame_urls: List[str] = await page.eval_on_selector_all(
                "iframe[src]", IFRAME_SRC_SCRIPT
            )
            frames = await self._render_frames(context, frame_urls)
        except (PlaywrightTimeoutError, asyncio.TimeoutError) as exc:
            raise FetchTimeoutError(
                f"render of {url} exceeded {self.config.render_timeout:.0f}s"
            ) from exc
        except PlaywrightError as exc:
            raise ExternalServiceError(f"{url}: {exc}", service="render") from exc
        finally:
            if context is not None:
                try:
                    await context.close()
                except PlaywrightError as exc:
                    logger.debug("Ignoring error while closing context: %s", exc)
        return PageContent(
            url=final_url, html=html, strategy=self.strategy, styles=styles, frames=frames
        )

    async def _render_frames(
        self, context: BrowserContext, frame_urls: List[str]
    ) -> List[FrameDocument]:
        frames: List[FrameDocument] = []
        sources = [u for u in frame_urls if u.startswith(("http://", "https://"))]
        for frame_url in sources[: self.config.max_iframes]:
            child = await context.new_page()
            try:
                await child.goto(frame_url, wait_until="networkidle")
                frames.append(FrameDocument(url=child.url, html=await child.content()))
            except PlaywrightError as exc:
                logger.debug("Skipping iframe %s: %s", frame_url, exc)
            finally:
                await child.close()
        return frames
