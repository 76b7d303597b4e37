"""High-level orchestration of a single-page image scan."""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
import time
from typing import Callable, Optional
from urllib.parse import urlsplit

from .config import ScanConfig
from .content import extract_candidates
from .errors import FetchExhaustedError
from .fetchers import select_strategy
from .images import ImageDownloader
from .models import ScanRequest, ScanResult, ScanStats
from .retry import FetchController
from .storage import DurableStore
from .utils import new_scan_id, slugify

logger = logging.getLogger("imgscan")

RESULT_FILE = "result.json"

ProgressCallback = Callable[[int], None]


def build_scan_dir(url: str, scan_id: str) -> str:
    """Relative storage directory for a scan: ``<site>/<scan_id>``."""
    parsed = urlsplit(url)
    site = slugify(parsed.hostname or "site", fallback="site")
    return f"{site}/{scan_id}"


class ScanPipeline:
    """Fetch, extract, download and persist the images of one page."""

    def __init__(
        self,
        config: ScanConfig,
        controller: FetchController,
        downloader: ImageDownloader,
        store: DurableStore,
    ) -> None:
        self.config = config
        self.controller = controller
        self.downloader = downloader
        self.store = store

    async def run(
        self, request: ScanRequest, progress: Optional[ProgressCallback] = None
    ) -> ScanResult:
        report = progress or (lambda _value: None)
        started = time.perf_counter()
        scan_id = new_scan_id()
        stats = ScanStats()
        result = ScanResult(
            scan_id=scan_id,
            url=request.url,
            scanned_at=dt.datetime.now(dt.timezone.utc).isoformat(),
            stats=stats,
        )

        strategy = select_strategy(urlsplit(request.url).hostname or "", self.config)
        logger.info("Scanning %s (strategy: %s)", request.url, strategy.value)
        try:
            page, used = await self.controller.fetch(request.url, strategy, stats.errors)
        except FetchExhaustedError as exc:
            stats.method = "failed"
            stats.errors.append(str(exc))
            stats.elapsed = time.perf_counter() - started
            report(100)
            return result
        stats.method = used.value
        report(10)

        extraction = extract_candidates(page)
        stats.total_found = extraction.total_found
        stats.unique_found = extraction.unique_found
        stats.by_source = extraction.by_source()
        report(40)

        scan_dir = build_scan_dir(request.url, scan_id)
        downloads = await self.downloader.download_all(
            extraction.candidates,
            referer=page.url,
            scan_dir=scan_dir,
            limit=request.options.concurrency,
        )
        order = {candidate.url: candidate.order for candidate in extraction.candidates}
        result.images = sorted(downloads.records, key=lambda record: order[record.url])
        stats.valid_images = len(result.images)
        stats.rejected = downloads.rejected
        stats.failed = downloads.failed
        report(90)

        stats.elapsed = time.perf_counter() - started
        summary = json.dumps(result.to_dict(), indent=2).encode("utf-8")
        await asyncio.to_thread(self.store.store_file, summary, f"{scan_dir}/{RESULT_FILE}")
        report(100)
        logger.info(
            "Scan %s finished in %.2fs (%d/%d images kept)",
            scan_id,
            stats.elapsed,
            stats.valid_images,
            stats.unique_found,
        )
        return result
