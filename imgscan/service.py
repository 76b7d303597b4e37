"""Service facade wiring every component behind the external operations."""

from __future__ import annotations

import logging
import os
import resource
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from .browser import BrowserManager, RenderingFetcher
from .cache import ResultCache, fingerprint
from .config import ScanConfig
from .crawler import ScanPipeline
from .errors import ValidationError
from .export import ExportSummary, write_archive
from .fetchers import PageFetcher, StaticFetcher
from .images import ImageDownloader
from .jobs import JobQueue
from .models import PRIORITIES, FetchStrategy, ScanOptions, ScanRequest, ScanResult
from .retry import FetchController
from .storage import DurableStore, PurgeScheduler
from .urls import validate_target

logger = logging.getLogger("imgscan")

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "bmp": "image/bmp",
    "tiff": "image/tiff",
    "json": "application/json",
}

ASSET_CACHE_CONTROL = "public, max-age=86400"


@dataclass
class SubmitResponse:
    """Either a cached result or the id of a freshly queued job."""

    status: str
    job_id: Optional[str] = None
    result: Optional[ScanResult] = None
    source: str = "queue"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "job_id": self.job_id,
            "source": self.source,
            "data": self.result.to_dict() if self.result else None,
        }


@dataclass
class StoredAsset:
    data: bytes
    content_type: str
    headers: Dict[str, str] = field(default_factory=dict)


def build_options(concurrency: Optional[int] = None, priority: Optional[str] = None) -> ScanOptions:
    """Validate caller options and fill in defaults."""
    options = ScanOptions()
    if concurrency is not None:
        if concurrency < 1 or concurrency > 50:
            raise ValidationError("concurrency must be between 1 and 50", field="concurrency")
        options = ScanOptions(concurrency=concurrency, priority=options.priority)
    if priority is not None:
        if priority not in PRIORITIES:
            raise ValidationError(
                f"priority must be one of {', '.join(PRIORITIES)}", field="priority"
            )
        options = ScanOptions(concurrency=options.concurrency, priority=priority)
    return options


class ScanService:
    """Owns the cache, store, pipeline and queue for one process."""

    def __init__(
        self,
        config: ScanConfig,
        fetchers: Optional[Dict[FetchStrategy, PageFetcher]] = None,
        downloader: Optional[ImageDownloader] = None,
        controller: Optional[FetchController] = None,
    ) -> None:
        self.config = config
        self.store = DurableStore(config)
        self.cache = ResultCache(config)
        self.browsers = BrowserManager(config)
        if fetchers is None:
            fetchers = {
                FetchStrategy.STATIC: StaticFetcher(config),
                FetchStrategy.RENDER: RenderingFetcher(config, self.browsers),
            }
        self.controller = controller or FetchController(config, fetchers)
        self.downloader = downloader or ImageDownloader(config, self.store)
        self.pipeline = ScanPipeline(config, self.controller, self.downloader, self.store)
        self.queue = JobQueue(config, self._execute)
        self.purger = PurgeScheduler(self.store, config.cleanup_interval)
        self._started_at = time.monotonic()

    async def start(self, purge: bool = True) -> None:
        self.queue.start()
        if purge:
            self.purger.start()

    async def close(self) -> None:
        await self.queue.stop()
        await self.purger.stop()
        await self.browsers.close()

    async def _execute(self, request: ScanRequest, progress) -> ScanResult:
        result = await self.pipeline.run(request, progress)
        if result.stats.method != "failed":
            self.cache.set(fingerprint(request.url, request.options), result)
        return result

    async def submit(self, url: str, options: Optional[ScanOptions] = None) -> SubmitResponse:
        target = validate_target(url)
        options = options or ScanOptions()
        cached = self.cache.get(fingerprint(target, options))
        if cached is not None:
            logger.info("Serving %s from cache", target)
            return SubmitResponse(status="success", result=cached, source="cache")
        job = await self.queue.add(ScanRequest(url=target, options=options))
        return SubmitResponse(status="queued", job_id=job.id)

    def poll(self, job_id: str) -> Dict[str, Any]:
        return self.queue.get_status(job_id)

    def retrieve_asset(self, scan_id: str, file_name: str) -> StoredAsset:
        relative = self.store.find(scan_id, file_name)
        data = self.store.get_file(relative)
        extension = Path(file_name).suffix.lower().lstrip(".")
        return StoredAsset(
            data=data,
            content_type=MIME_TYPES.get(extension, "application/octet-stream"),
            headers={"Cache-Control": ASSET_CACHE_CONTROL},
        )

    def health(self) -> Dict[str, Any]:
        usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        # ru_maxrss is kilobytes on Linux, bytes on macOS
        rss_bytes = usage if sys.platform == "darwin" else usage * 1024
        report: Dict[str, Any] = {
            "status": "ok",
            "uptime": round(time.monotonic() - self._started_at, 3),
            "memory": {"max_rss_mb": round(rss_bytes / (1024 * 1024), 2)},
            "cache": self.cache.stats(),
        }
        base = self.store.base_dir
        if base.is_dir() and os.access(base, os.R_OK | os.W_OK):
            report["storage"] = {
                "status": "ok",
                "path": str(base),
                "files": self.store.count_files(),
            }
        else:
            report["status"] = "degraded"
            report["storage"] = {"status": "error", "path": str(base)}
        return report

    def export(self, urls: Sequence[str], destination: Path) -> ExportSummary:
        if not urls:
            raise ValidationError("No image URLs provided", field="urls")
        return write_archive(list(urls), destination, self.config)
