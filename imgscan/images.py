"""Image downloading, probing and validation."""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

import aiohttp
from filetype import guess
from PIL import Image, UnidentifiedImageError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import ScanConfig
from .errors import ExternalServiceError, FetchTimeoutError
from .fetchers import pick_user_agent
from .models import AssetCandidate, AssetRecord
from .storage import DurableStore
from .utils import chunked, new_image_id

logger = logging.getLogger("imgscan")

IMAGE_ACCEPT = "image/avif,image/webp,image/apng,image/*,*/*;q=0.8"


def detect_image_format(data: bytes) -> Optional[str]:
    """Detect image type using filetype; returns lowercase extension."""
    kind = guess(data)
    if kind and kind.mime.startswith("image/"):
        ext = kind.extension.lower()
        if ext == "jpeg":
            return "jpg"
        return ext
    return None


def infer_image_extension(content_type: Optional[str], data: bytes) -> Optional[str]:
    """Guess an image file extension from HTTP metadata or file signature."""
    detected = detect_image_format(data)
    if detected:
        return detected
    if not content_type:
        return None
    parts = content_type.split(";")[0].split("/")
    if len(parts) == 2 and parts[0] == "image":
        ext = parts[1].strip().lower()
        if ext == "jpeg":
            ext = "jpg"
        return ext
    return None


def probe_image(data: bytes) -> Optional[Tuple[int, int, str]]:
    """Return ``(width, height, format)`` or ``None`` for unreadable payloads."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
            fmt = (image.format or "").lower()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError):
        return None
    if not width or not height:
        return None
    if fmt == "jpeg":
        fmt = "jpg"
    return width, height, fmt or (detect_image_format(data) or "bin")


@dataclass
class DownloadReport:
    """Successful records plus counters for everything that was dropped."""

    records: List[AssetRecord] = field(default_factory=list)
    rejected: int = 0
    failed: int = 0


class ImageDownloader:
    """Downloads candidates in ordered chunks of at most ``limit`` requests.

    All downloads of one chunk run concurrently; the next chunk starts only
    once every download of the current chunk has settled.
    """

    def __init__(
        self,
        config: ScanConfig,
        store: DurableStore,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self._sleep = sleep

    def open_session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.download_timeout)
        )

    async def fetch_image(
        self, session: aiohttp.ClientSession, url: str, referer: str
    ) -> Tuple[bytes, Optional[str]]:
        headers = {
            "User-Agent": pick_user_agent(self.config),
            "Referer": referer,
            "Accept": IMAGE_ACCEPT,
            "Accept-Language": "en-US,en;q=0.9",
            "Sec-Fetch-Dest": "image",
            "Sec-Fetch-Mode": "no-cors",
            "Sec-Fetch-Site": "cross-site",
        }
        try:
            async with session.get(
                url, headers=headers, max_redirects=self.config.max_redirects
            ) as response:
                if response.status >= 400:
                    raise ExternalServiceError(
                        f"{url} answered HTTP {response.status}", service="download"
                    )
                data = await response.read()
                return data, response.headers.get("Content-Type")
        except asyncio.TimeoutError as exc:
            raise FetchTimeoutError(f"download of {url} timed out") from exc
        except aiohttp.ClientError as exc:
            raise ExternalServiceError(f"{url}: {exc}", service="download") from exc

    async def _fetch_with_retry(
        self, session: aiohttp.ClientSession, url: str, referer: str
    ) -> Tuple[bytes, Optional[str]]:
        """Fetch one image, retrying timeouts and upstream errors with backoff."""

        def log_retry(state: RetryCallState) -> None:
            logger.debug(
                "Retrying %s (attempt %d failed: %s)",
                url,
                state.attempt_number,
                state.outcome.exception() if state.outcome else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.download_attempts)),
            wait=wait_exponential(multiplier=self.config.download_backoff),
            retry=retry_if_exception_type((FetchTimeoutError, ExternalServiceError)),
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        return await retrying(self.fetch_image, session, url, referer)

    async def download_all(
        self,
        candidates: List[AssetCandidate],
        referer: str,
        scan_dir: str,
        limit: Optional[int] = None,
    ) -> DownloadReport:
        report = DownloadReport()
        if not candidates:
            return report
        limit = max(1, limit or self.config.download_concurrency)
        async with self.open_session() as session:
            for chunk in chunked(candidates, limit):
                outcomes = await asyncio.gather(
                    *(
                        self._download_one(session, candidate, referer, scan_dir)
                        for candidate in chunk
                    ),
                    return_exceptions=True,
                )
                for candidate, outcome in zip(chunk, outcomes):
                    if isinstance(outcome, AssetRecord):
                        report.records.append(outcome)
                    elif outcome is None:
                        report.rejected += 1
                    else:
                        report.failed += 1
                        logger.debug("Download failed for %s: %s", candidate.url, outcome)
        logger.info(
            "Downloaded %d/%d images (%d rejected, %d failed)",
            len(report.records),
            len(candidates),
            report.rejected,
            report.failed,
        )
        return report

    async def _download_one(
        self,
        session: aiohttp.ClientSession,
        candidate: AssetCandidate,
        referer: str,
        scan_dir: str,
    ) -> Optional[AssetRecord]:
        data, content_type = await self._fetch_with_retry(session, candidate.url, referer)
        if len(data) > self.config.max_image_bytes:
            logger.debug("Skipping %s: larger than %d bytes", candidate.url, len(data))
            return None
        probed = probe_image(data)
        if probed is None:
            logger.debug(
                "Skipping %s: unreadable image (Content-Type=%s)", candidate.url, content_type
            )
            return None
        width, height, fmt = probed
        if width < self.config.min_width or height < self.config.min_height:
            logger.debug("Skipping %s: too small (%dx%d)", candidate.url, width, height)
            return None

        extension = fmt if fmt != "bin" else (infer_image_extension(content_type, data) or "bin")
        image_id = new_image_id(candidate.order)
        filename = f"{image_id}.{extension}"
        stored = await asyncio.to_thread(self.store.store_file, data, f"{scan_dir}/{filename}")
        return AssetRecord(
            id=image_id,
            url=candidate.url,
            source=candidate.source,
            size=len(data),
            width=width,
            height=height,
            format=fmt,
            path=stored.path,
            filename=filename,
        )
