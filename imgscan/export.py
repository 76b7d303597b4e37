"""Bulk export of image URLs into a ZIP archive built entry by entry."""

from __future__ import annotations

import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Iterator, List, Optional, Sequence, Set, Tuple
from urllib.parse import unquote, urlsplit

import requests

from .config import ScanConfig
from .fetchers import pick_user_agent
from .images import infer_image_extension
from .utils import slugify

logger = logging.getLogger("imgscan")


@dataclass
class ExportSummary:
    added: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class _ChunkSink:
    """Write-only file object collecting bytes until they are drained."""

    def __init__(self) -> None:
        self._chunks: List[bytes] = []
        self._written = 0

    def write(self, data: bytes) -> int:
        self._chunks.append(bytes(data))
        self._written += len(data)
        return len(data)

    def tell(self) -> int:
        return self._written

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data


def entry_name(
    url: str, index: int, content_type: Optional[str], data: bytes, used: Set[str]
) -> str:
    """Archive entry name from the URL basename, unique within the archive."""
    basename = unquote(PurePosixPath(urlsplit(url).path).name)
    stem, dot, suffix = basename.rpartition(".")
    if dot and stem and len(basename) >= 3:
        name = f"{slugify(stem, fallback=f'image-{index}')}.{suffix.lower()}"
    else:
        extension = infer_image_extension(content_type, data) or "jpg"
        name = f"image-{index}.{extension}"
    candidate = name
    counter = 1
    while candidate in used:
        counter += 1
        candidate = f"{counter}-{name}"
    used.add(candidate)
    return candidate


def iter_downloads(
    urls: Sequence[str], config: ScanConfig, session: Optional[requests.Session] = None
) -> Iterator[Tuple[int, str, Optional[bytes], Optional[str]]]:
    """Yield ``(index, url, data, content_type)`` for every URL that downloads."""
    session = session or requests.Session()
    for index, url in enumerate(urls, start=1):
        headers = {
            "User-Agent": pick_user_agent(config),
            "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
            "Referer": "{0.scheme}://{0.netloc}/".format(urlsplit(url)),
        }
        try:
            resp = session.get(url, headers=headers, timeout=config.download_timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Skipping %s in export: %s", url, exc)
            yield index, url, None, None
            continue
        yield index, url, resp.content, resp.headers.get("Content-Type")


def stream_archive(
    urls: Sequence[str],
    config: ScanConfig,
    session: Optional[requests.Session] = None,
    summary: Optional[ExportSummary] = None,
) -> Iterator[bytes]:
    """Yield ZIP bytes, appending one entry per successfully downloaded URL."""
    summary = summary if summary is not None else ExportSummary()
    sink = _ChunkSink()
    used: Set[str] = set()
    with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        for index, url, data, content_type in iter_downloads(urls, config, session):
            if data is None:
                summary.skipped.append(url)
                continue
            name = entry_name(url, index, content_type, data, used)
            archive.writestr(name, data)
            summary.added.append(name)
            logger.debug("Added %s to archive as %s", url, name)
            chunk = sink.drain()
            if chunk:
                yield chunk
    tail = sink.drain()
    if tail:
        yield tail


def write_archive(
    urls: Sequence[str],
    destination: Path,
    config: ScanConfig,
    session: Optional[requests.Session] = None,
) -> ExportSummary:
    summary = ExportSummary()
    destination.parent.mkdir(parents=True, exist_ok=True)
    with destination.open("wb") as handle:
        for chunk in stream_archive(urls, config, session=session, summary=summary):
            handle.write(chunk)
    logger.info(
        "Exported %d images to %s (%d skipped)",
        len(summary.added),
        destination,
        len(summary.skipped),
    )
    return summary
