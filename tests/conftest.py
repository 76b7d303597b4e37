"""Shared fixtures for the scanner test-suite."""

import asyncio
import io
import threading

import pytest
from PIL import Image

from imgscan.config import ScanConfig
from imgscan.images import ImageDownloader
from imgscan.models import FetchStrategy, PageContent
from imgscan.storage import DurableStore


def png_bytes(width: int, height: int, color=(200, 30, 30)) -> bytes:
    """Encode a solid PNG of the given size in memory."""
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeFetcher:
    """Page fetcher returning scripted outcomes, one per call."""

    def __init__(self, strategy: FetchStrategy, outcomes):
        self.strategy = strategy
        self.outcomes = list(outcomes)
        self.calls = []

    async def fetch(self, url: str) -> PageContent:
        self.calls.append(url)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, str):
            return PageContent(url=url, html=outcome, strategy=self.strategy)
        return outcome


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def config(tmp_path):
    return ScanConfig(
        storage_dir=tmp_path / "storage",
        retry_delay_min=0.0,
        retry_delay_max=0.0,
        settle_delay=0.0,
        job_backoff=0.0,
        download_backoff=0.0,
        job_workers=1,
    )


class NullSession:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeDownloader(ImageDownloader):
    """Downloader serving in-memory payloads and tracking concurrency.

    A list payload is consumed one outcome per request, the last one sticking.
    """

    def __init__(self, config, store, payloads, sleep=no_sleep):
        super().__init__(config, store, sleep=sleep)
        self.payloads = payloads
        self.in_flight = 0
        self.peak = 0
        self.events = []

    def open_session(self):
        return NullSession()

    async def fetch_image(self, session, url, referer):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        self.events.append(("start", url))
        try:
            await asyncio.sleep(0)
            outcome = self.payloads[url]
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome, "image/png"
        finally:
            self.in_flight -= 1
            self.events.append(("end", url))


class ThreadRecordingStore(DurableStore):
    """Store remembering which thread performed each write."""

    def __init__(self, config):
        super().__init__(config)
        self.writer_threads = []

    def store_file(self, data, relative_path):
        self.writer_threads.append(threading.get_ident())
        return super().store_file(data, relative_path)


@pytest.fixture
def store(config):
    return DurableStore(config)
