"""
Tests for the scan pipeline.
"""

import json
import threading

import pytest

from conftest import FakeDownloader, FakeFetcher, ThreadRecordingStore, no_sleep, png_bytes
from imgscan.crawler import RESULT_FILE, ScanPipeline, build_scan_dir
from imgscan.errors import FetchTimeoutError
from imgscan.models import FetchStrategy, ScanOptions, ScanRequest, ScanResult
from imgscan.retry import FetchController

PAGE_HTML = """
<html><body>
  <img src="/small.png">
  <img src="/large.png">
  <img src="/large.png?utm_campaign=x">
</body></html>
"""

PAYLOADS = {
    "https://example.com/small.png": png_bytes(50, 50),
    "https://example.com/large.png": png_bytes(300, 200),
}


def make_pipeline(config, store, static, render, payloads=PAYLOADS):
    controller = FetchController(
        config, {FetchStrategy.STATIC: static, FetchStrategy.RENDER: render}, sleep=no_sleep
    )
    downloader = FakeDownloader(config, store, payloads)
    return ScanPipeline(config, controller, downloader, store), downloader


def test_build_scan_dir():
    assert build_scan_dir("https://Shop.Example.com/a", "scan_1_ab") == "shop-example-com/scan_1_ab"


class TestScanPipeline:
    """Tests for ScanPipeline.run."""

    @pytest.mark.asyncio
    async def test_static_scan(self, config, store):
        static = FakeFetcher(FetchStrategy.STATIC, [PAGE_HTML])
        render = FakeFetcher(FetchStrategy.RENDER, [PAGE_HTML])
        pipeline, _downloader = make_pipeline(config, store, static, render)
        progress = []

        result = await pipeline.run(
            ScanRequest(url="https://example.com/", options=ScanOptions(concurrency=2)),
            progress.append,
        )

        stats = result.stats
        assert stats.method == "static"
        assert stats.total_found == 3
        assert stats.unique_found == 2
        assert stats.valid_images == 1
        assert stats.rejected == 1
        assert stats.failed == 0
        assert stats.errors == []
        assert stats.by_source == {"dom-image": 2}
        assert [image.url for image in result.images] == ["https://example.com/large.png"]
        assert (result.images[0].width, result.images[0].height) == (300, 200)
        assert progress == [10, 40, 90, 100]
        assert render.calls == []

    @pytest.mark.asyncio
    async def test_result_file_is_persisted(self, config, store):
        static = FakeFetcher(FetchStrategy.STATIC, [PAGE_HTML])
        pipeline, _ = make_pipeline(config, store, static, static)
        result = await pipeline.run(ScanRequest(url="https://example.com/"))

        stored = json.loads(store.get_file(f"example-com/{result.scan_id}/{RESULT_FILE}"))
        assert ScanResult.from_dict(stored).images[0].url == "https://example.com/large.png"
        assert store.find(result.scan_id, result.images[0].filename).startswith("example-com/")

    @pytest.mark.asyncio
    async def test_result_file_written_off_the_event_loop(self, config):
        store = ThreadRecordingStore(config)
        static = FakeFetcher(FetchStrategy.STATIC, [PAGE_HTML])
        pipeline, _ = make_pipeline(config, store, static, static)
        await pipeline.run(ScanRequest(url="https://example.com/"))

        # one image plus result.json
        assert len(store.writer_threads) == 2
        assert threading.get_ident() not in store.writer_threads

    @pytest.mark.asyncio
    async def test_fallback_records_failed_attempts(self, config, store):
        static = FakeFetcher(FetchStrategy.STATIC, [FetchTimeoutError("slow")])
        render = FakeFetcher(FetchStrategy.RENDER, [PAGE_HTML])
        pipeline, _ = make_pipeline(config, store, static, render)

        result = await pipeline.run(ScanRequest(url="https://example.com/"))

        assert result.stats.method == "rendering"
        assert len(result.errors) == 3
        assert result.stats.valid_images == 1
        assert len(render.calls) == 1

    @pytest.mark.asyncio
    async def test_exhausted_fetch_returns_structured_failure(self, config, store):
        static = FakeFetcher(FetchStrategy.STATIC, [FetchTimeoutError("slow")])
        render = FakeFetcher(FetchStrategy.RENDER, [FetchTimeoutError("slow")])
        pipeline, downloader = make_pipeline(config, store, static, render)
        progress = []

        result = await pipeline.run(ScanRequest(url="https://example.com/"), progress.append)

        assert result.stats.method == "failed"
        assert result.images == []
        assert len(result.errors) == 6
        assert "all fetch strategies failed" in result.errors[-1]
        assert downloader.events == []
        assert progress == [100]

    @pytest.mark.asyncio
    async def test_render_domain_starts_with_render(self, config, store):
        static = FakeFetcher(FetchStrategy.STATIC, [PAGE_HTML])
        render = FakeFetcher(FetchStrategy.RENDER, [PAGE_HTML])
        pipeline, _ = make_pipeline(config, store, static, render, payloads={
            "https://demo.myshopify.com/small.png": png_bytes(50, 50),
            "https://demo.myshopify.com/large.png": png_bytes(300, 200),
        })

        result = await pipeline.run(ScanRequest(url="https://demo.myshopify.com/"))

        assert result.stats.method == "rendering"
        assert static.calls == []

    @pytest.mark.asyncio
    async def test_concurrency_option_limits_downloads(self, config, store):
        html = "".join(f'<img src="/{i}.png">' for i in range(6))
        payloads = {f"https://example.com/{i}.png": png_bytes(200, 200) for i in range(6)}
        static = FakeFetcher(FetchStrategy.STATIC, [html])
        pipeline, downloader = make_pipeline(config, store, static, static, payloads)

        result = await pipeline.run(
            ScanRequest(url="https://example.com/", options=ScanOptions(concurrency=2))
        )

        assert downloader.peak == 2
        assert [image.url for image in result.images] == list(payloads)
