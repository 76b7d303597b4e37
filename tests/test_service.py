"""
Tests for the service facade.
"""

import pytest

from conftest import FakeDownloader, FakeFetcher, png_bytes
from imgscan.errors import FetchTimeoutError, NotFoundError, ValidationError
from imgscan.models import FetchStrategy, ScanOptions
from imgscan.service import ASSET_CACHE_CONTROL, ScanService, build_options
from imgscan.storage import DurableStore

PAGE_HTML = '<img src="/hero.png"><img src="/tiny.png">'
PAYLOADS = {
    "https://example.com/hero.png": png_bytes(400, 300),
    "https://example.com/tiny.png": png_bytes(20, 20),
}


def make_service(config, static_outcomes=(PAGE_HTML,), render_outcomes=(PAGE_HTML,)):
    fetchers = {
        FetchStrategy.STATIC: FakeFetcher(FetchStrategy.STATIC, list(static_outcomes)),
        FetchStrategy.RENDER: FakeFetcher(FetchStrategy.RENDER, list(render_outcomes)),
    }
    downloader = FakeDownloader(config, DurableStore(config), PAYLOADS)
    return ScanService(config, fetchers=fetchers, downloader=downloader), fetchers, downloader


async def run_scan(service, url="https://example.com/", options=None):
    response = await service.submit(url, options)
    assert response.status == "queued"
    job = await service.queue.wait(response.job_id, timeout=5)
    return response.job_id, job


class TestBuildOptions:
    """Tests for build_options."""

    def test_defaults(self):
        assert build_options() == ScanOptions(concurrency=5, priority="normal")

    def test_overrides(self):
        assert build_options(10, "high") == ScanOptions(concurrency=10, priority="high")

    @pytest.mark.parametrize("concurrency,priority", [(0, None), (51, None), (None, "urgent")])
    def test_invalid(self, concurrency, priority):
        with pytest.raises(ValidationError):
            build_options(concurrency, priority)


class TestScanService:
    """End-to-end tests through ScanService."""

    @pytest.mark.asyncio
    async def test_second_submit_is_served_from_cache(self, config):
        service, fetchers, downloader = make_service(config)
        await service.start(purge=False)
        try:
            job_id, job = await run_scan(service)
            status = service.poll(job_id)
            assert status["status"] == "completed"
            assert status["result"]["stats"]["valid_images"] == 1
            downloads = len(downloader.events)

            cached = await service.submit("https://example.com/")
        finally:
            await service.close()

        assert cached.status == "success"
        assert cached.source == "cache"
        assert cached.result.scan_id == job.result.scan_id
        assert cached.to_dict()["data"]["scan_id"] == job.result.scan_id
        assert len(downloader.events) == downloads
        assert len(fetchers[FetchStrategy.STATIC].calls) == 1
        assert service.cache.stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_equivalent_urls_share_cache_entry(self, config):
        service, fetchers, _ = make_service(config)
        await service.start(purge=False)
        try:
            await run_scan(service, "https://EXAMPLE.com/#top")
            cached = await service.submit("example.com")
        finally:
            await service.close()
        assert cached.source == "cache"
        assert len(fetchers[FetchStrategy.STATIC].calls) == 1

    @pytest.mark.asyncio
    async def test_different_options_miss_cache(self, config):
        service, _, _ = make_service(config)
        await service.start(purge=False)
        try:
            await run_scan(service)
            response = await service.submit("https://example.com/", ScanOptions(concurrency=1))
        finally:
            await service.close()
        assert response.status == "queued"

    @pytest.mark.asyncio
    async def test_failed_scan_is_not_cached(self, config):
        service, _, _ = make_service(
            config,
            static_outcomes=[FetchTimeoutError("slow")],
            render_outcomes=[FetchTimeoutError("slow")],
        )
        await service.start(purge=False)
        try:
            _job_id, job = await run_scan(service)
            again = await service.submit("https://example.com/")
        finally:
            await service.close()
        assert job.result.stats.method == "failed"
        assert again.status == "queued"

    @pytest.mark.asyncio
    async def test_invalid_url_is_rejected(self, config):
        service, _, _ = make_service(config)
        with pytest.raises(ValidationError):
            await service.submit("ftp://example.com/")

    @pytest.mark.asyncio
    async def test_retrieve_asset(self, config):
        service, _, _ = make_service(config)
        await service.start(purge=False)
        try:
            _job_id, job = await run_scan(service)
        finally:
            await service.close()

        image = job.result.images[0]
        asset = service.retrieve_asset(job.result.scan_id, image.filename)
        assert asset.data == PAYLOADS["https://example.com/hero.png"]
        assert asset.content_type == "image/png"
        assert asset.headers == {"Cache-Control": ASSET_CACHE_CONTROL}

        report = service.retrieve_asset(job.result.scan_id, "result.json")
        assert report.content_type == "application/json"

    @pytest.mark.asyncio
    async def test_purged_asset_is_not_found(self, config):
        """A cached result may outlive its files."""
        service, _, _ = make_service(config)
        await service.start(purge=False)
        try:
            _job_id, job = await run_scan(service)
            service.store.sweep(force=True)
            cached = await service.submit("https://example.com/")
        finally:
            await service.close()

        assert cached.source == "cache"
        with pytest.raises(NotFoundError):
            service.retrieve_asset(job.result.scan_id, job.result.images[0].filename)

    def test_unknown_job(self, config):
        service, _, _ = make_service(config)
        assert service.poll("nope")["status"] == "not_found"

    def test_health(self, config):
        service, _, _ = make_service(config)
        service.store.store_file(b"x", "site/scan_1/a.png")
        report = service.health()
        assert report["status"] == "ok"
        assert report["storage"]["status"] == "ok"
        assert report["storage"]["files"] == 1
        assert report["uptime"] >= 0
        assert report["memory"]["max_rss_mb"] > 0

    def test_export_requires_urls(self, config, tmp_path):
        service, _, _ = make_service(config)
        with pytest.raises(ValidationError):
            service.export([], tmp_path / "out.zip")
