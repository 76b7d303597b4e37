"""MCP server exposing the image scanner as tools."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP

from .config import ScanConfig
from .service import ScanService, build_options

logger = logging.getLogger("imgscan.mcp")
logger.setLevel(logging.ERROR)

mcp = FastMCP(name="imgscan")

_service: Optional[ScanService] = None


async def _get_service() -> ScanService:
    global _service  # pylint: disable=global-statement
    if _service is None:
        _service = ScanService(ScanConfig.from_env())
        await _service.start()
    return _service


@mcp.tool()
async def scan(
    url: str,
    concurrency: int = 5,
    priority: str = "normal",
    wait_seconds: float = 120.0,
) -> Dict[str, Any]:
    """Scan a web page and return the validated images it references."""

    service = await _get_service()
    response = await service.submit(url, build_options(concurrency, priority))
    if response.result is not None:
        return response.to_dict()
    try:
        job = await service.queue.wait(response.job_id, wait_seconds)
    except asyncio.TimeoutError:
        return service.poll(response.job_id)
    return job.status()


@mcp.tool()
async def job_status(job_id: str) -> Dict[str, Any]:
    """Return the state, progress and result of a previously submitted scan."""

    service = await _get_service()
    return service.poll(job_id)


@mcp.tool()
async def health() -> Dict[str, Any]:
    """Report uptime, memory usage and storage reachability."""

    service = await _get_service()
    return service.health()


def main() -> None:
    """Entry point for running the MCP server."""
    logging.basicConfig(level=logging.ERROR)
    mcp.run()


if __name__ == "__main__":
    main()
