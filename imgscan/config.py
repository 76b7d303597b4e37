"""Configuration objects and constants for the image scanner."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

DEFAULT_STORAGE_DIR = Path("temp")

DEFAULT_RENDER_DOMAINS: Tuple[str, ...] = (
    "shopify.com",
    "myshopify.com",
    "squarespace.com",
    "wix.com",
)

USER_AGENTS: Tuple[str, ...] = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.3.1 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:123.0) Gecko/20100101 Firefox/123.0",
)

SEARCH_REFERER = "https://www.google.com/"


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    return int(raw) if raw else default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    return float(raw) if raw else default


@dataclass(frozen=True)
class ScanConfig:
    """Top-level settings shared by every scanner component.

    Built once at startup and handed to each component's constructor.
    Durations are in seconds, sizes in bytes.
    """

    storage_dir: Path = DEFAULT_STORAGE_DIR
    file_ttl: float = 3600.0
    cleanup_interval: float = 900.0

    cache_ttl: float = 3600.0
    cache_max_bytes: int = 100 * 1024 * 1024

    min_width: int = 100
    min_height: int = 100
    max_image_bytes: int = 25 * 1024 * 1024

    request_timeout: float = 30.0
    render_timeout: float = 30.0
    download_timeout: float = 15.0
    download_concurrency: int = 5
    download_attempts: int = 4
    download_backoff: float = 1.0
    max_redirects: int = 5
    max_iframes: int = 10

    always_render: bool = False
    render_domains: Tuple[str, ...] = DEFAULT_RENDER_DOMAINS
    viewport: Tuple[int, int] = (1920, 1080)
    scroll_step: int = 100
    scroll_interval_ms: int = 100
    max_scroll_steps: int = 300
    settle_delay: float = 1.0

    static_attempts: int = 3
    render_attempts: int = 2
    retry_delay_min: float = 2.0
    retry_delay_max: float = 5.0

    job_attempts: int = 3
    job_backoff: float = 2.0
    job_workers: int = 2

    user_agents: Tuple[str, ...] = field(default=USER_AGENTS)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ScanConfig":
        """Build a configuration from ``IMGSCAN_*`` environment variables."""
        env = os.environ if env is None else env
        defaults = cls()
        domains = env.get("IMGSCAN_RENDER_DOMAINS")
        return cls(
            storage_dir=Path(env.get("IMGSCAN_STORAGE_DIR", str(defaults.storage_dir))),
            file_ttl=_env_float(env, "IMGSCAN_FILE_TTL", defaults.file_ttl),
            cleanup_interval=_env_float(
                env, "IMGSCAN_CLEANUP_INTERVAL", defaults.cleanup_interval
            ),
            cache_ttl=_env_float(env, "IMGSCAN_CACHE_TTL", defaults.cache_ttl),
            cache_max_bytes=_env_int(
                env, "IMGSCAN_CACHE_MAX_BYTES", defaults.cache_max_bytes
            ),
            min_width=_env_int(env, "IMGSCAN_MIN_WIDTH", defaults.min_width),
            min_height=_env_int(env, "IMGSCAN_MIN_HEIGHT", defaults.min_height),
            request_timeout=_env_float(
                env, "IMGSCAN_REQUEST_TIMEOUT", defaults.request_timeout
            ),
            render_timeout=_env_float(
                env, "IMGSCAN_RENDER_TIMEOUT", defaults.render_timeout
            ),
            download_timeout=_env_float(
                env, "IMGSCAN_DOWNLOAD_TIMEOUT", defaults.download_timeout
            ),
            download_concurrency=_env_int(
                env, "IMGSCAN_DOWNLOAD_CONCURRENCY", defaults.download_concurrency
            ),
            download_attempts=_env_int(
                env, "IMGSCAN_DOWNLOAD_ATTEMPTS", defaults.download_attempts
            ),
            download_backoff=_env_float(
                env, "IMGSCAN_DOWNLOAD_BACKOFF", defaults.download_backoff
            ),
            always_render=_env_bool(env, "IMGSCAN_ALWAYS_RENDER", defaults.always_render),
            render_domains=(
                tuple(d.strip() for d in domains.split(",") if d.strip())
                if domains
                else defaults.render_domains
            ),
            static_attempts=_env_int(
                env, "IMGSCAN_STATIC_ATTEMPTS", defaults.static_attempts
            ),
            render_attempts=_env_int(
                env, "IMGSCAN_RENDER_ATTEMPTS", defaults.render_attempts
            ),
            retry_delay_min=_env_float(
                env, "IMGSCAN_RETRY_DELAY_MIN", defaults.retry_delay_min
            ),
            retry_delay_max=_env_float(
                env, "IMGSCAN_RETRY_DELAY_MAX", defaults.retry_delay_max
            ),
            job_attempts=_env_int(env, "IMGSCAN_JOB_ATTEMPTS", defaults.job_attempts),
            job_backoff=_env_float(env, "IMGSCAN_JOB_BACKOFF", defaults.job_backoff),
            job_workers=_env_int(env, "IMGSCAN_JOB_WORKERS", defaults.job_workers),
        )
