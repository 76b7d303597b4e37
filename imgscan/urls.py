"""URL canonicalization for scan targets and discovered image references."""

from __future__ import annotations

import re
from typing import List, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from .errors import ValidationError

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".bmp")

# Query parameters that change the rendered pixels; everything else is
# treated as cache-busting noise.
ALLOWED_QUERY_PARAMS = frozenset({"width", "height", "quality", "format", "version", "id"})

REJECTED_SCHEMES = ("data:", "javascript:", "about:")

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def validate_target(url: str) -> str:
    """Return a canonical absolute http(s) target URL or raise ValidationError."""
    if not url or not url.strip():
        raise ValidationError("URL not provided", field="url")
    candidate = url.strip()
    if "://" not in candidate:
        candidate = "https://" + candidate
    try:
        parts = urlsplit(candidate)
        hostname = parts.hostname
    except ValueError as exc:
        raise ValidationError(f"Invalid URL: {exc}", field="url") from exc
    if parts.scheme not in ("http", "https") or not hostname:
        raise ValidationError(f"Invalid URL: {url}", field="url")
    path = parts.path or "/"
    return urlunsplit((parts.scheme, parts.netloc.lower(), path, parts.query, ""))


def _clean_query(query: str) -> str:
    pairs = [
        (key, value)
        for key, value in parse_qsl(query, keep_blank_values=True)
        if key.lower() in ALLOWED_QUERY_PARAMS
    ]
    return urlencode(pairs)


def normalize_url(raw: Optional[str], page_url: str) -> Optional[str]:
    """Resolve ``raw`` against ``page_url`` into a canonical image URL.

    Returns ``None`` for anything that is not an absolute http(s) URL whose
    path ends in a known image extension. Rejection is silent.
    """
    if not raw:
        return None
    try:
        value = _CONTROL_CHARS.sub("", raw.strip())
        if not value:
            return None
        if value.lower().startswith(REJECTED_SCHEMES):
            return None
        value = value.replace(" ", "%20")

        page = urlsplit(page_url)
        if value.startswith("//"):
            absolute = f"{page.scheme}:{value}"
        elif value.startswith("/"):
            absolute = urljoin(f"{page.scheme}://{page.netloc}", value)
        else:
            absolute = urljoin(page_url, value)

        parts = urlsplit(absolute)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            return None
        if not parts.path.lower().endswith(IMAGE_EXTENSIONS):
            return None
        return urlunsplit(
            (parts.scheme, parts.netloc.lower(), parts.path, _clean_query(parts.query), "")
        )
    except ValueError:
        return None


def parse_srcset(srcset: Optional[str]) -> List[str]:
    """Return the URL part of each comma-separated ``srcset`` candidate."""
    if not srcset:
        return []
    urls: List[str] = []
    for entry in srcset.split(","):
        parts = entry.strip().split()
        if parts:
            urls.append(parts[0])
    return urls
