"""Utility helpers for string normalization, identifiers and batching."""

from __future__ import annotations

import re
import time
import uuid
from typing import Iterator, List, Sequence, TypeVar

SLUG_PATTERN = re.compile(r"[^a-z0-9]+")

T = TypeVar("T")


def slugify(value: str, fallback: str = "site") -> str:
    """Generate a filesystem-friendly slug using ASCII characters only."""
    normalized = value.encode("ascii", "ignore").decode("ascii")
    normalized = normalized.lower()
    normalized = SLUG_PATTERN.sub("-", normalized).strip("-")
    return normalized or fallback


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of ``items`` holding at most ``size`` elements."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


def new_scan_id() -> str:
    return f"scan_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def new_image_id(index: int) -> str:
    return f"img_{index:03d}_{uuid.uuid4().hex[:6]}"
