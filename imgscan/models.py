"""Data models used throughout the scan pipeline."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

SOURCE_DOM_IMAGE = "dom-image"
SOURCE_LAZY_ATTRIBUTE = "lazy-attribute"
SOURCE_CSS_BACKGROUND = "css-background"
SOURCE_METADATA = "metadata"
SOURCE_IFRAME = "iframe"

SIGNAL_SOURCES = (
    SOURCE_DOM_IMAGE,
    SOURCE_LAZY_ATTRIBUTE,
    SOURCE_CSS_BACKGROUND,
    SOURCE_METADATA,
    SOURCE_IFRAME,
)

PRIORITIES = {"high": 0, "normal": 1, "low": 2}


class FetchStrategy(str, enum.Enum):
    """How a target page is loaded."""

    STATIC = "static"
    RENDER = "rendering"

    @property
    def alternate(self) -> "FetchStrategy":
        return FetchStrategy.RENDER if self is FetchStrategy.STATIC else FetchStrategy.STATIC


class JobState(str, enum.Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ScanOptions:
    """Caller-supplied knobs for a single scan."""

    concurrency: int = 5
    priority: str = "normal"

    def to_dict(self) -> Dict[str, Any]:
        return {"concurrency": self.concurrency, "priority": self.priority}


@dataclass(frozen=True)
class ScanRequest:
    """A validated scan submission; immutable once queued."""

    url: str
    options: ScanOptions = field(default_factory=ScanOptions)


@dataclass
class FrameDocument:
    """Serialized DOM of a child iframe document."""

    url: str
    html: str


@dataclass
class PageContent:
    """Everything a fetcher hands over to the extractor."""

    url: str
    html: str
    strategy: FetchStrategy
    styles: List[str] = field(default_factory=list)
    frames: List[FrameDocument] = field(default_factory=list)


@dataclass(frozen=True)
class AssetCandidate:
    """Discovered, not yet validated image URL with its signal attribution."""

    url: str
    source: str
    order: int


@dataclass
class AssetRecord:
    """Downloaded, probed and stored image."""

    id: str
    url: str
    source: str
    size: int
    width: int
    height: int
    format: str
    path: str
    filename: str


@dataclass
class ScanStats:
    """Aggregate counters describing one scan."""

    method: str = ""
    total_found: int = 0
    unique_found: int = 0
    valid_images: int = 0
    rejected: int = 0
    failed: int = 0
    elapsed: float = 0.0
    by_source: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)


@dataclass
class ScanResult:
    """Outcome of a scan, successful or not."""

    scan_id: str
    url: str
    scanned_at: str
    images: List[AssetRecord] = field(default_factory=list)
    stats: ScanStats = field(default_factory=ScanStats)

    @property
    def errors(self) -> List[str]:
        return self.stats.errors

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanResult":
        return cls(
            scan_id=data["scan_id"],
            url=data["url"],
            scanned_at=data["scanned_at"],
            images=[AssetRecord(**image) for image in data.get("images", [])],
            stats=ScanStats(**data.get("stats", {})),
        )


@dataclass
class Job:
    """A queued scan and everything known about its execution."""

    id: str
    request: ScanRequest
    state: JobState = JobState.QUEUED
    attempts: int = 0
    progress: int = 0
    result: Optional[ScanResult] = None
    error: Optional[str] = None
    created_at: float = 0.0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def terminal(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    def status(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.state.value,
            "attempts": self.attempts,
            "progress": self.progress,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
