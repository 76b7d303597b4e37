"""Durable asset storage with an expiry log and periodic purge."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional

from .config import ScanConfig
from .errors import NotFoundError, ValidationError

logger = logging.getLogger("imgscan")

REGISTRY_NAME = "registry.jsonl"
SENTINEL_NAME = ".gitkeep"


@dataclass
class StoredFile:
    path: str
    created_at: float
    expires_at: float


@dataclass
class SweepReport:
    removed: List[str] = field(default_factory=list)
    pruned_dirs: int = 0
    skipped: bool = False


class DurableStore:
    """Files under one base directory, each registered with an expiry time.

    The registry is an append-only JSON-lines log shared by the whole base
    directory. The latest entry for a path wins; sweeps rewrite the log
    with only the surviving entries.
    """

    def __init__(self, config: ScanConfig, clock: Callable[[], float] = time.time) -> None:
        self.config = config
        self.base_dir = Path(config.storage_dir).resolve()
        self.ttl = config.file_ttl
        self._clock = clock
        self._log_lock = threading.Lock()
        self._sweep_lock = threading.Lock()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        (self.base_dir / SENTINEL_NAME).touch(exist_ok=True)

    @property
    def registry_path(self) -> Path:
        return self.base_dir / REGISTRY_NAME

    def resolve(self, relative_path: str) -> Path:
        """Map a relative path into the base directory, refusing escapes."""
        if not relative_path or PurePosixPath(relative_path).is_absolute():
            raise ValidationError(f"Invalid storage path: {relative_path!r}", field="path")
        candidate = (self.base_dir / relative_path).resolve()
        if candidate != self.base_dir and self.base_dir not in candidate.parents:
            raise ValidationError(f"Path escapes storage: {relative_path!r}", field="path")
        return candidate

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.base_dir).as_posix()

    def store_file(self, data: bytes, relative_path: str) -> StoredFile:
        destination = self.resolve(relative_path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(data)
        now = self._clock()
        record = StoredFile(
            path=self._relative(destination), created_at=now, expires_at=now + self.ttl
        )
        self._append(record)
        logger.debug("Stored %s (%d bytes)", record.path, len(data))
        return record

    def get_file(self, relative_path: str) -> bytes:
        path = self.resolve(relative_path)
        if not path.is_file():
            raise NotFoundError(f"File not found: {relative_path}")
        return path.read_bytes()

    def delete_file(self, relative_path: str) -> bool:
        path = self.resolve(relative_path)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def find(self, scan_id: str, file_name: str) -> str:
        """Locate ``file_name`` of ``scan_id`` inside any site namespace."""
        for part in (scan_id, file_name):
            if not part or part in (".", "..") or "/" in part or "\\" in part:
                raise ValidationError(f"Invalid path component: {part!r}")
        for namespace in sorted(self.base_dir.iterdir()):
            if namespace.is_dir() and (namespace / scan_id / file_name).is_file():
                return f"{namespace.name}/{scan_id}/{file_name}"
        raise NotFoundError(f"File not found: {scan_id}/{file_name}")

    def _append(self, record: StoredFile) -> None:
        line = json.dumps(
            {"path": record.path, "created_at": record.created_at, "expires_at": record.expires_at}
        )
        with self._log_lock:
            with self.registry_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def registry(self) -> Dict[str, StoredFile]:
        entries: Dict[str, StoredFile] = {}
        with self._log_lock:
            if not self.registry_path.exists():
                return entries
            lines = self.registry_path.read_text(encoding="utf-8").splitlines()
        for line in lines:
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
                entries[entry["path"]] = StoredFile(
                    path=entry["path"],
                    created_at=float(entry["created_at"]),
                    expires_at=float(entry["expires_at"]),
                )
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("Ignoring corrupt registry line: %s", exc)
        return entries

    def count_files(self) -> int:
        return sum(
            1
            for path in self.base_dir.rglob("*")
            if path.is_file() and path.name not in (SENTINEL_NAME, REGISTRY_NAME)
        )

    def sweep(self, force: bool = False) -> SweepReport:
        """Delete expired files (or everything when forced) and prune empty dirs.

        A sweep started while another is running is skipped, not queued.
        """
        if not self._sweep_lock.acquire(blocking=False):
            logger.debug("Purge already in progress, skipping")
            return SweepReport(skipped=True)
        try:
            return self._sweep(force)
        finally:
            self._sweep_lock.release()

    def _sweep(self, force: bool) -> SweepReport:
        report = SweepReport()
        now = self._clock()
        registry = self.registry()
        for path in sorted(self.base_dir.rglob("*")):
            if not path.is_file():
                continue
            if path.parent == self.base_dir and path.name in (SENTINEL_NAME, REGISTRY_NAME):
                continue
            relative = self._relative(path)
            entry = registry.get(relative)
            if entry is not None:
                expires_at = entry.expires_at
            else:
                expires_at = path.stat().st_mtime + self.ttl
            if force or expires_at <= now:
                try:
                    path.unlink()
                    report.removed.append(relative)
                except OSError as exc:
                    logger.warning("Could not remove %s: %s", relative, exc)

        for directory in sorted(
            (p for p in self.base_dir.rglob("*") if p.is_dir()),
            key=lambda p: len(p.parts),
            reverse=True,
        ):
            try:
                directory.rmdir()
                report.pruned_dirs += 1
            except OSError:
                continue

        self._compact(report.removed)
        logger.info(
            "Purge finished: %d files removed, %d directories pruned",
            len(report.removed),
            report.pruned_dirs,
        )
        return report

    def _compact(self, removed: List[str]) -> None:
        gone = set(removed)
        with self._log_lock:
            if not self.registry_path.exists():
                return
            lines = self.registry_path.read_text(encoding="utf-8").splitlines()
            kept: Dict[str, str] = {}
            for line in lines:
                try:
                    path = json.loads(line)["path"]
                except (ValueError, KeyError, TypeError):
                    continue
                if path not in gone and (self.base_dir / path).exists():
                    kept[path] = line
            tmp_path = self.registry_path.with_suffix(".tmp")
            tmp_path.write_text(
                "".join(line + "\n" for line in kept.values()), encoding="utf-8"
            )
            os.replace(tmp_path, self.registry_path)


class PurgeScheduler:
    """Runs a sweep at startup and then every ``cleanup_interval`` seconds."""

    def __init__(self, store: DurableStore, interval: float) -> None:
        self.store = store
        self.interval = interval
        self._task: Optional["asyncio.Task[None]"] = None

    async def run_once(self, force: bool = False) -> SweepReport:
        return await asyncio.to_thread(self.store.sweep, force)

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except OSError:
                logger.exception("Purge sweep failed")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            logger.info("Starting purge scheduler (every %.0fs)", self.interval)
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Purge scheduler stopped")
