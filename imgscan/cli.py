"""Command-line entry point for the image scanner."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence

from .config import ScanConfig
from .errors import ImgScanError
from .models import PRIORITIES, JobState
from .service import ScanService, build_options
from .storage import DurableStore

logger = logging.getLogger("imgscan.cli")


def _ensure_command_prefix(argv: Sequence[str], commands: Iterable[str]) -> Sequence[str]:
    if not argv:
        return argv
    first = argv[0]
    if first in commands or first.startswith("-"):
        return argv
    return ("scan", *argv)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--storage",
        type=Path,
        default=None,
        help="Directory where downloaded images and scan reports are kept",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )


def _add_scan_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("urls", nargs="+", help="One or more page URLs to scan")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Maximum simultaneous image downloads per scan (1-50)",
    )
    parser.add_argument(
        "--priority",
        choices=sorted(PRIORITIES),
        default=None,
        help="Queue priority of the submitted scans",
    )
    parser.add_argument(
        "--render",
        action="store_true",
        help="Always load pages in a headless browser",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for each scan to finish",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print full scan results as JSON on STDOUT",
    )
    _add_common_arguments(parser)


def _add_purge_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--force",
        action="store_true",
        help="Remove every stored file regardless of its expiry",
    )
    _add_common_arguments(parser)


def _add_export_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("urls", nargs="+", help="Image URLs to bundle")
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("images.zip"),
        help="Destination ZIP archive",
    )
    _add_common_arguments(parser)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Discover, download and validate the images referenced by web pages.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan_parser = subparsers.add_parser("scan", help="Scan pages for images")
    _add_scan_arguments(scan_parser)

    purge_parser = subparsers.add_parser("purge", help="Delete expired stored files")
    _add_purge_arguments(purge_parser)

    export_parser = subparsers.add_parser(
        "export", help="Download image URLs into a single ZIP archive"
    )
    _add_export_arguments(export_parser)

    health_parser = subparsers.add_parser("health", help="Report service health")
    _add_common_arguments(health_parser)

    argv = list(sys.argv[1:] if argv is None else argv)
    argv = list(_ensure_command_prefix(argv, subparsers.choices.keys()))
    return parser.parse_args(argv)


def _configure_logging(verbose: bool, quiet: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    if quiet and not verbose:
        level = logging.ERROR
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def build_config(args: argparse.Namespace) -> ScanConfig:
    config = ScanConfig.from_env()
    overrides: Dict[str, Any] = {}
    if args.storage is not None:
        overrides["storage_dir"] = args.storage
    if getattr(args, "render", False):
        overrides["always_render"] = True
    return dataclasses.replace(config, **overrides) if overrides else config


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")
    sys.stdout.flush()


async def _scan_all(args: argparse.Namespace, config: ScanConfig) -> List[Dict[str, Any]]:
    options = build_options(args.concurrency, args.priority)
    service = ScanService(config)
    await service.start(purge=False)
    outcomes: List[Dict[str, Any]] = []
    try:
        pending = []
        for url in args.urls:
            try:
                response = await service.submit(url, options)
            except ImgScanError as exc:
                logger.error("Rejected %s: %s", url, exc.message)
                outcomes.append({"url": url, "status": "error", "error": exc.to_dict()})
                continue
            if response.result is not None:
                outcomes.append(
                    {"url": url, "status": "success", "data": response.to_dict()["data"]}
                )
            else:
                pending.append((url, response.job_id))
        for url, job_id in pending:
            try:
                job = await service.queue.wait(job_id, args.timeout)
            except asyncio.TimeoutError:
                logger.error("Timed out waiting for %s", url)
                outcomes.append({"url": url, **service.poll(job_id)})
                continue
            status = job.status()
            if job.state is JobState.FAILED:
                logger.error("Scan of %s failed: %s", url, job.error)
            outcomes.append({"url": url, **status})
    finally:
        await service.close()
    return outcomes


def _result_of(outcome: Dict[str, Any]) -> Dict[str, Any] | None:
    return outcome.get("data") or outcome.get("result")


def _run_scan(args: argparse.Namespace) -> int:
    _configure_logging(args.verbose, quiet=args.json)
    config = build_config(args)
    overall_start = time.perf_counter()
    outcomes = asyncio.run(_scan_all(args, config))
    total_elapsed = time.perf_counter() - overall_start

    successes = 0
    for outcome in outcomes:
        result = _result_of(outcome)
        if not result or result["stats"]["method"] == "failed":
            continue
        successes += 1
        stats = result["stats"]
        logger.info(
            "%s -> %d valid images (%d found, %d unique, method: %s)",
            outcome["url"],
            stats["valid_images"],
            stats["total_found"],
            stats["unique_found"],
            stats["method"],
        )
    logger.info(
        "Finished in %.2fs (%d/%d succeeded)", total_elapsed, successes, len(args.urls)
    )
    if args.json:
        _emit(outcomes)
    return 0 if successes == len(args.urls) else 1


def _run_purge(args: argparse.Namespace) -> int:
    _configure_logging(args.verbose)
    store = DurableStore(build_config(args))
    report = store.sweep(force=args.force)
    if report.skipped:
        logger.warning("Another purge is already running")
        return 1
    logger.info(
        "Removed %d files and %d empty directories from %s",
        len(report.removed),
        report.pruned_dirs,
        store.base_dir,
    )
    return 0


def _run_export(args: argparse.Namespace) -> int:
    _configure_logging(args.verbose)
    service = ScanService(build_config(args))
    summary = service.export(args.urls, args.output.resolve())
    for url in summary.skipped:
        logger.warning("Could not download %s", url)
    return 0 if summary.added else 1


def _run_health(args: argparse.Namespace) -> int:
    _configure_logging(args.verbose, quiet=True)
    report = ScanService(build_config(args)).health()
    _emit(report)
    return 0 if report["status"] == "ok" else 1


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    handlers = {
        "scan": _run_scan,
        "purge": _run_purge,
        "export": _run_export,
        "health": _run_health,
    }
    try:
        code = handlers[args.command](args)
    except ImgScanError as exc:
        logger.error("%s", exc.message)
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
