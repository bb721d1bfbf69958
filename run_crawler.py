"""Command-line runner for the discovery crawler."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Sequence

# Ensure the src directory is on the Python path so the discoverycrawler package can be imported
SRC_PATH = Path(__file__).resolve().parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from discoverycrawler.blobstore import DEFAULT_BLOB_ROOT  # noqa: E402  (import after path setup)
from discoverycrawler.config import AppConfig  # noqa: E402
from discoverycrawler.errors import SourceNotFoundError  # noqa: E402
from discoverycrawler.models import CrawlJob  # noqa: E402
from discoverycrawler.runtime import build_runtime  # noqa: E402


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--config", help="Path to the crawler configuration JSON file")
    parser.add_argument("--blob-root", default=str(DEFAULT_BLOB_ROOT), help="Directory holding crawl records")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Crawl every due source once and exit")
    mode.add_argument("--source", metavar="ID", help="Crawl one source now and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at DEBUG level")
    return parser.parse_args(argv)


def _print_jobs(jobs: List[CrawlJob]) -> None:
    print(json.dumps([job.model_dump(mode="json") for job in jobs], indent=2))


def main(argv: Sequence[str] | None = None) -> None:
    """Load the configuration and run the crawler in the requested mode."""

    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s: %(message)s"
    )

    try:
        config = AppConfig.from_file(args.config)
    except (FileNotFoundError, ValueError) as exc:
        logging.error("Could not load crawler configuration: %s", exc)
        sys.exit(1)

    runtime = build_runtime(config, blob_root=args.blob_root)
    scheduler = runtime.scheduler

    if args.source:
        try:
            job = scheduler.trigger(args.source)
        except SourceNotFoundError as exc:
            logging.error("%s", exc)
            sys.exit(1)
        _print_jobs([scheduler.wait_for(job.id)])
        return

    if args.once:
        runtime.jobs.fail_orphans()
        jobs = scheduler.run_due_once()
        logging.info("Ran %d crawl jobs", len(jobs))
        _print_jobs(jobs)
        return

    scheduler.start()
    try:
        while scheduler.running:
            scheduler.join(timeout=1.0)
    except KeyboardInterrupt:
        logging.info("Interrupted; finishing in-flight candidates")
    finally:
        scheduler.stop()


if __name__ == "__main__":
    main()
