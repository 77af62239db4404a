#!/usr/bin/env python3
"""
Requeue Photos

Puts photos stuck in pending or failed back on the processing queue.
Useful after an outage or when uploads created records the worker never saw.

Usage:
    ./scripts/requeue_photos.py                     # All albums, pending + failed
    ./scripts/requeue_photos.py --album ALBUM_ID    # One album
    ./scripts/requeue_photos.py --status pending    # Only pending photos
    ./scripts/requeue_photos.py --dry-run           # Show what would be queued
"""

import argparse
import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

from pis_worker.config import get_settings
from pis_worker.errors import PipelineError
from pis_worker.jobs import requeue_photos
from pis_worker.queue import RedisQueue
from pis_worker.records import ApiRecordStore

logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("requeue_photos")
console = Console()


def main():
    parser = argparse.ArgumentParser(description="Requeue unfinished photos")
    parser.add_argument("--album", help="Only this album")
    parser.add_argument(
        "--status",
        action="append",
        choices=["pending", "failed"],
        help="Status to requeue (repeatable, default: pending and failed)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Count without queueing")
    args = parser.parse_args()

    settings = get_settings()
    queue = RedisQueue.from_url(
        settings.redis_url,
        settings.photo_queue,
        prefix=settings.queue_prefix,
        attempts=settings.job_attempts,
        backoff_delay=settings.backoff_delay,
    )
    if not queue.health_check():
        console.print(f"[red]Cannot reach Redis at {settings.redis_url}[/red]")
        sys.exit(1)

    records = ApiRecordStore(settings.api_url, settings.api_key, timeout=settings.api_timeout)
    statuses = tuple(args.status or ["pending", "failed"])

    try:
        counts = requeue_photos(records, queue, album_id=args.album, statuses=statuses, dry_run=args.dry_run)
    except PipelineError as e:
        console.print(f"[red]Failed to list photos: {e}[/red]")
        sys.exit(1)
    finally:
        records.close()

    verb = "Would queue" if args.dry_run else "Queued"
    console.print(f"{verb} [green]{counts['queued']}[/green] photos")
    console.print(f"Already queued: {counts['skipped']}")
    if counts["errors"]:
        console.print(f"[red]Errors: {counts['errors']}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
