"""
PIS Worker

Main entry point for the background worker.
Runs the photo and package queues until asked to stop.
"""

import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass

import redis
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import Settings, get_settings
from .dispatcher import QueueWorker, SlidingWindowRateLimiter
from .errors import PipelineError
from .jobs import PackageJobHandler, PhotoJobHandler, recover_stuck_photos
from .metrics import MetricsServer, update_queue_metrics
from .packager import PackageCreator
from .pipeline.logo import LogoFetcher
from .pipeline.processor import PhotoProcessor
from .pipeline.watermark import WatermarkCompositor
from .queue import RedisQueue
from .records import AlbumCache, ApiRecordStore
from .scanner import AlbumScanner
from .storage import StorageAdapter, create_storage_adapter

logger = logging.getLogger(__name__)
console = Console()

QUEUE_METRICS_INTERVAL = 15.0


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


@dataclass
class Services:
    """Everything a worker process shares between its jobs."""
    settings: Settings
    storage: StorageAdapter
    records: ApiRecordStore
    photo_queue: RedisQueue
    package_queue: RedisQueue
    albums: AlbumCache
    processor: PhotoProcessor
    logo_fetcher: LogoFetcher

    def close(self):
        self.logo_fetcher.close()
        self.records.close()


def build_services(settings: Settings) -> Services:
    """Construct clients once; they are shared by every job thread."""
    storage = create_storage_adapter(settings)
    records = ApiRecordStore(settings.api_url, settings.api_key, timeout=settings.api_timeout)

    queue_options = dict(
        prefix=settings.queue_prefix,
        worker_id=settings.worker_id,
        attempts=settings.job_attempts,
        backoff_delay=settings.backoff_delay,
        lock_duration=settings.lock_duration,
        keep_completed=settings.keep_completed,
        keep_failed=settings.keep_failed,
    )
    photo_queue = RedisQueue.from_url(settings.redis_url, settings.photo_queue, **queue_options)
    package_queue = RedisQueue(photo_queue.redis, settings.package_queue, **queue_options)

    logo_fetcher = LogoFetcher(
        timeout=settings.logo_fetch_timeout,
        max_bytes=settings.logo_max_bytes,
        media_domain=settings.media_domain,
    )
    processor = PhotoProcessor(
        compositor=WatermarkCompositor(logo_fetcher, font_path=settings.watermark_font_path),
        thumb_max_size=settings.thumb_max_size,
        thumb_quality=settings.thumb_quality,
        preview_max_size=settings.preview_max_size,
        preview_quality=settings.preview_quality,
        blur_grid=settings.blur_grid,
    )

    return Services(
        settings=settings,
        storage=storage,
        records=records,
        photo_queue=photo_queue,
        package_queue=package_queue,
        albums=AlbumCache(records, ttl=settings.album_cache_ttl),
        processor=processor,
        logo_fetcher=logo_fetcher,
    )


def build_workers(services: Services) -> list[QueueWorker]:
    settings = services.settings
    photo_handler = PhotoJobHandler(services.storage, services.records, services.processor, services.albums)
    package_handler = PackageJobHandler(
        services.storage,
        services.records,
        PackageCreator(services.storage, services.processor, workers=settings.package_workers),
        services.albums,
        url_ttl=settings.presign_max_ttl,
    )
    return [
        QueueWorker(
            services.photo_queue,
            photo_handler,
            concurrency=settings.concurrency,
            rate_limiter=SlidingWindowRateLimiter(settings.rate_limit_max, settings.rate_limit_duration),
            poll_interval=settings.poll_interval,
            stalled_interval=settings.stalled_interval,
        ),
        QueueWorker(
            services.package_queue,
            package_handler,
            concurrency=settings.package_concurrency,
            poll_interval=settings.poll_interval,
            stalled_interval=settings.stalled_interval,
        ),
    ]


def run(settings: Settings) -> int:
    """Main worker loop."""
    stop_event = threading.Event()

    def signal_handler(signum, frame):
        logger.info("Shutdown signal received, finishing in-flight jobs...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    console.print("[bold green]PIS Worker[/bold green]")
    console.print(f"Worker ID: {settings.worker_id}")
    console.print(f"API: {settings.api_url}")
    console.print(f"Redis: {settings.redis_url}")
    console.print(f"Storage: {settings.storage_type} (bucket {settings.storage_bucket})")
    console.print("")

    services = build_services(settings)
    if not services.photo_queue.health_check():
        logger.error("Failed to connect to Redis")
        return 1
    logger.info("Connected to Redis")

    MetricsServer(port=settings.metrics_port).start(settings.worker_id, __version__)

    try:
        recover_stuck_photos(services.records, services.photo_queue)
    except PipelineError as e:
        logger.warning(f"Skipping stuck photo recovery: {e}")

    workers = build_workers(services)
    threads = [
        threading.Thread(target=worker.run, args=(stop_event,), name=f"{worker.name}-dispatch")
        for worker in workers
    ]
    for thread in threads:
        thread.start()

    while not stop_event.wait(QUEUE_METRICS_INTERVAL):
        for queue in (services.photo_queue, services.package_queue):
            try:
                update_queue_metrics(queue.name, queue.counts())
            except redis.RedisError as e:
                logger.warning(f"Failed to update queue metrics: {e}")

    for thread in threads:
        thread.join()
    services.close()
    logger.info("Worker shutdown complete")
    return 0


def check_storage(storage: StorageAdapter) -> bool:
    try:
        storage.exists(".health-check")
    except PipelineError as e:
        logger.error(f"Storage check failed: {e}")
        return False
    return True


def health(settings: Settings) -> int:
    """Report dependency reachability; non-zero exit when degraded."""
    services = build_services(settings)
    checks = {
        "redis": services.photo_queue.health_check(),
        "storage": check_storage(services.storage),
        "api": services.records.health_check(),
    }

    table = Table(title="PIS Worker Health")
    table.add_column("Service")
    table.add_column("Status")
    for name, ok in checks.items():
        table.add_row(name, "[green]ok[/green]" if ok else "[red]error[/red]")
    if checks["redis"]:
        for queue in (services.photo_queue, services.package_queue):
            counts = queue.counts()
            table.add_row(queue.name, ", ".join(f"{k}={v}" for k, v in counts.items()))
    console.print(table)

    services.close()
    return 0 if all(checks.values()) else 1


def scan(settings: Settings, album_id: str) -> int:
    """Import new files from an album's sync folder."""
    services = build_services(settings)
    result = AlbumScanner(services.storage, services.records, services.photo_queue).scan(album_id)
    console.print(
        f"Found {result.found}, added [green]{result.added}[/green], "
        f"skipped {result.skipped}, failed [red]{result.failed}[/red]"
    )
    services.close()
    return 0 if result.failed == 0 else 1


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(prog="pis-worker", description="PIS photo worker")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Process queued jobs (default)")
    subparsers.add_parser("health", help="Check Redis, storage and API reachability")
    scan_parser = subparsers.add_parser("scan", help="Import new files from an album's sync folder")
    scan_parser.add_argument("album_id", help="Album to scan")

    args = parser.parse_args(argv)
    configure_logging(args.log_level.upper())
    settings = get_settings()

    if args.command == "health":
        sys.exit(health(settings))
    elif args.command == "scan":
        sys.exit(scan(settings, args.album_id))
    else:
        sys.exit(run(settings))


if __name__ == "__main__":
    main()
