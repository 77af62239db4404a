"""
Prometheus metrics for the PIS worker.
Exposes job throughput, durations, queue depth and storage failures.
"""
from prometheus_client import Counter, Gauge, Histogram, Info, start_http_server
import logging

logger = logging.getLogger(__name__)

# Info metrics
worker_info = Info('pis_worker', 'Worker information')

# Job metrics
jobs_total = Counter('pis_jobs_total', 'Total jobs processed', ['queue', 'status'])
jobs_in_progress = Gauge('pis_jobs_in_progress', 'Currently processing jobs', ['queue'])
job_duration_seconds = Histogram(
    'pis_job_duration_seconds',
    'Job processing duration',
    ['queue'],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60, 300]
)
jobs_retried = Counter('pis_jobs_retried_total', 'Jobs scheduled for another attempt', ['queue'])
jobs_dead_lettered = Counter('pis_jobs_dead_lettered_total', 'Jobs that exhausted their attempts', ['queue'])
jobs_reclaimed = Counter('pis_jobs_reclaimed_total', 'Stalled jobs returned to the queue', ['queue'])

# Queue metrics
queue_depth = Gauge('pis_queue_depth', 'Jobs per queue state', ['queue', 'state'])

# Pipeline metrics
photos_processed = Counter('pis_photos_processed_total', 'Photos turned into derivatives', ['result'])
watermark_layers_skipped = Counter('pis_watermark_layers_skipped_total', 'Watermark layers that failed and were skipped', ['kind'])
package_photos = Counter('pis_package_photos_total', 'Photos written into download packages', ['result'])

# Storage metrics
storage_errors = Counter('pis_storage_errors_total', 'Object storage failures', ['operation', 'kind'])


class MetricsServer:
    """HTTP server exposing /metrics for Prometheus to scrape."""

    def __init__(self, port: int = 9090):
        self.port = port
        self._started = False

    def start(self, worker_id: str, version: str):
        """Start the metrics HTTP server."""
        worker_info.info({
            'worker_id': worker_id,
            'version': version,
        })
        if self._started:
            return
        start_http_server(self.port)
        self._started = True
        logger.info(f"Metrics server started on port {self.port}")


def record_job(queue: str, status: str, duration: float):
    """Record the outcome and duration of one job attempt."""
    jobs_total.labels(queue=queue, status=status).inc()
    job_duration_seconds.labels(queue=queue).observe(duration)


def update_queue_metrics(queue: str, counts: dict):
    """Update queue depth gauges from a counts snapshot."""
    for state, count in counts.items():
        queue_depth.labels(queue=queue, state=state).set(count)
