"""
Job Dispatcher

Pulls jobs off a RedisQueue and runs them on a fixed pool of threads,
gated by a sliding-window rate limiter.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

import redis

from .metrics import jobs_dead_lettered, jobs_in_progress, jobs_reclaimed, jobs_retried, record_job
from .queue import Job, RedisQueue

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], dict[str, Any] | None]


class SlidingWindowRateLimiter:
    """At most ``max_jobs`` starts in any ``duration``-second window."""

    def __init__(self, max_jobs: int = 10, duration: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.max_jobs = max_jobs
        self.duration = duration
        self.clock = clock
        self._starts: deque[float] = deque()
        self._lock = threading.Lock()

    def _evict(self, now: float):
        while self._starts and now - self._starts[0] >= self.duration:
            self._starts.popleft()

    def delay(self) -> float:
        """Seconds until another start is allowed; 0 if allowed now."""
        with self._lock:
            now = self.clock()
            self._evict(now)
            if len(self._starts) < self.max_jobs:
                return 0.0
            return max(0.0, self._starts[0] + self.duration - now)

    def record(self):
        """Count a start against the current window."""
        with self._lock:
            now = self.clock()
            self._evict(now)
            self._starts.append(now)

    def try_acquire(self) -> bool:
        with self._lock:
            now = self.clock()
            self._evict(now)
            if len(self._starts) >= self.max_jobs:
                return False
            self._starts.append(now)
            return True


class QueueWorker:
    """Runs queue jobs with bounded concurrency, retries and stall recovery."""

    def __init__(
        self,
        queue: RedisQueue,
        handler: JobHandler,
        concurrency: int = 5,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        poll_interval: float = 1.0,
        stalled_interval: float = 30.0,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.rate_limiter = rate_limiter
        self.poll_interval = poll_interval
        self.stalled_interval = stalled_interval

        self._slots = threading.BoundedSemaphore(concurrency)
        self._in_flight = 0
        self._lock = threading.Lock()
        self._last_reclaim = 0.0
        self.stats = {"completed": 0, "retrying": 0, "dead": 0}

    @property
    def name(self) -> str:
        return self.queue.name

    def run(self, stop_event: threading.Event):
        """Process jobs until stop_event is set, then wait for in-flight jobs."""
        logger.info(f"Worker for {self.name} started (concurrency={self.concurrency})")
        self._loop(stop_event, until_empty=False)
        logger.info(f"Worker for {self.name} stopped")

    def drain(self, stop_event: threading.Event | None = None) -> dict[str, int]:
        """
        Process jobs until nothing is waiting, delayed or running.

        Returns:
            Counts of completed, retried and dead-lettered attempts
        """
        self._loop(stop_event or threading.Event(), until_empty=True)
        return dict(self.stats)

    def _loop(self, stop_event: threading.Event, until_empty: bool):
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix=f"{self.name}-job") as pool:
            while not stop_event.is_set():
                self._maybe_reclaim()

                if not self._slots.acquire(timeout=self.poll_interval):
                    continue

                if not self._wait_for_rate_limit(stop_event):
                    self._slots.release()
                    break

                job = self.queue.claim()
                if job is None:
                    self._slots.release()
                    if until_empty and self._is_empty():
                        break
                    stop_event.wait(self._idle_wait(until_empty))
                    continue

                if self.rate_limiter is not None:
                    self.rate_limiter.record()
                with self._lock:
                    self._in_flight += 1
                pool.submit(self._run_job, job)

    def _wait_for_rate_limit(self, stop_event: threading.Event) -> bool:
        if self.rate_limiter is None:
            return True
        while True:
            delay = self.rate_limiter.delay()
            if delay <= 0:
                return True
            if stop_event.wait(delay):
                return False

    def _idle_wait(self, until_empty: bool) -> float:
        if until_empty:
            return min(self.poll_interval, 0.05)
        return self.poll_interval

    def _is_empty(self) -> bool:
        with self._lock:
            if self._in_flight:
                return False
        counts = self.queue.counts()
        return counts["waiting"] == 0 and counts["delayed"] == 0 and counts["active"] == 0

    def _maybe_reclaim(self):
        now = time.monotonic()
        if now - self._last_reclaim < self.stalled_interval:
            return
        self._last_reclaim = now
        try:
            reclaimed = self.queue.reclaim_stalled()
        except redis.RedisError as e:
            logger.error(f"Failed to reclaim stalled jobs on {self.name}: {e}")
            return
        if reclaimed:
            jobs_reclaimed.labels(queue=self.name).inc(reclaimed)

    def _heartbeat(self, job: Job, done: threading.Event):
        """Renew the job's lease until ``done`` is set or the lease is lost."""
        interval = self.queue.lock_duration / 2
        while not done.wait(interval):
            try:
                if not self.queue.extend_lease(job):
                    logger.warning(f"[{job.id}] Lease lost while running")
                    return
            except redis.RedisError as e:
                logger.error(f"[{job.id}] Failed to renew lease: {e}")

    def _run_job(self, job: Job):
        start = time.monotonic()
        jobs_in_progress.labels(queue=self.name).inc()
        done = threading.Event()
        heartbeat = threading.Thread(
            target=self._heartbeat, args=(job, done), name=f"{self.name}-lease-{job.id}", daemon=True
        )
        heartbeat.start()
        try:
            try:
                result = self.handler(job)
            except Exception as e:
                done.set()
                logger.error(f"[{job.id}] Attempt {job.attempts_made}/{job.max_attempts} failed: {e}")
                logger.debug(f"[{job.id}] Failure details", exc_info=True)
                outcome = self.queue.fail(job, str(e) or type(e).__name__)
                if outcome == "lost":
                    return
                self._count(outcome)
                if outcome == "retrying":
                    jobs_retried.labels(queue=self.name).inc()
                else:
                    jobs_dead_lettered.labels(queue=self.name).inc()
                record_job(self.name, "failed", time.monotonic() - start)
            else:
                done.set()
                if not self.queue.complete(job, result):
                    return
                self._count("completed")
                record_job(self.name, "completed", time.monotonic() - start)
                logger.info(f"[{job.id}] Completed in {time.monotonic() - start:.2f}s")
        except redis.RedisError as e:
            logger.error(f"[{job.id}] Could not record job outcome, lease expiry will retry it: {e}")
        finally:
            done.set()
            heartbeat.join()
            jobs_in_progress.labels(queue=self.name).dec()
            with self._lock:
                self._in_flight -= 1
            self._slots.release()

    def _count(self, outcome: str):
        with self._lock:
            self.stats[outcome] += 1
