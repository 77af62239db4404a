"""
Dispatcher tests.

Workers are run with ``drain`` so each test finishes once the queue is
empty.
"""

import threading
import time

import pytest

from pis_worker.dispatcher import QueueWorker, SlidingWindowRateLimiter
from pis_worker.queue import RedisQueue


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def make_worker(queue, handler, **kwargs) -> QueueWorker:
    options = dict(concurrency=5, poll_interval=0.01, stalled_interval=60.0)
    options.update(kwargs)
    return QueueWorker(queue, handler, **options)


# =============================================================================
# Rate limiter
# =============================================================================

class TestSlidingWindowRateLimiter:

    def test_allows_up_to_max_per_window(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(max_jobs=2, duration=1.0, clock=clock)

        assert limiter.try_acquire()
        assert limiter.try_acquire()
        assert not limiter.try_acquire()
        assert limiter.delay() == pytest.approx(1.0)

    def test_window_slides(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(max_jobs=2, duration=1.0, clock=clock)
        limiter.record()
        clock.now += 0.5
        limiter.record()

        clock.now += 0.25
        assert limiter.delay() == pytest.approx(0.25)

        clock.now += 0.25
        assert limiter.delay() == 0.0
        assert limiter.try_acquire()
        assert not limiter.try_acquire()


# =============================================================================
# Worker
# =============================================================================

class TestQueueWorker:

    def test_runs_every_job(self, queue):
        seen = []
        for i in range(3):
            queue.enqueue({"n": i}, job_id=f"j{i}")

        stats = make_worker(queue, lambda job: seen.append(job.payload["n"])).drain()

        assert sorted(seen) == [0, 1, 2]
        assert stats == {"completed": 3, "retrying": 0, "dead": 0}
        assert queue.counts()["completed"] == 3

    def test_retry_cap(self, queue):
        """A job that always fails runs exactly max_attempts times."""
        attempts = []

        def handler(job):
            attempts.append(job.attempts_made)
            raise RuntimeError("storage down")

        queue.enqueue({}, job_id="j")
        stats = make_worker(queue, handler).drain()

        assert attempts == [1, 2, 3]
        assert stats == {"completed": 0, "retrying": 2, "dead": 1}
        job = queue.get_job("j")
        assert job.status == "failed"
        assert job.error == "storage down"

    def test_recovers_after_transient_failure(self, queue):
        def handler(job):
            if job.attempts_made == 1:
                raise RuntimeError("blip")
            return {"ok": True}

        queue.enqueue({}, job_id="j")
        stats = make_worker(queue, handler).drain()

        assert stats == {"completed": 1, "retrying": 1, "dead": 0}
        assert queue.get_job("j").status == "completed"

    def test_concurrency_bound(self, queue):
        lock = threading.Lock()
        running = 0
        peak = 0

        def handler(job):
            nonlocal running, peak
            with lock:
                running += 1
                peak = max(peak, running)
            time.sleep(0.01)
            with lock:
                running -= 1

        for i in range(50):
            queue.enqueue({}, job_id=f"j{i}")

        stats = make_worker(queue, handler, concurrency=5).drain()

        assert stats["completed"] == 50
        assert 1 <= peak <= 5

    def test_long_job_keeps_its_lease(self, redis_client):
        """A job running past lock_duration is renewed, not reclaimed and re-run."""
        queue = RedisQueue(redis_client, "long-jobs", prefix="test:queue", lock_duration=0.4, backoff_delay=0)
        lock = threading.Lock()
        starts = []
        running = 0
        peak = 0

        def handler(job):
            nonlocal running, peak
            with lock:
                starts.append(job.attempts_made)
                running += 1
                peak = max(peak, running)
            time.sleep(1.0)
            with lock:
                running -= 1

        queue.enqueue({}, job_id="p1")
        stats = make_worker(queue, handler, concurrency=2, stalled_interval=0.05).drain()

        assert starts == [1]
        assert peak == 1
        assert stats == {"completed": 1, "retrying": 0, "dead": 0}
        assert queue.get_job("p1").status == "completed"

    def test_rate_limit_spaces_job_starts(self, queue):
        for i in range(6):
            queue.enqueue({}, job_id=f"j{i}")
        limiter = SlidingWindowRateLimiter(max_jobs=2, duration=0.2)

        started = time.monotonic()
        stats = make_worker(queue, lambda job: None, rate_limiter=limiter).drain()

        assert stats["completed"] == 6
        # Six starts at two per window need at least two full windows
        assert time.monotonic() - started >= 0.35

    def test_stop_event_ends_run(self, queue):
        stop_event = threading.Event()
        worker = make_worker(queue, lambda job: None)
        thread = threading.Thread(target=worker.run, args=(stop_event,))
        thread.start()

        queue.enqueue({}, job_id="j")
        deadline = time.monotonic() + 5
        while queue.get_job("j").status != "completed" and time.monotonic() < deadline:
            time.sleep(0.01)
        stop_event.set()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert queue.get_job("j").status == "completed"

    def test_invalid_concurrency(self, queue):
        with pytest.raises(ValueError):
            QueueWorker(queue, lambda job: None, concurrency=0)
