"""
Queue Client

Redis-backed job queue with leases, retries and dead-lettering.

Keys under ``{prefix}:{queue}``:
    job:{id}    hash with the job's data and status
    wait        zset of claimable jobs, scored by the time they become available
    active      zset of claimed jobs, scored by lease expiry
    completed   list of recently completed job ids
    failed      list of dead-lettered job ids
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import redis

logger = logging.getLogger(__name__)

LIVE_STATUSES = {"waiting", "delayed", "active"}
TERMINAL_STATUSES = {"completed", "failed"}


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Job:
    """A claimed unit of work."""
    id: str
    name: str
    payload: dict[str, Any]
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_delay: float = 2.0
    status: str = "waiting"
    error: str | None = None
    token: str | None = None
    extra: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> "Job":
        return cls(
            id=data["id"],
            name=data.get("name", "job"),
            payload=json.loads(data.get("payload", "{}")),
            attempts_made=int(data.get("attempts_made", 0)),
            max_attempts=int(data.get("max_attempts", 1)),
            backoff_delay=float(data.get("backoff_delay", 0)),
            status=data.get("status", "waiting"),
            error=data.get("error"),
            token=data.get("lock_token"),
        )

    def next_delay(self) -> float:
        """Exponential backoff before the next attempt."""
        return self.backoff_delay * 2 ** max(self.attempts_made - 1, 0)


class RedisQueue:
    """Redis job queue with at-least-once delivery."""

    def __init__(
        self,
        client: redis.Redis,
        name: str,
        prefix: str = "pis:queue",
        worker_id: str = "worker",
        attempts: int = 3,
        backoff_delay: float = 2.0,
        lock_duration: float = 120.0,
        keep_completed: int = 1000,
        keep_failed: int = 5000,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = client
        self.name = name
        self.base = f"{prefix}:{name}"
        self.worker_id = worker_id
        self.attempts = attempts
        self.backoff_delay = backoff_delay
        self.lock_duration = lock_duration
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.clock = clock

        self.wait_key = f"{self.base}:wait"
        self.active_key = f"{self.base}:active"
        self.completed_key = f"{self.base}:completed"
        self.failed_key = f"{self.base}:failed"

    @classmethod
    def from_url(cls, redis_url: str, name: str, **kwargs) -> "RedisQueue":
        return cls(redis.from_url(redis_url, decode_responses=True), name, **kwargs)

    def _job_key(self, job_id: str) -> str:
        return f"{self.base}:job:{job_id}"

    def enqueue(
        self,
        payload: dict[str, Any],
        job_id: str | None = None,
        name: str = "job",
        attempts: int | None = None,
        backoff_delay: float | None = None,
    ) -> str:
        """
        Add a job to the queue.

        Passing a job_id makes the enqueue single-claim: while a job with that
        id is waiting, delayed or active, enqueueing it again does nothing.
        A finished job with the same id is reset and queued afresh.

        Args:
            payload: JSON-serializable job data
            job_id: Stable id, such as the photo id
            name: Job name for logs
            attempts: Attempt budget, defaults to the queue's
            backoff_delay: Base retry delay in seconds, defaults to the queue's

        Returns:
            Job id
        """
        job_id = job_id or uuid.uuid4().hex
        key = self._job_key(job_id)
        created = False

        def _enqueue(pipe):
            nonlocal created
            if pipe.hget(key, "status") in LIVE_STATUSES:
                return
            now = self.clock()
            pipe.multi()
            pipe.delete(key)
            pipe.hset(key, mapping={
                "id": job_id,
                "name": name,
                "payload": json.dumps(payload),
                "attempts_made": 0,
                "max_attempts": attempts or self.attempts,
                "backoff_delay": self.backoff_delay if backoff_delay is None else backoff_delay,
                "status": "waiting",
                "created_at": utcnow_iso(),
            })
            pipe.zadd(self.wait_key, {job_id: now})
            pipe.lrem(self.completed_key, 0, job_id)
            pipe.lrem(self.failed_key, 0, job_id)
            created = True

        self.redis.transaction(_enqueue, key)
        if created:
            logger.debug(f"Enqueued {name} job {job_id} on {self.name}")
        else:
            logger.info(f"Job {job_id} already queued on {self.name}, skipping")
        return job_id

    def claim(self) -> Job | None:
        """
        Claim the oldest ready job.

        Returns:
            Job with attempts_made incremented, or None if nothing is ready
        """
        claimed: list[str] = []

        def _claim(pipe):
            claimed.clear()
            now = self.clock()
            ready = pipe.zrangebyscore(self.wait_key, "-inf", now, start=0, num=1)
            if not ready:
                return
            job_id = ready[0]
            key = self._job_key(job_id)
            pipe.multi()
            pipe.zrem(self.wait_key, job_id)
            pipe.zadd(self.active_key, {job_id: now + self.lock_duration})
            pipe.hincrby(key, "attempts_made", 1)
            pipe.hset(key, mapping={
                "status": "active",
                "worker_id": self.worker_id,
                "lock_token": uuid.uuid4().hex,
                "started_at": utcnow_iso(),
            })
            claimed.append(job_id)

        try:
            self.redis.transaction(_claim, self.wait_key)
            if not claimed:
                return None
            job_id = claimed[0]
            data = self.redis.hgetall(self._job_key(job_id))
        except redis.RedisError as e:
            logger.error(f"Failed to claim job from {self.name}: {e}")
            return None

        if not data.get("payload"):
            logger.warning(f"Job {job_id} not found in data store, dropping")
            self.redis.zrem(self.active_key, job_id)
            self.redis.delete(self._job_key(job_id))
            return None

        job = Job.from_hash(data)
        logger.debug(f"Claimed job {job.id} (attempt {job.attempts_made}/{job.max_attempts})")
        return job

    def _holds_lock(self, pipe, job: Job, reclaimed_ok: bool) -> bool:
        """
        True while ``job`` is still owned by the claim that produced it.

        A job whose lease expired and was put back to wait, but which nobody
        has claimed again, still belongs to its last claimant when
        ``reclaimed_ok`` is set; finishing it then takes it off the wait set.
        """
        key = self._job_key(job.id)
        if job.token is None or pipe.hget(key, "lock_token") != job.token:
            return False
        if pipe.zscore(self.active_key, job.id) is not None:
            return True
        return reclaimed_ok and pipe.hget(key, "status") == "waiting"

    def _apply_if_held(self, job: Job, apply: Callable[[Any], None], reclaimed_ok: bool = True) -> bool:
        """Run ``apply`` inside MULTI only if the caller still holds the job."""
        held: list[bool] = []

        def _txn(pipe):
            held.clear()
            if not self._holds_lock(pipe, job, reclaimed_ok):
                return
            pipe.multi()
            apply(pipe)
            held.append(True)

        self.redis.transaction(_txn, self.active_key, self.wait_key, self._job_key(job.id))
        if not held:
            logger.warning(f"Job {job.id} on {self.name} is no longer held by this worker, skipping update")
        return bool(held)

    def extend_lease(self, job: Job) -> bool:
        """
        Push a running job's lease expiry further out.

        Returns:
            False if the lease already expired or another claim owns the job
        """
        return self._apply_if_held(
            job,
            lambda pipe: pipe.zadd(self.active_key, {job.id: self.clock() + self.lock_duration}, xx=True),
            reclaimed_ok=False,
        )

    def complete(self, job: Job, result: dict[str, Any] | None = None) -> bool:
        """
        Mark a job completed and keep it in the bounded completed list.

        Returns:
            False if another claim owns the job and the outcome was dropped
        """
        key = self._job_key(job.id)

        def _complete(pipe):
            pipe.zrem(self.active_key, job.id)
            pipe.zrem(self.wait_key, job.id)
            pipe.hset(key, mapping={
                "status": "completed",
                "finished_at": utcnow_iso(),
                "result": json.dumps(result or {}),
            })
            pipe.hdel(key, "lock_token")
            pipe.lpush(self.completed_key, job.id)

        if not self._apply_if_held(job, _complete):
            return False
        job.status = "completed"
        self._trim(self.completed_key, self.keep_completed, "completed")
        return True

    def fail(self, job: Job, error: str) -> str:
        """
        Record a failed attempt.

        Returns:
            "retrying" if the job was rescheduled with backoff, "dead" if it
            exhausted its attempts and was dead-lettered, "lost" if another
            claim owns the job and nothing was recorded
        """
        key = self._job_key(job.id)

        if job.attempts_made < job.max_attempts:
            delay = job.next_delay()

            def _retry(pipe):
                pipe.zrem(self.active_key, job.id)
                pipe.zadd(self.wait_key, {job.id: self.clock() + delay})
                pipe.hset(key, mapping={"status": "delayed", "error": error})
                pipe.hdel(key, "lock_token")

            if not self._apply_if_held(job, _retry):
                return "lost"
            job.status = "delayed"
            logger.info(f"Job {job.id} retrying in {delay:.1f}s (attempt {job.attempts_made}/{job.max_attempts})")
            return "retrying"

        def _dead_letter(pipe):
            pipe.zrem(self.active_key, job.id)
            pipe.zrem(self.wait_key, job.id)
            pipe.hset(key, mapping={"status": "failed", "error": error, "finished_at": utcnow_iso()})
            pipe.hdel(key, "lock_token")
            pipe.lpush(self.failed_key, job.id)

        if not self._apply_if_held(job, _dead_letter):
            return "lost"
        job.status = "failed"
        self._trim(self.failed_key, self.keep_failed, "failed")
        logger.warning(f"Job {job.id} dead-lettered after {job.attempts_made} attempts: {error}")
        return "dead"

    def reclaim_stalled(self) -> int:
        """
        Return jobs with expired leases to the queue.

        Jobs out of attempts are dead-lettered instead.

        Returns:
            Number of jobs reclaimed or dead-lettered
        """
        expired = self.redis.zrangebyscore(self.active_key, "-inf", self.clock())
        reclaimed = 0
        for job_id in expired:
            key = self._job_key(job_id)
            outcome: list[str] = []

            def _reclaim(pipe):
                outcome.clear()
                lease = pipe.zscore(self.active_key, job_id)
                now = self.clock()
                if lease is None or lease > now:
                    return
                attempts_made = int(pipe.hget(key, "attempts_made") or 0)
                max_attempts = int(pipe.hget(key, "max_attempts") or 1)
                pipe.multi()
                pipe.zrem(self.active_key, job_id)
                if attempts_made >= max_attempts:
                    pipe.hset(key, mapping={
                        "status": "failed",
                        "error": "job stalled more than allowable limit",
                        "finished_at": utcnow_iso(),
                    })
                    pipe.lpush(self.failed_key, job_id)
                    outcome.append("dead")
                else:
                    pipe.zadd(self.wait_key, {job_id: now})
                    pipe.hset(key, "status", "waiting")
                    outcome.append("waiting")

            self.redis.transaction(_reclaim, self.active_key, key)
            if outcome:
                reclaimed += 1
                logger.warning(f"Stalled job {job_id} on {self.name} -> {outcome[0]}")
        if reclaimed:
            self._trim(self.failed_key, self.keep_failed, "failed")
        return reclaimed

    def _trim(self, list_key: str, keep: int, status: str) -> None:
        """Trim a retention list and delete the job hashes that fall off it."""
        overflow = self.redis.lrange(list_key, keep, -1)
        if not overflow:
            return
        if keep > 0:
            self.redis.ltrim(list_key, 0, keep - 1)
        else:
            self.redis.delete(list_key)
        for job_id in overflow:
            key = self._job_key(job_id)
            # The id may have been re-enqueued since
            if self.redis.hget(key, "status") == status:
                self.redis.delete(key)

    def get_job(self, job_id: str) -> Job | None:
        data = self.redis.hgetall(self._job_key(job_id))
        if not data.get("id"):
            return None
        return Job.from_hash(data)

    def is_live(self, job_id: str) -> bool:
        """True while a job is waiting, delayed or active."""
        return self.redis.hget(self._job_key(job_id), "status") in LIVE_STATUSES

    def live_job_ids(self) -> set[str]:
        return set(self.redis.zrange(self.wait_key, 0, -1)) | set(self.redis.zrange(self.active_key, 0, -1))

    def counts(self) -> dict[str, int]:
        """Number of jobs in each state."""
        now = self.clock()
        pipe = self.redis.pipeline()
        pipe.zcount(self.wait_key, "-inf", now)
        pipe.zcount(self.wait_key, f"({now}", "+inf")
        pipe.zcard(self.active_key)
        pipe.llen(self.completed_key)
        pipe.llen(self.failed_key)
        waiting, delayed, active, completed, failed = pipe.execute()
        return {
            "waiting": waiting,
            "delayed": delayed,
            "active": active,
            "completed": completed,
            "failed": failed,
        }

    def health_check(self) -> bool:
        """Check Redis connection health."""
        try:
            self.redis.ping()
            return True
        except redis.RedisError:
            return False
