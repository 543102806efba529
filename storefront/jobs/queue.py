# storefront/jobs/queue.py
"""
Durable at-least-once job queue on top of Redis.

Layout per queue ``<name>``:

- ``jobs:queue:<name>:pending``  list, LPUSH in / RPOP out (FIFO)
- ``jobs:queue:<name>:active``   list of jobs handed to a worker and not yet acked
- ``jobs:queue:<name>:delayed``  zset of jobs waiting for a retry, scored by due time
- ``jobs:queue:<name>:failed``   list of permanently failed jobs
- ``jobs:job:<id>``              hash with the payload and bookkeeping
- ``jobs:singleton:<name>:<key>`` dedup marker, ``SET NX EX <singleton_seconds>``

A job leaves ``active`` only when the worker completes, retries or fails it.
If the worker dies first, ``recover_stalled`` puts it back after the visibility
timeout, so a job may run twice but is never dropped.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from redis.asyncio import Redis
from redis.exceptions import WatchError

logger = logging.getLogger(__name__)

DEFAULT_SINGLETON_SECONDS = 60


class QueueNotFoundError(Exception):
    pass


@dataclass
class Job:
    id: str
    queue: str
    data: dict[str, Any]
    attempts: int
    retry_limit: int
    singleton_key: Optional[str] = None
    created_at: float = field(default=0.0)

    @property
    def retries_left(self) -> int:
        return max(self.retry_limit - self.attempts + 1, 0)


class RedisJobQueue:
    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str = "jobs",
        retry_limit: int = 5,
        retry_delay: int = 30,
        retention_seconds: int = 7 * 24 * 60 * 60,
    ):
        self.redis = redis
        self.prefix = prefix
        self.retry_limit = retry_limit
        self.retry_delay = retry_delay
        self.retention_seconds = retention_seconds

    # --- Keys ---

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix,) + parts)

    def _list(self, name: str, state: str) -> str:
        return self._key("queue", name, state)

    def _job(self, job_id: str) -> str:
        return self._key("job", job_id)

    # --- Queue management ---

    async def create_queue(self, name: str) -> None:
        await self.redis.sadd(self._key("queues"), name)

    async def queue_exists(self, name: str) -> bool:
        return bool(await self.redis.sismember(self._key("queues"), name))

    async def size(self, name: str, state: str = "pending") -> int:
        if state == "delayed":
            return await self.redis.zcard(self._list(name, state))
        return await self.redis.llen(self._list(name, state))

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        raw = await self.redis.hgetall(self._job(job_id))
        if not raw:
            return None
        raw["data"] = json.loads(raw["data"])
        return raw

    # --- Producer side ---

    async def send(
        self,
        name: str,
        payload: Optional[dict[str, Any]] = None,
        *,
        singleton_key: Optional[str] = None,
        singleton_seconds: Optional[int] = None,
        retry_limit: Optional[int] = None,
    ) -> Optional[str]:
        """
        Enqueues a job and returns its id.
        Returns None when a job with the same singleton key was accepted inside the window.
        """
        if not await self.queue_exists(name):
            raise QueueNotFoundError(f"Queue '{name}' does not exist")

        job_id = uuid.uuid4().hex
        singleton_redis_key = None
        if singleton_key:
            singleton_redis_key = self._key("singleton", name, singleton_key)
            acquired = await self.redis.set(
                singleton_redis_key, job_id, nx=True, ex=singleton_seconds or DEFAULT_SINGLETON_SECONDS
            )
            if not acquired:
                logger.debug(f"Job for '{name}' with singleton key '{singleton_key}' already queued. Skipping.")
                return None

        record = {
            "queue": name,
            "data": json.dumps(payload or {}),
            "state": "pending",
            "attempts": 0,
            "retry_limit": self.retry_limit if retry_limit is None else retry_limit,
            "singleton_key": singleton_key or "",
            "created_at": time.time(),
        }
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._job(job_id), mapping=record)
                pipe.lpush(self._list(name, "pending"), job_id)
                await pipe.execute()
        except Exception:
            # Give the slot back, otherwise the key would block re-sends for the whole window
            if singleton_redis_key:
                await self.redis.delete(singleton_redis_key)
            raise

        logger.debug(f"Job {job_id} queued on '{name}'.")
        return job_id

    # --- Consumer side ---

    async def fetch(self, name: str, batch_size: int = 1) -> list[Job]:
        await self._promote_delayed(name)

        jobs: list[Job] = []
        for _ in range(batch_size):
            job_id = await self.redis.lmove(
                self._list(name, "pending"), self._list(name, "active"), "RIGHT", "LEFT"
            )
            if job_id is None:
                break

            raw = await self.redis.hgetall(self._job(job_id))
            if not raw:
                logger.warning(f"Job {job_id} on '{name}' has no record. Dropping the orphaned id.")
                await self.redis.lrem(self._list(name, "active"), 0, job_id)
                continue

            attempts = int(raw.get("attempts", 0)) + 1
            await self.redis.hset(
                self._job(job_id),
                mapping={"state": "active", "attempts": attempts, "started_at": time.time()},
            )
            jobs.append(Job(
                id=job_id,
                queue=name,
                data=json.loads(raw["data"]),
                attempts=attempts,
                retry_limit=int(raw.get("retry_limit", self.retry_limit)),
                singleton_key=raw.get("singleton_key") or None,
                created_at=float(raw.get("created_at", 0)),
            ))
        return jobs

    async def complete(self, job: Job, output: Optional[dict[str, Any]] = None) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._list(job.queue, "active"), 1, job.id)
            pipe.hset(self._job(job.id), mapping={
                "state": "completed",
                "completed_at": time.time(),
                "output": json.dumps(output or {}, default=str),
            })
            pipe.expire(self._job(job.id), self.retention_seconds)
            await pipe.execute()

    async def retry(self, job: Job, error: str, delay: Optional[int] = None) -> bool:
        """
        Schedules another attempt with exponential backoff.
        Falls through to ``fail`` (and returns False) once retries are used up.
        """
        if job.attempts > job.retry_limit:
            await self.fail(job, error)
            return False

        base_delay = self.retry_delay if delay is None else delay
        due = time.time() + base_delay * (2 ** (job.attempts - 1))
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._list(job.queue, "active"), 1, job.id)
            pipe.hset(self._job(job.id), mapping={"state": "retry", "last_error": error[:2000]})
            pipe.zadd(self._list(job.queue, "delayed"), {job.id: due})
            await pipe.execute()
        return True

    async def fail(self, job: Job, error: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._list(job.queue, "active"), 1, job.id)
            pipe.hset(self._job(job.id), mapping={
                "state": "failed",
                "failed_at": time.time(),
                "last_error": error[:2000],
            })
            pipe.lpush(self._list(job.queue, "failed"), job.id)
            await pipe.execute()

    async def recover_stalled(self, name: str, visibility_timeout: int) -> int:
        """Moves jobs that sat in ``active`` longer than the timeout back to ``pending``."""
        now = time.time()
        recovered = 0
        for job_id in await self.redis.lrange(self._list(name, "active"), 0, -1):
            job_key = self._job(job_id)
            async with self.redis.pipeline(transaction=True) as pipe:
                # A complete/retry/fail on this job between the read and the move aborts the move
                await pipe.watch(job_key)
                state, started_at = await pipe.hmget(job_key, "state", "started_at")
                if state != "active" or started_at is None or now - float(started_at) <= visibility_timeout:
                    await pipe.unwatch()
                    continue

                pipe.multi()
                pipe.lrem(self._list(name, "active"), 1, job_id)
                pipe.lpush(self._list(name, "pending"), job_id)
                pipe.hset(job_key, "state", "pending")
                try:
                    await pipe.execute()
                except WatchError:
                    logger.info(f"Job {job_id} on '{name}' was acked while being recovered. Leaving it.")
                    continue
            recovered += 1

        if recovered:
            logger.warning(f"Recovered {recovered} stalled job(s) on '{name}'.")
        return recovered

    async def _promote_delayed(self, name: str) -> None:
        delayed_key = self._list(name, "delayed")
        for job_id in await self.redis.zrangebyscore(delayed_key, "-inf", time.time()):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zrem(delayed_key, job_id)
                pipe.lpush(self._list(name, "pending"), job_id)
                removed, _ = await pipe.execute()
            if not removed:
                # Another worker promoted it first
                await self.redis.lrem(self._list(name, "pending"), 1, job_id)
