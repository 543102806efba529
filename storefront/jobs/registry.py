# storefront/jobs/registry.py
"""
Job registry and worker loop.

Built once per process with the queue and a session factory. Every handler has
the same shape, ``async (payload, store, queue) -> JobResult``, and gets its
collaborators passed in, never imported.

Outcome policy:

- ``JobResult.completed``                       -> job completed
- ``JobResult.retry`` / ``TransientStoreError`` -> retried with backoff until the retry limit
- ``JobResult.failed`` / ``PermanentEntityError`` / ``ValidationError`` / invalid payload -> failed
- anything else                                 -> logged with traceback, retried
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError as PayloadValidationError
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import sessionmaker

from storefront.core.exceptions import PermanentEntityError, TransientStoreError, ValidationError
from storefront.jobs.queue import Job, RedisJobQueue
from storefront.schemas.jobs import parse_job_payload

logger = logging.getLogger(__name__)

COMPLETED = "completed"
RETRY = "retry"
FAILED = "failed"


@dataclass
class JobResult:
    status: str
    output: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def completed(cls, **output) -> "JobResult":
        return cls(status=COMPLETED, output=output)

    @classmethod
    def retry(cls, error: str) -> "JobResult":
        return cls(status=RETRY, error=error)

    @classmethod
    def failed(cls, error: str) -> "JobResult":
        return cls(status=FAILED, error=error)


Handler = Callable[[Any, sessionmaker, RedisJobQueue], Awaitable[JobResult]]


async def run_in_session(store: sessionmaker, fn: Callable[..., Any], *args, **kwargs) -> Any:
    """
    Runs ``fn(db, *args, **kwargs)`` in a worker thread with a fresh session.
    Database driver errors that ``fn`` lets through become TransientStoreError.
    """
    def _call():
        db = store()
        try:
            return fn(db, *args, **kwargs)
        except DBAPIError as e:
            db.rollback()
            raise TransientStoreError(f"Database error in {fn.__name__}: {e.__class__.__name__}: {e}") from e
        finally:
            db.close()

    return await asyncio.to_thread(_call)


@dataclass(frozen=True)
class WorkerSpec:
    queue_name: str
    handler: Handler
    payload_kinds: tuple[str, ...]
    batch_size: int = 1


class JobRegistry:
    def __init__(
        self,
        queue: RedisJobQueue,
        store: sessionmaker,
        *,
        poll_interval: float = 2.0,
        visibility_timeout: int = 15 * 60,
    ):
        self.queue = queue
        self.store = store
        self.poll_interval = poll_interval
        self.visibility_timeout = visibility_timeout
        self._workers: dict[str, WorkerSpec] = {}

    def register(
        self,
        queue_name: str,
        handler: Handler,
        *,
        payload_kinds: tuple[str, ...],
        batch_size: int = 1,
    ) -> None:
        """``batch_size`` is both the fetch size and how many jobs of this queue run at once."""
        if queue_name in self._workers:
            raise ValueError(f"A handler for '{queue_name}' is already registered")
        self._workers[queue_name] = WorkerSpec(queue_name, handler, tuple(payload_kinds), max(batch_size, 1))
        logger.info(f"Registered handler '{handler.__name__}' for queue '{queue_name}' (batch size {batch_size}).")

    @property
    def queue_names(self) -> list[str]:
        return list(self._workers)

    async def setup(self) -> None:
        for name in self._workers:
            await self.queue.create_queue(name)

    # --- Processing ---

    async def run_once(self, queue_name: str) -> list[JobResult]:
        """Fetches one batch from ``queue_name`` and processes it concurrently."""
        worker = self._workers[queue_name]
        jobs = await self.queue.fetch(queue_name, worker.batch_size)
        if not jobs:
            return []
        return list(await asyncio.gather(*(self._execute(worker, job) for job in jobs)))

    async def _execute(self, worker: WorkerSpec, job: Job) -> JobResult:
        try:
            payload = parse_job_payload(job.data)
            if payload.kind not in worker.payload_kinds:
                raise ValidationError(f"Payload kind '{payload.kind}' does not belong on '{worker.queue_name}'")
        except (PayloadValidationError, ValidationError) as e:
            logger.error(f"Job {job.id} on '{worker.queue_name}' has an invalid payload: {e}")
            result = JobResult.failed(f"invalid payload: {e}")
            await self._acknowledge(job, result)
            return result

        try:
            result = await worker.handler(payload, self.store, self.queue)
        except TransientStoreError as e:
            logger.warning(f"Job {job.id} on '{worker.queue_name}' hit a transient error: {e.message}")
            result = JobResult.retry(e.message)
        except (PermanentEntityError, ValidationError) as e:
            logger.error(f"Job {job.id} on '{worker.queue_name}' failed permanently: {e.message}")
            result = JobResult.failed(e.message)
        except Exception as e:
            logger.error(f"Unexpected error in job {job.id} on '{worker.queue_name}'", exc_info=True)
            result = JobResult.retry(repr(e))

        await self._acknowledge(job, result)
        return result

    async def _acknowledge(self, job: Job, result: JobResult) -> None:
        if result.status == COMPLETED:
            await self.queue.complete(job, result.output)
        elif result.status == RETRY:
            if not await self.queue.retry(job, result.error or "retry requested"):
                logger.error(f"Job {job.id} on '{job.queue}' used up its retries: {result.error}")
                result.status = FAILED
        else:
            await self.queue.fail(job, result.error or "failed")

    async def recover_stalled(self) -> int:
        recovered = 0
        for name in self._workers:
            recovered += await self.queue.recover_stalled(name, self.visibility_timeout)
        return recovered

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll loop. Returns once ``stop_event`` is set and the current batches are done."""
        await self.setup()
        await self.recover_stalled()
        logger.info(f"Worker loop started for queues: {', '.join(self.queue_names)}")

        last_recovery = asyncio.get_running_loop().time()
        while not stop_event.is_set():
            processed = 0
            try:
                for name in self._workers:
                    processed += len(await self.run_once(name))

                now = asyncio.get_running_loop().time()
                if now - last_recovery >= self.visibility_timeout / 2:
                    await self.recover_stalled()
                    last_recovery = now
            except Exception:
                logger.error("Worker loop iteration failed", exc_info=True)

            if not processed:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

        logger.info("Worker loop stopped.")
