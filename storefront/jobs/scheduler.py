# storefront/jobs/scheduler.py

import logging
from datetime import datetime
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from storefront.core.timeutils import utcnow
from storefront.jobs.queue import RedisJobQueue
from storefront.services import dedup

logger = logging.getLogger(__name__)


class CronJobScheduler:
    """
    Turns cron expressions into queue sends.
    The scheduler only enqueues; the work itself happens in the worker loop.
    """

    def __init__(self, queue: RedisJobQueue, scheduler: Optional[AsyncIOScheduler] = None):
        self.queue = queue
        self.scheduler = scheduler or AsyncIOScheduler()

    def schedule(self, queue_name: str, cron: str, payload: Optional[dict[str, Any]] = None, *, timezone: str) -> None:
        trigger = CronTrigger.from_crontab(cron, timezone=timezone)
        self.scheduler.add_job(
            self.fire,
            trigger,
            args=[queue_name, payload],
            id=f"cron:{queue_name}",
            replace_existing=True,
            coalesce=True,
            misfire_grace_time=300,
        )
        logger.info(f"Scheduled '{queue_name}' with cron '{cron}' ({timezone}).")

    async def fire(
        self, queue_name: str, payload: Optional[dict[str, Any]] = None, fired_at: Optional[datetime] = None
    ) -> Optional[str]:
        """One send per minute slot: a second scheduler firing the same slot is deduplicated."""
        policy = dedup.cron_tick(queue_name, fired_at or utcnow())
        job_id = await self.queue.send(
            queue_name, payload, singleton_key=policy.key, singleton_seconds=policy.window_seconds
        )
        if job_id:
            logger.info(f"Cron fired for '{queue_name}': job {job_id}.")
        return job_id

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started with background jobs.")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Scheduler shut down.")
