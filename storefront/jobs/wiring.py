# storefront/jobs/wiring.py

from sqlalchemy.orm import sessionmaker

from storefront.core.config import settings
from storefront.jobs import discount_code_expiration, lead_notification
from storefront.jobs.queue import RedisJobQueue
from storefront.jobs.registry import JobRegistry
from storefront.jobs.scheduler import CronJobScheduler


def build_registry(queue: RedisJobQueue, store: sessionmaker) -> JobRegistry:
    """Every queue this service consumes, with its handler."""
    registry = JobRegistry(
        queue,
        store,
        poll_interval=settings.WORKER_POLL_INTERVAL_SECONDS,
        visibility_timeout=settings.JOB_VISIBILITY_TIMEOUT_SECONDS,
    )
    discount_code_expiration.register(registry)
    lead_notification.register(registry)
    return registry


def build_scheduler(queue: RedisJobQueue) -> CronJobScheduler:
    scheduler = CronJobScheduler(queue)
    discount_code_expiration.schedule(scheduler)
    return scheduler
