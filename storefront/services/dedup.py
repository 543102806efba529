# storefront/services/dedup.py
"""
Dedup/singleton gate.

Every job that must not run twice for the same entity goes through
``send_once`` with a policy built here. The queue collapses sends that share a
key inside ``window_seconds`` into the job that was accepted first.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from storefront.core.config import settings
from storefront.jobs.queue import RedisJobQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DedupPolicy:
    key: str
    window_seconds: int


def settle_key(domain: str, entity_id: int | str) -> str:
    return f"{domain}-settle:{entity_id}"


def discount_code_settlement(discount_code_id: int) -> DedupPolicy:
    # The window covers a full scheduling period so overlapping scans collapse
    return DedupPolicy(
        key=settle_key("discount-code", discount_code_id),
        window_seconds=settings.JOB_DISCOUNT_CODE_SETTLE_SINGLETON_SECONDS,
    )


def discount_code_scan_followup(after_id: int) -> DedupPolicy:
    return DedupPolicy(
        key=f"discount-code-scan:after:{after_id}",
        window_seconds=settings.JOB_DISCOUNT_CODE_SCAN_FOLLOWUP_SINGLETON_SECONDS,
    )


def lead_notification(lead_id: int) -> DedupPolicy:
    return DedupPolicy(
        key=f"lead-notification:{lead_id}",
        window_seconds=settings.JOB_LEAD_NOTIFICATION_SINGLETON_SECONDS,
    )


def order_paid_notification(lead_id: int, order_id: int) -> DedupPolicy:
    return DedupPolicy(
        key=f"lead-notification:{lead_id}:order-paid:{order_id}",
        window_seconds=settings.JOB_LEAD_NOTIFICATION_SINGLETON_SECONDS,
    )


def cron_tick(queue_name: str, fired_at: datetime) -> DedupPolicy:
    """One cron fire per minute slot, however many processes run a scheduler."""
    return DedupPolicy(key=f"cron:{queue_name}:{fired_at:%Y%m%d%H%M}", window_seconds=120)


async def send_once(
    queue: RedisJobQueue,
    queue_name: str,
    payload: BaseModel,
    policy: DedupPolicy,
) -> Optional[str]:
    """Returns the new job id, or None if an equivalent job is already inside the window."""
    job_id = await queue.send(
        queue_name,
        payload.model_dump(mode="json"),
        singleton_key=policy.key,
        singleton_seconds=policy.window_seconds,
    )
    if job_id is None:
        logger.info(f"Job '{policy.key}' on '{queue_name}' is already queued. Deduplicated.")
    return job_id
