# storefront/routers/v1/endpoints/admin/leads.py

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import sessionmaker

from storefront.dependencies import get_job_queue, get_session_factory
from storefront.jobs import lead_notification
from storefront.jobs.queue import RedisJobQueue
from storefront.schemas.admin import LeadNotifyRequest, LeadNotifyResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/notify", response_model=LeadNotifyResponse)
async def notify_leads_endpoint(
    request_data: LeadNotifyRequest,
    queue: RedisJobQueue = Depends(get_job_queue),
    store: sessionmaker = Depends(get_session_factory),
):
    """
    [ADMIN] Queues the availability notice for the given leads,
    or for every lead that has not been notified yet.
    """
    if not request_data.lead_ids:
        return await lead_notification.enqueue_pending_leads(store, queue, limit=request_data.limit)

    queued = 0
    for lead_id in request_data.lead_ids:
        if await lead_notification.enqueue_availability(queue, lead_id):
            queued += 1
    logger.info(f"Admin queued availability notices for {queued} of {len(request_data.lead_ids)} lead(s).")
    return LeadNotifyResponse(
        pending=len(request_data.lead_ids), queued=queued, deduplicated=len(request_data.lead_ids) - queued
    )
