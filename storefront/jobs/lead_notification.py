# storefront/jobs/lead_notification.py

import asyncio
import html
import logging
from datetime import datetime
from typing import Optional, Union

from sqlalchemy.orm import Session, sessionmaker

from storefront.clients.email import EmailClient, email_client
from storefront.core.config import settings
from storefront.core.exceptions import PermanentEntityError
from storefront.core.timeutils import as_utc, store_tz, utcnow
from storefront.crud import lead as lead_crud
from storefront.crud import order as order_crud
from storefront.jobs.queue import RedisJobQueue
from storefront.jobs.registry import JobRegistry, JobResult, run_in_session
from storefront.schemas.jobs import JOB_LEAD_NOTIFICATION, LeadAvailabilityPayload, OrderPaidNoticePayload
from storefront.services import dedup
from storefront.services.discount_ledger import create_lead_reservation_code

logger = logging.getLogger(__name__)


# --- Email bodies ---

def _availability_email(name: Optional[str], code: str, valid_until: datetime) -> tuple[str, str]:
    local_until = as_utc(valid_until).astimezone(store_tz()).strftime("%d/%m/%Y")
    greeting = f"Hi {html.escape(name)}," if name else "Hi,"
    body = (
        f"<p>{greeting}</p>"
        f"<p>The product you were waiting for is available again.</p>"
        f"<p>Your reservation code: <b>{code}</b> (single use, valid until {local_until}).</p>"
        f"<p><a href='{settings.FRONTEND_URL}'>Go to the store</a></p>"
    )
    return "It's back in stock: your reservation code", body


def _order_paid_email(name: Optional[str], order_id: int, total, currency: str) -> tuple[str, str]:
    greeting = f"Hi {html.escape(name)}," if name else "Hi,"
    body = (
        f"<p>{greeting}</p>"
        f"<p>We received the payment for order <b>#{order_id}</b> ({total} {currency}).</p>"
        f"<p>We will let you know when it ships.</p>"
    )
    return f"Order #{order_id} confirmed", body


# --- Availability ---

def _prepare_availability(db: Session, lead_id: int, now: datetime) -> Optional[dict]:
    lead = lead_crud.get(db, lead_id)
    if lead is None:
        return None
    discount_code = create_lead_reservation_code(db, lead_id, now=now)
    db.commit()
    return {
        "email": lead.email,
        "name": lead.name,
        "code": discount_code.code,
        "valid_until": discount_code.valid_until,
    }


def _mark_notified(db: Session, lead_id: int, now: datetime) -> None:
    lead_crud.mark_notified(db, lead_id, now)
    db.commit()


async def notify_availability(
    store: sessionmaker, lead_id: int, *, mailer: EmailClient = email_client, now: Optional[datetime] = None
) -> JobResult:
    """Reservation code + availability email, then the lead is marked notified."""
    now = now or utcnow()
    prepared = await run_in_session(store, _prepare_availability, lead_id, now)
    if prepared is None:
        logger.warning(f"Lead {lead_id} not found. Skipping availability notification.")
        return JobResult.completed(status="not_found", lead_id=lead_id)

    subject, body = _availability_email(prepared["name"], prepared["code"], prepared["valid_until"])
    message_id = await mailer.send(prepared["email"], subject, body)
    await run_in_session(store, _mark_notified, lead_id, now)

    logger.info(f"Availability notification sent to lead {lead_id} with code {prepared['code']}.")
    return JobResult.completed(status="sent", lead_id=lead_id, code=prepared["code"], message_id=message_id)


# --- Order paid ---

def _load_order_paid(db: Session, order_id: int, lead_id: int) -> dict:
    order = order_crud.get(db, order_id)
    if order is None or order.lead_id != lead_id or order.lead is None:
        raise PermanentEntityError(f"Order {order_id} has no lead {lead_id}", order_id=order_id, lead_id=lead_id)
    return {
        "email": order.lead.email,
        "name": order.lead.name,
        "total": order.total,
        "currency": order.currency,
    }


async def notify_order_paid(
    store: sessionmaker, lead_id: int, order_id: int, *, mailer: EmailClient = email_client
) -> JobResult:
    loaded = await run_in_session(store, _load_order_paid, order_id, lead_id)
    subject, body = _order_paid_email(loaded["name"], order_id, loaded["total"], loaded["currency"])
    message_id = await mailer.send(loaded["email"], subject, body)
    logger.info(f"Order-paid notification for order {order_id} sent to lead {lead_id}.")
    return JobResult.completed(status="sent", lead_id=lead_id, order_id=order_id, message_id=message_id)


async def handle_lead_notification(
    payload: Union[LeadAvailabilityPayload, OrderPaidNoticePayload],
    store: sessionmaker,
    queue: RedisJobQueue,
) -> JobResult:
    if isinstance(payload, OrderPaidNoticePayload):
        result = await notify_order_paid(store, payload.lead_id, payload.order_id)
    else:
        result = await notify_availability(store, payload.lead_id)

    # Spacing between emails for the provider's rate limit
    if settings.JOB_LEAD_NOTIFICATION_DELAY_SECONDS > 0:
        await asyncio.sleep(settings.JOB_LEAD_NOTIFICATION_DELAY_SECONDS)
    return result


# --- Producers ---

async def enqueue_availability(queue: RedisJobQueue, lead_id: int) -> Optional[str]:
    return await dedup.send_once(
        queue, JOB_LEAD_NOTIFICATION, LeadAvailabilityPayload(lead_id=lead_id), dedup.lead_notification(lead_id)
    )


def _pending_lead_ids(db: Session, limit: int) -> list[int]:
    return [lead.id for lead in lead_crud.get_pending_notification(db, limit=limit)]


async def enqueue_pending_leads(store: sessionmaker, queue: RedisJobQueue, limit: int = 500) -> dict:
    """Queues an availability notice for every lead that has not been notified yet."""
    lead_ids = await run_in_session(store, _pending_lead_ids, limit)
    queued = deduplicated = 0
    for lead_id in lead_ids:
        if await enqueue_availability(queue, lead_id):
            queued += 1
        else:
            deduplicated += 1
    logger.info(f"Lead notifications: {queued} queued, {deduplicated} already queued, {len(lead_ids)} pending.")
    return {"pending": len(lead_ids), "queued": queued, "deduplicated": deduplicated}


def register(registry: JobRegistry) -> None:
    registry.register(
        JOB_LEAD_NOTIFICATION,
        handle_lead_notification,
        payload_kinds=("lead.availability", "lead.order_paid"),
        batch_size=settings.JOB_LEAD_NOTIFICATION_CONCURRENCY,
    )
