# storefront/services/reconciler.py
"""
Webhook reconciler.

Gateway events arrive at least once and in any order. Each one is applied in a
single transaction:

1. resolve the order (external_reference, else the payment already on file);
2. find or claim the Payment row for the provider reference;
3. apply the mapped status only if it ranks strictly above the recorded one;
4. drive the order through the transition table;
5. on the first move into PAID, record discount usage and the commission.

An order cancelled by a rejected attempt is paid by a later approved one. Any
other approved payment that cannot move the order is logged as an error and
reported to the admins.

The database work runs in a worker thread. After commit, the "order paid" lead
notification is queued once, tracked by ``Order.paid_notification_enqueued_at``.
"""

import asyncio
import html
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from storefront.bot.services import notification as bot_notification_service
from storefront.core.exceptions import OrderNotFoundError, TransientStoreError, ValidationError
from storefront.core.timeutils import utcnow
from storefront.crud import commission as commission_crud
from storefront.crud import order as order_crud
from storefront.jobs.queue import RedisJobQueue
from storefront.models.order import Order, Payment
from storefront.models.status import (
    OrderStatus, PaymentStatus, next_order_status, payment_supersedes, statuses_below,
)
from storefront.schemas.jobs import JOB_LEAD_NOTIFICATION, OrderPaidNoticePayload
from storefront.services import commission as commission_service
from storefront.services import dedup
from storefront.services import discount_ledger

logger = logging.getLogger(__name__)

GATEWAY_STATUS_MAP: dict[str, PaymentStatus] = {
    "approved": PaymentStatus.APPROVED,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.REJECTED,
    "refunded": PaymentStatus.REFUNDED,
    "charged_back": PaymentStatus.REFUNDED,
    "pending": PaymentStatus.PENDING,
    "in_process": PaymentStatus.PENDING,
    "authorized": PaymentStatus.PENDING,
}


def map_gateway_status(raw_status: Optional[str]) -> PaymentStatus:
    status = GATEWAY_STATUS_MAP.get((raw_status or "").strip().lower())
    if status is None:
        raise ValidationError(f"Unknown gateway payment status: {raw_status!r}", raw_status=raw_status)
    return status


@dataclass(frozen=True)
class PaymentEvent:
    provider_ref: str
    status: PaymentStatus
    raw_status: str
    external_reference: Optional[str]
    amount: Optional[Decimal]
    raw: dict[str, Any]


@dataclass
class ReconcileResult:
    # applied | duplicate | stale
    outcome: str
    order_id: int
    payment_id: Optional[int] = None
    payment_status: Optional[PaymentStatus] = None
    order_status: Optional[OrderStatus] = None
    became_paid: bool = False
    notification_enqueued: bool = False
    # Set when an approved payment could not move the order; admins are alerted
    needs_attention: Optional[str] = None


def parse_payment(raw: dict[str, Any], external_reference: Optional[str] = None) -> PaymentEvent:
    """Normalizes a payment fetched from the gateway. The webhook body may carry the reference too."""
    provider_ref = raw.get("id")
    if provider_ref is None or str(provider_ref).strip() == "":
        raise ValidationError("Gateway payment has no id")

    amount = raw.get("transaction_amount")
    return PaymentEvent(
        provider_ref=str(provider_ref),
        status=map_gateway_status(raw.get("status")),
        raw_status=str(raw.get("status")),
        external_reference=raw.get("external_reference") or external_reference,
        amount=Decimal(str(amount)) if amount is not None else None,
        raw=raw,
    )


def _resolve_order_id(db: Session, event: PaymentEvent) -> int:
    if event.external_reference:
        try:
            return int(str(event.external_reference).strip())
        except ValueError:
            raise ValidationError(
                f"Malformed external_reference {event.external_reference!r}",
                provider_ref=event.provider_ref,
            )

    payment = order_crud.get_payment_by_ref(db, event.provider_ref)
    if payment is not None:
        return payment.order_id
    raise OrderNotFoundError(
        f"Payment {event.provider_ref} carries no order reference and is not on file",
        provider_ref=event.provider_ref,
    )


def _find_or_claim_payment(db: Session, order: Order, event: PaymentEvent) -> tuple[Payment, bool]:
    """Returns the payment row for this provider reference and whether it was claimed or created just now."""
    payment = order_crud.get_payment_by_ref(db, event.provider_ref)
    if payment is not None:
        if payment.order_id != order.id:
            raise ValidationError(
                f"Payment {event.provider_ref} belongs to order {payment.order_id}, not {order.id}",
                provider_ref=event.provider_ref,
            )
        return payment, False

    placeholder = order_crud.get_placeholder_payment(db, order.id)
    if placeholder is not None and order_crud.claim_placeholder_payment(db, placeholder.id, event.provider_ref):
        db.refresh(placeholder)
        return placeholder, True

    payment = order_crud.create_payment(
        db,
        order_id=order.id,
        provider_ref=event.provider_ref,
        status=PaymentStatus.PENDING,
        amount=event.amount,
        raw_payload=event.raw,
    )
    # A concurrent delivery inserting the same provider_ref fails here
    db.flush()
    return payment, True


def _apply(db: Session, event: PaymentEvent, now: datetime) -> ReconcileResult:
    order_id = _resolve_order_id(db, event)
    order = order_crud.get(db, order_id, for_update=True)
    if order is None:
        raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id, provider_ref=event.provider_ref)

    payment, is_new = _find_or_claim_payment(db, order, event)
    recorded = payment.status

    if payment_supersedes(recorded, event.status):
        applied = order_crud.compare_and_set_payment_status(
            db, payment.id, statuses_below(event.status), event.status,
            raw_payload=event.raw, amount=event.amount if event.amount is not None else payment.amount,
        )
        if not applied:
            db.commit()
            db.refresh(order)
            logger.info(f"Payment {event.provider_ref}: a concurrent delivery applied a newer status first.")
            return ReconcileResult(
                outcome="stale", order_id=order.id, payment_id=payment.id, order_status=order.status
            )
    elif not is_new:
        db.rollback()
        outcome = "duplicate" if recorded == event.status else "stale"
        logger.info(
            f"Payment {event.provider_ref}: {event.status.value} does not supersede {recorded.value}. "
            f"Acknowledged without changes ({outcome})."
        )
        order = order_crud.get(db, order_id)
        return ReconcileResult(
            outcome=outcome, order_id=order_id, payment_id=payment.id,
            payment_status=recorded, order_status=order.status if order else None,
        )

    current_order_status = order.status
    target = next_order_status(current_order_status, event.status)
    if (
        target == OrderStatus.PAID
        and current_order_status == OrderStatus.CANCELLED
        and order_crud.has_refunded_payment(db, order.id)
    ):
        target = None

    needs_attention = None
    if target is None and event.status == PaymentStatus.APPROVED:
        needs_attention = (
            f"Payment {event.provider_ref} was approved but order {order.id} is "
            f"{current_order_status.value} and stays that way. Refund or fulfil it by hand."
        )
        logger.error(needs_attention)

    became_paid = False
    if target is not None:
        extra = {"paid_at": now} if target == OrderStatus.PAID else {}
        if not order_crud.compare_and_set_status(db, order.id, current_order_status, target, **extra):
            db.rollback()
            raise TransientStoreError(
                f"Order {order.id} changed while applying payment {event.provider_ref}", order_id=order.id
            )
        db.expire(order)
        logger.info(f"Order {order.id}: {current_order_status.value} -> {target.value} (payment {event.provider_ref}).")

        if target == OrderStatus.PAID:
            became_paid = True
            discount_ledger.record_usage_for_order(db, order)
            commission_service.create_for_paid_order(db, order)
        elif current_order_status == OrderStatus.PAID and target == OrderStatus.CANCELLED:
            cancelled = commission_crud.cancel_for_order(db, order.id)
            if cancelled:
                logger.info(f"Order {order.id} refunded: {cancelled} unpaid commission(s) cancelled.")
    else:
        logger.info(
            f"Order {order.id} stays {current_order_status.value} on payment status {event.status.value}."
        )

    db.commit()
    db.refresh(order)
    return ReconcileResult(
        outcome="applied",
        order_id=order.id,
        payment_id=payment.id,
        payment_status=event.status,
        order_status=order.status,
        became_paid=became_paid,
        needs_attention=needs_attention,
    )


def apply_payment_event(db: Session, event: PaymentEvent, now: Optional[datetime] = None) -> ReconcileResult:
    """
    Applies one gateway event in one transaction.
    A unique-constraint race on the provider reference reruns the event once against the winner's row.
    """
    now = now or utcnow()
    for attempt in (1, 2):
        try:
            return _apply(db, event, now)
        except IntegrityError:
            db.rollback()
            if attempt == 2:
                raise TransientStoreError(
                    f"Payment {event.provider_ref} kept colliding with a concurrent delivery",
                    provider_ref=event.provider_ref,
                )
            logger.info(f"Payment {event.provider_ref} was inserted concurrently. Re-applying the event.")
        except DBAPIError as e:
            db.rollback()
            raise TransientStoreError(f"Database error while applying payment {event.provider_ref}: {e}") from e


def _paid_notice_lead(db: Session, order_id: int) -> Optional[int]:
    """Lead to notify about the order, or None when there is nothing to queue."""
    order = order_crud.get(db, order_id)
    if order is None or order.status != OrderStatus.PAID or order.lead_id is None:
        return None
    if order.paid_notification_enqueued_at is not None:
        return None
    return order.lead_id


def _mark_paid_notice_enqueued(db: Session, order_id: int, now: datetime) -> None:
    order = order_crud.get(db, order_id)
    order.paid_notification_enqueued_at = now
    db.commit()


async def ensure_paid_notification(
    db: Session, queue: RedisJobQueue, order_id: int, now: Optional[datetime] = None
) -> bool:
    """
    Queues the "order paid" notice for the order's lead unless it was queued already.
    Safe to call on every delivery: the marker and the singleton key both guard it.
    Returns True if this call queued a new job.
    """
    lead_id = await asyncio.to_thread(_paid_notice_lead, db, order_id)
    if lead_id is None:
        return False

    policy = dedup.order_paid_notification(lead_id, order_id)
    try:
        job_id = await dedup.send_once(
            queue, JOB_LEAD_NOTIFICATION, OrderPaidNoticePayload(lead_id=lead_id, order_id=order_id), policy
        )
    except RedisError as e:
        raise TransientStoreError(f"Could not queue paid notification for order {order_id}: {e}") from e

    await asyncio.to_thread(_mark_paid_notice_enqueued, db, order_id, now or utcnow())
    return job_id is not None


async def reconcile_payment(db: Session, queue: RedisJobQueue, event: PaymentEvent) -> ReconcileResult:
    """Applies the event off the event loop, then handles the after-commit side effects."""
    result = await asyncio.to_thread(apply_payment_event, db, event)
    if result.needs_attention:
        await bot_notification_service.send_error_to_super_admins(
            f"<b>⚠️ Payment needs attention</b>\n\n{html.escape(result.needs_attention)}"
        )
    if result.order_status == OrderStatus.PAID:
        result.notification_enqueued = await ensure_paid_notification(db, queue, result.order_id)
    return result
