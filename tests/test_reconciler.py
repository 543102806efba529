# tests/test_reconciler.py

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from storefront.core.exceptions import OrderNotFoundError, ValidationError
from storefront.models.discount_code import DiscountCode
from storefront.models.influencer import Commission
from storefront.models.order import Order, Payment
from storefront.models.status import CommissionStatus, OrderStatus, PaymentStatus
from storefront.schemas.jobs import JOB_LEAD_NOTIFICATION
from storefront.services import reconciler

logger = logging.getLogger(__name__)


def gateway_payment(order_id, status, payment_id=555, amount="85.00"):
    raw = {"id": payment_id, "status": status, "transaction_amount": float(amount)}
    if order_id is not None:
        raw["external_reference"] = str(order_id)
    return reconciler.parse_payment(raw)


@pytest.fixture
def influencer_order(factory):
    """Order paid with an influencer code: 100.00 - 15% = 85.00, commission 10% of 85.00."""
    influencer = factory.influencer()
    code = factory.influencer_code(influencer, max_uses=10)
    order = factory.order(subtotal="100.00", discount="15.00", discount_code_id=code.id)
    return order, code


# --- Status mapping ---

@pytest.mark.parametrize(
    "raw, expected",
    [
        ("approved", PaymentStatus.APPROVED),
        ("in_process", PaymentStatus.PENDING),
        ("cancelled", PaymentStatus.REJECTED),
        ("charged_back", PaymentStatus.REFUNDED),
        (" Refunded ", PaymentStatus.REFUNDED),
    ],
)
def test_gateway_status_mapping(raw, expected):
    assert reconciler.map_gateway_status(raw) == expected


def test_unknown_gateway_status_is_rejected():
    with pytest.raises(ValidationError):
        reconciler.parse_payment({"id": 1, "status": "teleported"})


def test_payment_without_id_is_rejected():
    with pytest.raises(ValidationError):
        reconciler.parse_payment({"status": "approved"})


# --- Applying events ---

def test_first_approval_pays_the_order_and_records_side_effects(db_session, influencer_order):
    logger.info("--- SCENARIO: first approved event for an influencer order ---")
    order, code = influencer_order

    result = reconciler.apply_payment_event(db_session, gateway_payment(order.id, "approved"))

    assert result.outcome == "applied"
    assert result.became_paid is True
    assert result.order_status == OrderStatus.PAID
    db_session.refresh(order)
    db_session.refresh(code)
    assert order.paid_at is not None
    assert order.discount_usage_recorded is True
    assert code.used_count == 1

    [payment] = db_session.query(Payment).filter(Payment.order_id == order.id).all()
    assert payment.provider_ref == "555"
    assert payment.status == PaymentStatus.APPROVED

    commission = db_session.query(Commission).filter(Commission.order_id == order.id).one()
    assert commission.commission_amount == Decimal("8.50")
    assert commission.status == CommissionStatus.PENDING


def test_replayed_approval_is_a_duplicate_without_side_effects(db_session, influencer_order):
    order, code = influencer_order
    reconciler.apply_payment_event(db_session, gateway_payment(order.id, "approved"))

    replay = reconciler.apply_payment_event(db_session, gateway_payment(order.id, "approved"))

    assert replay.outcome == "duplicate"
    assert replay.became_paid is False
    db_session.refresh(code)
    assert code.used_count == 1
    assert db_session.query(Commission).count() == 1


def test_pending_after_approved_is_stale(db_session, factory):
    order = factory.order()
    reconciler.apply_payment_event(db_session, gateway_payment(order.id, "approved"))

    late = reconciler.apply_payment_event(db_session, gateway_payment(order.id, "in_process"))

    assert late.outcome == "stale"
    assert late.order_status == OrderStatus.PAID
    payment = db_session.query(Payment).filter_by(provider_ref="555").one()
    assert payment.status == PaymentStatus.APPROVED


def test_rejected_after_approved_does_not_unpay(db_session, factory):
    order = factory.order()
    reconciler.apply_payment_event(db_session, gateway_payment(order.id, "approved"))

    result = reconciler.apply_payment_event(db_session, gateway_payment(order.id, "rejected"))

    assert result.outcome == "stale"
    db_session.refresh(order)
    assert order.status == OrderStatus.PAID


def test_events_out_of_order_converge(db_session, factory):
    order = factory.order()

    reconciler.apply_payment_event(db_session, gateway_payment(order.id, "pending"))
    db_session.refresh(order)
    assert order.status == OrderStatus.AWAITING_PAYMENT

    reconciler.apply_payment_event(db_session, gateway_payment(order.id, "refunded"))
    reconciler.apply_payment_event(db_session, gateway_payment(order.id, "approved"))

    db_session.refresh(order)
    assert order.status == OrderStatus.CANCELLED
    payment = db_session.query(Payment).filter_by(provider_ref="555").one()
    assert payment.status == PaymentStatus.REFUNDED


def test_refund_after_payment_cancels_unpaid_commission(db_session, influencer_order):
    order, _ = influencer_order
    reconciler.apply_payment_event(db_session, gateway_payment(order.id, "approved"))

    result = reconciler.apply_payment_event(db_session, gateway_payment(order.id, "refunded"))

    assert result.outcome == "applied"
    assert result.order_status == OrderStatus.CANCELLED
    commission = db_session.query(Commission).filter(Commission.order_id == order.id).one()
    assert commission.status == CommissionStatus.CANCELLED


def test_approved_retry_pays_an_order_cancelled_by_rejection(db_session, influencer_order):
    logger.info("--- SCENARIO: card rejected, customer pays again with another card ---")
    order, code = influencer_order

    first = reconciler.apply_payment_event(db_session, gateway_payment(order.id, "rejected", payment_id=1001))
    assert first.order_status == OrderStatus.CANCELLED

    retry = reconciler.apply_payment_event(db_session, gateway_payment(order.id, "approved", payment_id=1002))

    assert retry.outcome == "applied"
    assert retry.became_paid is True
    assert retry.order_status == OrderStatus.PAID
    assert retry.needs_attention is None
    assert db_session.query(Commission).filter(Commission.order_id == order.id).count() == 1
    db_session.refresh(code)
    assert code.used_count == 1


def test_approval_on_refunded_order_is_flagged(db_session, factory):
    order = factory.order()
    reconciler.apply_payment_event(db_session, gateway_payment(order.id, "approved", payment_id=1001))
    reconciler.apply_payment_event(db_session, gateway_payment(order.id, "refunded", payment_id=1001))

    late = reconciler.apply_payment_event(db_session, gateway_payment(order.id, "approved", payment_id=1002))

    assert late.outcome == "applied"
    assert late.order_status == OrderStatus.CANCELLED
    assert late.became_paid is False
    assert "1002" in late.needs_attention
    assert db_session.query(Payment).filter_by(provider_ref="1002").one().status == PaymentStatus.APPROVED


async def test_approval_on_expired_order_alerts_admins(db_session, job_queue, factory, mocker):
    alert = mocker.patch(
        "storefront.bot.services.notification.send_error_to_super_admins", new_callable=AsyncMock
    )
    order = factory.order(status=OrderStatus.EXPIRED)

    result = await reconciler.reconcile_payment(db_session, job_queue, gateway_payment(order.id, "approved"))

    assert result.order_status == OrderStatus.EXPIRED
    alert.assert_awaited_once()
    assert f"order {order.id}" in alert.await_args.args[0]


async def test_reconcile_applies_the_event_off_the_event_loop(db_session, job_queue, factory, mocker):
    order = factory.order()
    threads = []
    apply = reconciler.apply_payment_event

    def recording_apply(*args, **kwargs):
        threads.append(threading.current_thread())
        return apply(*args, **kwargs)

    mocker.patch.object(reconciler, "apply_payment_event", side_effect=recording_apply)

    result = await reconciler.reconcile_payment(db_session, job_queue, gateway_payment(order.id, "approved"))

    assert result.order_status == OrderStatus.PAID
    assert threads and threads[0] is not threading.main_thread()


def test_event_without_placeholder_creates_the_payment(db_session, factory):
    order = factory.order(with_placeholder_payment=False)

    result = reconciler.apply_payment_event(db_session, gateway_payment(order.id, "approved"))

    assert result.outcome == "applied"
    payment = db_session.query(Payment).filter_by(provider_ref="555").one()
    assert payment.order_id == order.id
    assert payment.amount == Decimal("85.00")


def test_event_resolved_through_known_payment(db_session, factory):
    order = factory.order()
    reconciler.apply_payment_event(db_session, gateway_payment(order.id, "pending"))

    # No external_reference this time: the order comes from the payment on file
    result = reconciler.apply_payment_event(db_session, gateway_payment(None, "approved"))

    assert result.order_id == order.id
    assert result.order_status == OrderStatus.PAID


def test_unknown_order(db_session):
    with pytest.raises(OrderNotFoundError):
        reconciler.apply_payment_event(db_session, gateway_payment(9999, "approved"))


def test_unknown_payment_without_reference(db_session):
    with pytest.raises(OrderNotFoundError):
        reconciler.apply_payment_event(db_session, gateway_payment(None, "approved"))


def test_malformed_reference(db_session):
    with pytest.raises(ValidationError):
        reconciler.apply_payment_event(db_session, gateway_payment("order-12", "approved"))


def test_concurrent_deliveries_pay_the_order_once(session_factory, influencer_order):
    logger.info("--- SCENARIO: the same approval delivered twice at the same time ---")
    order, code = influencer_order
    deliveries = 4
    barrier = threading.Barrier(deliveries, timeout=10)

    def deliver(_):
        db = session_factory()
        try:
            barrier.wait()
            return reconciler.apply_payment_event(db, gateway_payment(order.id, "approved"))
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=deliveries) as pool:
        results = list(pool.map(deliver, range(deliveries)))

    assert sum(1 for r in results if r.became_paid) == 1
    assert all(r.order_status == OrderStatus.PAID for r in results)

    db = session_factory()
    try:
        assert db.query(Commission).filter(Commission.order_id == order.id).count() == 1
        assert db.query(Payment).filter(Payment.order_id == order.id).count() == 1
        assert db.get(DiscountCode, code.id).used_count == 1
    finally:
        db.close()


# --- Paid notification ---

async def test_paid_notification_is_queued_once(db_session, job_queue, factory):
    lead = factory.lead()
    order = factory.order(lead_id=lead.id)

    first = await reconciler.reconcile_payment(db_session, job_queue, gateway_payment(order.id, "approved"))
    replay = await reconciler.reconcile_payment(db_session, job_queue, gateway_payment(order.id, "approved"))

    assert first.notification_enqueued is True
    assert replay.outcome == "duplicate"
    assert replay.notification_enqueued is False
    db_session.refresh(order)
    assert order.paid_notification_enqueued_at is not None

    [job] = await job_queue.fetch(JOB_LEAD_NOTIFICATION, batch_size=5)
    assert job.data == {"kind": "lead.order_paid", "lead_id": lead.id, "order_id": order.id}


async def test_paid_notification_retried_when_marker_missing(db_session, job_queue, factory):
    lead = factory.lead()
    order = factory.order(lead_id=lead.id, status=OrderStatus.PAID)

    # Previous delivery committed PAID but crashed before queueing
    assert await reconciler.ensure_paid_notification(db_session, job_queue, order.id) is True
    assert await reconciler.ensure_paid_notification(db_session, job_queue, order.id) is False
    assert await job_queue.size(JOB_LEAD_NOTIFICATION) == 1


async def test_no_notification_without_lead(db_session, job_queue, factory):
    order = factory.order()

    result = await reconciler.reconcile_payment(db_session, job_queue, gateway_payment(order.id, "approved"))

    assert result.notification_enqueued is False
    assert await job_queue.size(JOB_LEAD_NOTIFICATION) == 0
    assert db_session.get(Order, order.id).paid_notification_enqueued_at is None
