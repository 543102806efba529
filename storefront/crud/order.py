# storefront/crud/order.py

from typing import Iterable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from storefront.models.order import Order, Payment
from storefront.models.status import OrderStatus, PaymentStatus


# --- Orders ---

def get(db: Session, order_id: int, *, for_update: bool = False) -> Order | None:
    query = db.query(Order).filter(Order.id == order_id)
    if for_update:
        query = query.with_for_update()
    return query.first()


def compare_and_set_status(
    db: Session, order_id: int, expected: OrderStatus, target: OrderStatus, **extra
) -> bool:
    """
    Moves the order to ``target`` only if it is still in ``expected``.
    Returns False when another writer changed it first.
    """
    result = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == expected)
        .values(status=target, **extra)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# --- Payments ---

def get_payment_by_ref(db: Session, provider_ref: str) -> Payment | None:
    return db.query(Payment).filter(Payment.provider_ref == provider_ref).first()


def get_placeholder_payment(db: Session, order_id: int) -> Payment | None:
    """Payment row created at checkout that no gateway event has claimed yet."""
    return db.query(Payment).filter(
        Payment.order_id == order_id, Payment.provider_ref.is_(None)
    ).order_by(Payment.id).first()


def create_payment(
    db: Session,
    order_id: int,
    provider_ref: Optional[str] = None,
    status: PaymentStatus = PaymentStatus.PENDING,
    amount=None,
    raw_payload: Optional[dict] = None,
) -> Payment:
    """
    Adds a payment to the session. Requires an external db.commit().
    """
    payment = Payment(
        order_id=order_id,
        provider_ref=provider_ref,
        status=status,
        amount=amount,
        raw_payload=raw_payload,
    )
    db.add(payment)
    return payment


def claim_placeholder_payment(db: Session, payment_id: int, provider_ref: str) -> bool:
    result = db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.provider_ref.is_(None))
        .values(provider_ref=provider_ref)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def compare_and_set_payment_status(
    db: Session,
    payment_id: int,
    allowed_current: Iterable[PaymentStatus],
    target: PaymentStatus,
    **extra,
) -> bool:
    """Applies ``target`` only if the row is still in one of ``allowed_current``."""
    result = db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status.in_(list(allowed_current)))
        .values(status=target, **extra)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def has_refunded_payment(db: Session, order_id: int) -> bool:
    return db.query(Payment.id).filter(
        Payment.order_id == order_id, Payment.status == PaymentStatus.REFUNDED
    ).first() is not None
