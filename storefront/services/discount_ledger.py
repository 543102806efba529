# storefront/services/discount_ledger.py
"""
Discount-code ledger.

``used_count`` never goes past ``max_uses``. Redemption is one conditional
UPDATE (see ``crud.discount_code.try_increment_usage``): with any number of
concurrent callers on the last slot, exactly one of them gets a row back.
Nothing here commits. The caller owns the transaction.
"""

import logging
import secrets
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.core.exceptions import ConflictError, OrderNotFoundError, PermanentEntityError, ValidationError
from storefront.core.timeutils import as_utc, end_of_day_in_days, utcnow
from storefront.crud import discount_code as discount_code_crud
from storefront.crud import order as order_crud
from storefront.models.discount_code import DiscountCode
from storefront.models.lead import Lead
from storefront.models.order import Order
from storefront.models.status import AmountType, CodeType, OrderStatus
from storefront.schemas.discount_code import AppliedDiscount, RedemptionResult, RejectionReason

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
# No 0/O, 1/I/L: codes get typed by hand
RESERVATION_CODE_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
RESERVATION_CODE_LENGTH = 10
_MAX_CODE_ATTEMPTS = 10


def to_money(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def compute_discount(discount_code: DiscountCode, purchase_amount) -> Decimal:
    """Percentage or fixed amount, never more than the purchase, rounded half-up to cents."""
    amount = to_money(purchase_amount)
    value = to_money(discount_code.discount_value)
    if discount_code.discount_type == AmountType.PERCENTAGE:
        raw = amount * value / Decimal(100)
    else:
        raw = value
    return min(raw, amount).quantize(CENTS, rounding=ROUND_HALF_UP)


def diagnose(discount_code: DiscountCode, purchase_amount: Decimal, now: datetime) -> Optional[RejectionReason]:
    """Reason this code cannot be redeemed right now, or None if it can."""
    valid_from = as_utc(discount_code.valid_from)
    valid_until = as_utc(discount_code.valid_until)
    is_exhausted = discount_code.max_uses is not None and discount_code.used_count >= discount_code.max_uses
    is_expired = valid_until is not None and now > valid_until

    if not discount_code.is_active:
        # Report the cause when the ledger or the settlement deactivated it
        if is_exhausted:
            return RejectionReason.EXHAUSTED
        if is_expired:
            return RejectionReason.EXPIRED
        return RejectionReason.INACTIVE
    if is_expired:
        return RejectionReason.EXPIRED
    if valid_from is not None and now < valid_from:
        return RejectionReason.NOT_YET_VALID
    if discount_code.min_purchase is not None and purchase_amount < to_money(discount_code.min_purchase):
        return RejectionReason.BELOW_MINIMUM
    if is_exhausted:
        return RejectionReason.EXHAUSTED
    return None


def _reject(code: str, reason: RejectionReason, discount_code: Optional[DiscountCode] = None) -> RedemptionResult:
    min_purchase = discount_code.min_purchase if discount_code is not None else None
    return RedemptionResult.rejected(code, reason, min_purchase=min_purchase)


def validate_code(db: Session, code: str, purchase_amount, now: Optional[datetime] = None) -> RedemptionResult:
    """Read-only preview for the checkout form. Does not consume a use."""
    now = now or utcnow()
    normalized = discount_code_crud.normalize_code(code)
    amount = to_money(purchase_amount)

    discount_code = discount_code_crud.get_by_code(db, normalized)
    if discount_code is None:
        return _reject(normalized, RejectionReason.NOT_FOUND)

    reason = diagnose(discount_code, amount, now)
    if reason is not None:
        return _reject(normalized, reason, discount_code)
    return RedemptionResult.accepted(normalized, discount_code.id, compute_discount(discount_code, amount))


def try_redeem(db: Session, code: str, purchase_amount, now: Optional[datetime] = None) -> RedemptionResult:
    """
    Consumes one use of ``code`` for a purchase of ``purchase_amount``.

    Returns a rejected result with a specific reason when the code cannot be used.
    Raises ConflictError if the conditional update lost a race and a re-read still
    finds nothing wrong with the code. Does not commit.
    """
    now = now or utcnow()
    normalized = discount_code_crud.normalize_code(code)
    amount = to_money(purchase_amount)
    if amount < 0:
        raise ValidationError("Purchase amount must not be negative", purchase_amount=str(amount))

    discount_code = discount_code_crud.get_by_code(db, normalized)
    if discount_code is None:
        return _reject(normalized, RejectionReason.NOT_FOUND)

    reason = diagnose(discount_code, amount, now)
    if reason is not None:
        return _reject(normalized, reason, discount_code)

    if not discount_code_crud.try_increment_usage(db, discount_code.id, now=now, purchase_amount=amount):
        # Lost the race: re-read and tell the customer why
        db.expire(discount_code)
        reason = diagnose(discount_code, amount, now)
        if reason is not None:
            logger.info(f"Redemption of '{normalized}' lost a race: {reason.value}.")
            return _reject(normalized, reason, discount_code)
        raise ConflictError(f"Concurrent update on discount code '{normalized}'", discount_code_id=discount_code.id)

    db.expire(discount_code)
    logger.info(f"Discount code '{normalized}' redeemed for amount {amount}.")
    return RedemptionResult.accepted(normalized, discount_code.id, compute_discount(discount_code, amount))


def apply_to_order(db: Session, order_id: int, code: str, now: Optional[datetime] = None) -> AppliedDiscount:
    """Checkout: redeems the code against the order subtotal and commits both together."""
    order = order_crud.get(db, order_id, for_update=True)
    if order is None:
        raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id)
    if order.status not in (OrderStatus.PENDING, OrderStatus.AWAITING_PAYMENT):
        raise ValidationError(f"Order {order_id} is {order.status.value}; discounts can no longer be applied")
    if order.discount_code_id is not None:
        raise ValidationError(f"Order {order_id} already has a discount code")

    subtotal = to_money(order.subtotal)
    result = try_redeem(db, code, subtotal, now=now)
    if not result.success:
        db.rollback()
        return AppliedDiscount(
            order_id=order_id, subtotal=subtotal, discount=Decimal("0.00"), total=subtotal, redemption=result
        )

    order.discount_code_id = result.discount_code_id
    order.discount = result.discount_amount
    order.total = subtotal - result.discount_amount
    order.discount_usage_recorded = True
    db.commit()
    db.refresh(order)
    return AppliedDiscount(
        order_id=order.id,
        subtotal=to_money(order.subtotal),
        discount=to_money(order.discount),
        total=to_money(order.total),
        redemption=result,
    )


def record_usage_for_order(db: Session, order: Order) -> bool:
    """
    Attributes the order's code usage on payment when checkout did not record it.
    Validity is not re-checked (the code was valid when the customer applied it),
    max_uses is. The order is flagged either way so a replay does nothing.
    """
    if order.discount_code_id is None or order.discount_usage_recorded:
        return False

    recorded = discount_code_crud.try_increment_usage(db, order.discount_code_id)
    if not recorded:
        logger.warning(
            f"Discount code {order.discount_code_id} reached max_uses before order {order.id} was paid. "
            f"Usage not recorded."
        )
    order.discount_usage_recorded = True
    return recorded


def _generate_unique_code(db: Session) -> str:
    for _ in range(_MAX_CODE_ATTEMPTS):
        candidate = "".join(secrets.choice(RESERVATION_CODE_ALPHABET) for _ in range(RESERVATION_CODE_LENGTH))
        if not discount_code_crud.code_exists(db, candidate):
            return candidate
    raise ConflictError("Could not generate a unique reservation code")


def create_lead_reservation_code(db: Session, lead_id: int, now: Optional[datetime] = None) -> DiscountCode:
    """
    Single-use code for a lead, valid until the end of the day LEAD_DISCOUNT_VALID_DAYS ahead.
    A still-usable code from an earlier notice is handed out again. Does not commit.
    """
    now = now or utcnow()
    lead = db.query(Lead).filter(Lead.id == lead_id).first()
    if lead is None:
        raise PermanentEntityError(f"Lead {lead_id} not found", lead_id=lead_id)

    if lead.reservation_code_id is not None:
        existing = discount_code_crud.get(db, lead.reservation_code_id)
        if existing is not None and diagnose(existing, Decimal(0), now) is None:
            logger.info(f"Reusing reservation code {existing.code} for lead {lead.id}.")
            return existing

    discount_code = discount_code_crud.create(
        db,
        code=_generate_unique_code(db),
        code_type=CodeType.LEAD_RESERVATION,
        discount_type=AmountType(settings.LEAD_DISCOUNT_TYPE),
        discount_value=to_money(settings.LEAD_DISCOUNT_VALUE),
        max_uses=1,
        used_count=0,
        is_active=True,
        valid_from=now,
        valid_until=end_of_day_in_days(settings.LEAD_DISCOUNT_VALID_DAYS, now),
    )
    db.flush()
    lead.reservation_code_id = discount_code.id
    logger.info(f"Generated reservation code {discount_code.code} for lead {lead.id}.")
    return discount_code
