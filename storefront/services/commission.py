# storefront/services/commission.py

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.orm import Session

from storefront.crud import commission as commission_crud
from storefront.models.discount_code import DiscountCode
from storefront.models.influencer import Commission
from storefront.models.order import Order
from storefront.models.status import AmountType, CodeType, CommissionStatus
from storefront.services.discount_ledger import CENTS, to_money

logger = logging.getLogger(__name__)


def has_commission_config(discount_code: DiscountCode) -> bool:
    return discount_code.commission_type is not None and discount_code.commission_value is not None


def compute_commission(discount_code: DiscountCode, order: Order) -> Decimal:
    """
    percentage: share of the revenue the code brought in (subtotal minus discount).
    fixed: flat amount per order.
    """
    value = to_money(discount_code.commission_value)
    if discount_code.commission_type == AmountType.PERCENTAGE:
        revenue = to_money(order.subtotal) - to_money(order.discount)
        amount = revenue * value / Decimal(100)
    else:
        amount = value
    return max(amount, Decimal(0)).quantize(CENTS, rounding=ROUND_HALF_UP)


def create_for_paid_order(db: Session, order: Order) -> Optional[Commission]:
    """
    Records the influencer's commission for a freshly paid order.
    Idempotent per order. Requires an external db.commit().
    """
    discount_code = order.discount_code
    if discount_code is None or discount_code.code_type != CodeType.INFLUENCER or discount_code.influencer_id is None:
        return None

    existing = commission_crud.get_by_order(db, order.id)
    if existing is not None:
        return existing

    if not has_commission_config(discount_code):
        # Settlement flags the code; the payment itself must still go through
        logger.error(
            f"Discount code {discount_code.id} has no commission configuration. "
            f"No commission recorded for order {order.id}."
        )
        return None

    commission = commission_crud.create(
        db,
        influencer_id=discount_code.influencer_id,
        order_id=order.id,
        discount_code_id=discount_code.id,
        order_total=to_money(order.total),
        discount_amount=to_money(order.discount),
        commission_amount=compute_commission(discount_code, order),
        status=CommissionStatus.PENDING,
    )
    logger.info(
        f"Commission of {commission.commission_amount} recorded for influencer {discount_code.influencer_id} "
        f"(order {order.id})."
    )
    return commission
