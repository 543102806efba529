# storefront/routers/v1/endpoints/discount_codes.py

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from storefront.dependencies import get_db
from storefront.schemas.discount_code import (
    AppliedDiscount, ApplyDiscountCodeRequest, DiscountCodeValidateRequest, RedemptionResult,
)
from storefront.services import discount_ledger

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/discount-codes/validate", response_model=RedemptionResult)
def validate_discount_code(request_data: DiscountCodeValidateRequest, db: Session = Depends(get_db)):
    """
    Preview for the checkout form: would this code apply to this subtotal, and for how much.
    Does not consume a use.
    """
    return discount_ledger.validate_code(db, request_data.code, request_data.subtotal)


@router.post("/orders/{order_id}/discount-code", response_model=AppliedDiscount)
def apply_discount_code(order_id: int, request_data: ApplyDiscountCodeRequest, db: Session = Depends(get_db)):
    """
    Redeems the code against the order. A rejection comes back with
    ``redemption.success = false`` and the specific reason.
    """
    return discount_ledger.apply_to_order(db, order_id, request_data.code)
