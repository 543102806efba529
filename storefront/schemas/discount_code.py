# storefront/schemas/discount_code.py

import enum
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class RejectionReason(str, enum.Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    NOT_YET_VALID = "not_yet_valid"
    BELOW_MINIMUM = "below_minimum"
    EXHAUSTED = "exhausted"


REJECTION_MESSAGES = {
    RejectionReason.NOT_FOUND: "Discount code not found.",
    RejectionReason.INACTIVE: "This discount code is no longer active.",
    RejectionReason.EXPIRED: "This discount code has expired.",
    RejectionReason.NOT_YET_VALID: "This discount code is not valid yet.",
    RejectionReason.BELOW_MINIMUM: "Minimum purchase of {min_purchase} not reached.",
    RejectionReason.EXHAUSTED: "This discount code has reached its usage limit.",
}


class RedemptionResult(BaseModel):
    """
    Outcome of validating or redeeming a code.
    On rejection ``reason`` and ``message`` tell the customer exactly what went wrong.
    """
    success: bool
    code: str
    discount_amount: Decimal = Decimal("0.00")
    discount_code_id: Optional[int] = None
    reason: Optional[RejectionReason] = None
    message: Optional[str] = None

    @classmethod
    def accepted(cls, code: str, discount_code_id: int, discount_amount: Decimal) -> "RedemptionResult":
        return cls(success=True, code=code, discount_code_id=discount_code_id, discount_amount=discount_amount)

    @classmethod
    def rejected(cls, code: str, reason: RejectionReason, **fmt) -> "RedemptionResult":
        return cls(success=False, code=code, reason=reason, message=REJECTION_MESSAGES[reason].format(**fmt))


class DiscountCodeValidateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    subtotal: Decimal = Field(..., ge=0)


class ApplyDiscountCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


class AppliedDiscount(BaseModel):
    order_id: int
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    redemption: RedemptionResult
