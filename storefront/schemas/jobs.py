# storefront/schemas/jobs.py

from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter

# --- Queue names ---
JOB_DISCOUNT_CODE_SCAN = "discount-code.scan-expired"
JOB_DISCOUNT_CODE_SETTLE = "discount-code.settle"
JOB_LEAD_NOTIFICATION = "lead.notify"


class DiscountCodeScanPayload(BaseModel):
    kind: Literal["discount_code.scan"] = "discount_code.scan"
    # Keyset cursor for follow-up runs when the previous batch was full
    after_id: Optional[int] = None


class DiscountCodeSettlePayload(BaseModel):
    kind: Literal["discount_code.settle"] = "discount_code.settle"
    discount_code_id: int = Field(..., gt=0)


class LeadAvailabilityPayload(BaseModel):
    """The product is available again: send the lead a reservation code."""
    kind: Literal["lead.availability"] = "lead.availability"
    lead_id: int = Field(..., gt=0)


class OrderPaidNoticePayload(BaseModel):
    """The lead's order was paid: send the confirmation."""
    kind: Literal["lead.order_paid"] = "lead.order_paid"
    lead_id: int = Field(..., gt=0)
    order_id: int = Field(..., gt=0)


JobPayload = Annotated[
    Union[
        DiscountCodeScanPayload,
        DiscountCodeSettlePayload,
        LeadAvailabilityPayload,
        OrderPaidNoticePayload,
    ],
    Field(discriminator="kind"),
]

job_payload_adapter = TypeAdapter(JobPayload)


def parse_job_payload(data: dict) -> JobPayload:
    """Validates raw queue data. Raises pydantic.ValidationError on a malformed payload."""
    return job_payload_adapter.validate_python(data)
