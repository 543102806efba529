# storefront/schemas/webhook.py

from typing import Optional
from pydantic import BaseModel, ConfigDict, model_validator


class WebhookData(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: str
    external_reference: Optional[str] = None


class MercadoPagoNotification(BaseModel):
    """Body of a MercadoPago webhook. Only ``type`` and ``data.id`` matter to us."""
    model_config = ConfigDict(extra="allow")

    type: str = ""
    # Legacy IPN notifications send ``topic`` instead of ``type``
    topic: Optional[str] = None
    data: Optional[WebhookData] = None
    external_reference: Optional[str] = None

    @model_validator(mode="after")
    def normalize_type(self):
        self.type = (self.type or self.topic or "").strip().lower()
        if self.type == "payment" and self.data is None:
            raise ValueError("payment notification without data.id")
        return self


class WebhookAck(BaseModel):
    status: str
    order_id: Optional[int] = None
    payment_status: Optional[str] = None
    order_status: Optional[str] = None
