# storefront/routers/webhooks.py

import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from storefront.clients.mercadopago import MercadoPagoClient
from storefront.core.config import settings
from storefront.core.exceptions import ValidationError
from storefront.dependencies import get_db, get_job_queue, get_payment_gateway
from storefront.jobs.queue import RedisJobQueue
from storefront.schemas.webhook import MercadoPagoNotification, WebhookAck
from storefront.services import reconciler

logger = logging.getLogger(__name__)

router = APIRouter()


def parse_signature_header(x_signature: str) -> tuple[str | None, str | None]:
    """``ts=1704908010,v1=618c85...`` -> (ts, v1)"""
    ts = v1 = None
    for part in x_signature.split(","):
        key, _, value = part.partition("=")
        key, value = key.strip(), value.strip()
        if key == "ts":
            ts = value
        elif key == "v1":
            v1 = value
    return ts, v1


def build_signature_manifest(data_id: str, request_id: str, ts: str) -> str:
    return f"id:{data_id};request-id:{request_id};ts:{ts};"


async def _extract_data_id(request: Request) -> str:
    data_id = request.query_params.get("data.id") or request.query_params.get("id")
    if data_id:
        return data_id
    try:
        body = json.loads(await request.body() or b"{}")
    except ValueError:
        return ""
    data = body.get("data") if isinstance(body, dict) else None
    return str(data.get("id", "")) if isinstance(data, dict) else ""


# --- Signature check for MercadoPago ---
async def verify_mercadopago_signature(
    request: Request,
    x_signature: str | None = Header(None),
    x_request_id: str | None = Header(None),
):
    """
    HMAC-SHA256 over ``id:<data.id>;request-id:<x-request-id>;ts:<ts>;`` with the webhook secret.
    Skipped with a warning when no secret is configured.
    """
    if not settings.MERCADOPAGO_WEBHOOK_SECRET:
        logger.warning("MERCADOPAGO_WEBHOOK_SECRET not configured. Skipping signature verification.")
        return

    if not x_signature or not x_request_id:
        logger.warning("MercadoPago webhook without x-signature / x-request-id headers.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing webhook signature")

    ts, received = parse_signature_header(x_signature)
    if not ts or not received:
        logger.warning(f"Could not extract ts/v1 from x-signature: {x_signature!r}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Malformed webhook signature")

    manifest = build_signature_manifest(await _extract_data_id(request), x_request_id, ts)
    expected = hmac.new(
        settings.MERCADOPAGO_WEBHOOK_SECRET.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256
    ).hexdigest()

    if not hmac.compare_digest(expected, received):
        logger.warning(f"MercadoPago signature mismatch for manifest {manifest!r}.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
    logger.debug("Webhook signature verified successfully.")


@router.post(
    "/mercadopago",
    response_model=WebhookAck,
    dependencies=[Depends(verify_mercadopago_signature)],
)
async def mercadopago_webhook(
    request: Request,
    db: Session = Depends(get_db),
    queue: RedisJobQueue = Depends(get_job_queue),
    gateway: MercadoPagoClient = Depends(get_payment_gateway),
):
    """
    Payment notifications. 200 acknowledges (duplicates and other topics too);
    anything else makes MercadoPago deliver again.
    """
    try:
        notification = MercadoPagoNotification.model_validate(json.loads(await request.body() or b"{}"))
    except (ValueError, PydanticValidationError) as e:
        raise ValidationError(f"Malformed MercadoPago notification: {e}")

    if notification.type != "payment":
        logger.info(f"Ignoring MercadoPago notification of type '{notification.type}'.")
        return WebhookAck(status="ignored")

    logger.info(f"MercadoPago payment notification for payment {notification.data.id}.")
    raw_payment = await gateway.get_payment(notification.data.id)
    event = reconciler.parse_payment(
        raw_payment, external_reference=notification.data.external_reference or notification.external_reference
    )
    result = await reconciler.reconcile_payment(db, queue, event)

    return WebhookAck(
        status=result.outcome,
        order_id=result.order_id,
        payment_status=result.payment_status.value if result.payment_status else None,
        order_status=result.order_status.value if result.order_status else None,
    )
