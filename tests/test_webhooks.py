# tests/test_webhooks.py

import hashlib
import hmac
import threading

import pytest
from httpx import AsyncClient

from storefront.core.config import settings
from storefront.core.exceptions import TransientStoreError
from storefront.models.order import Order
from storefront.models.status import OrderStatus
from storefront.routers.webhooks import build_signature_manifest, parse_signature_header
from storefront.services import reconciler

WEBHOOK_URL = "/webhooks/mercadopago"
SECRET = "webhook-secret"


def signed_headers(data_id: str, request_id: str = "req-1", ts: str = "1704908010", secret: str = SECRET) -> dict:
    manifest = build_signature_manifest(data_id, request_id, ts)
    v1 = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return {"x-signature": f"ts={ts},v1={v1}", "x-request-id": request_id}


def notification(payment_id: str = "555") -> dict:
    return {"type": "payment", "action": "payment.updated", "data": {"id": payment_id}}


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "MERCADOPAGO_WEBHOOK_SECRET", SECRET)


def test_parse_signature_header():
    assert parse_signature_header("ts=1704908010, v1=abc") == ("1704908010", "abc")
    assert parse_signature_header("garbage") == (None, None)


# --- Signature ---

async def test_valid_signature_is_accepted(client: AsyncClient, factory, payment_gateway, webhook_secret):
    order = factory.order()
    payment_gateway.get_payment.return_value = {
        "id": 555, "status": "approved", "external_reference": str(order.id), "transaction_amount": 100.0,
    }

    response = await client.post(f"{WEBHOOK_URL}?data.id=555&type=payment", json=notification(), headers=signed_headers("555"))

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["status"] == "applied"
    assert body["order_id"] == order.id
    assert body["order_status"] == "paid"
    payment_gateway.get_payment.assert_awaited_once_with("555")


async def test_signature_uses_body_id_without_query(client, factory, payment_gateway, webhook_secret):
    order = factory.order()
    payment_gateway.get_payment.return_value = {
        "id": 777, "status": "pending", "external_reference": str(order.id),
    }

    response = await client.post(WEBHOOK_URL, json=notification("777"), headers=signed_headers("777"))

    assert response.status_code == 200
    assert response.json()["order_status"] == "awaiting_payment"


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"x-signature": "ts=1704908010", "x-request-id": "req-1"},
        signed_headers("555", secret="someone-else"),
        # Signed for another payment
        signed_headers("556"),
    ],
)
async def test_bad_signature_is_rejected(client, payment_gateway, webhook_secret, headers):
    response = await client.post(f"{WEBHOOK_URL}?data.id=555", json=notification(), headers=headers)

    assert response.status_code == 401
    payment_gateway.get_payment.assert_not_awaited()


async def test_signature_skipped_without_secret(client, factory, payment_gateway):
    order = factory.order()
    payment_gateway.get_payment.return_value = {"id": 555, "status": "approved", "external_reference": str(order.id)}

    response = await client.post(WEBHOOK_URL, json=notification())

    assert response.status_code == 200


# --- Payload handling ---

async def test_other_topics_are_acknowledged_and_ignored(client, payment_gateway):
    response = await client.post(WEBHOOK_URL, json={"type": "merchant_order", "data": {"id": "1"}})

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    payment_gateway.get_payment.assert_not_awaited()


async def test_legacy_topic_notification(client, factory, payment_gateway):
    order = factory.order()
    payment_gateway.get_payment.return_value = {"id": 9, "status": "approved", "external_reference": str(order.id)}

    response = await client.post(WEBHOOK_URL, json={"topic": "payment", "data": {"id": 9}})

    assert response.status_code == 200
    assert response.json()["status"] == "applied"


async def test_malformed_body_is_a_bad_request(client):
    response = await client.post(WEBHOOK_URL, content=b"{not json", headers={"content-type": "application/json"})
    assert response.status_code == 400

    response = await client.post(WEBHOOK_URL, json={"type": "payment"})
    assert response.status_code == 400


async def test_unknown_order_is_not_found(client, payment_gateway):
    payment_gateway.get_payment.return_value = {"id": 555, "status": "approved", "external_reference": "4040"}

    response = await client.post(WEBHOOK_URL, json=notification())

    assert response.status_code == 404


async def test_gateway_outage_asks_for_redelivery(client, payment_gateway):
    payment_gateway.get_payment.side_effect = TransientStoreError("MercadoPago returned 502")

    response = await client.post(WEBHOOK_URL, json=notification())

    assert response.status_code == 503


async def test_duplicate_delivery_is_acknowledged(client, factory, payment_gateway, session_factory):
    order = factory.order()
    payment_gateway.get_payment.return_value = {"id": 555, "status": "approved", "external_reference": str(order.id)}

    first = await client.post(WEBHOOK_URL, json=notification())
    second = await client.post(WEBHOOK_URL, json=notification())

    assert first.json()["status"] == "applied"
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate"
    db = session_factory()
    try:
        assert db.get(Order, order.id).status == OrderStatus.PAID
    finally:
        db.close()


async def test_payment_is_applied_off_the_event_loop(client, factory, payment_gateway, mocker):
    order = factory.order()
    payment_gateway.get_payment.return_value = {"id": 555, "status": "approved", "external_reference": str(order.id)}
    threads = []
    apply = reconciler.apply_payment_event

    def recording_apply(*args, **kwargs):
        threads.append(threading.current_thread())
        return apply(*args, **kwargs)

    mocker.patch.object(reconciler, "apply_payment_event", side_effect=recording_apply)

    response = await client.post(WEBHOOK_URL, json=notification())

    assert response.json()["order_status"] == "paid"
    assert len(threads) == 1
    assert threads[0] is not threading.main_thread()
