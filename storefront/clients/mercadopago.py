# storefront/clients/mercadopago.py

import httpx
import logging

from storefront.core.config import settings
from storefront.core.exceptions import TransientStoreError, ValidationError

logger = logging.getLogger(__name__)


class MercadoPagoClient:
    """
    Async client for the MercadoPago REST API.
    Only what the reconciler needs: fetching the full payment behind a webhook.
    """
    def __init__(self, base_url: str, access_token: str):
        timeouts = httpx.Timeout(10.0, read=30.0)
        self.async_client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=timeouts,
        )

    async def get_payment(self, payment_id: str) -> dict:
        """
        GET /v1/payments/{id}.
        Network errors, 429 and 5xx raise TransientStoreError; other 4xx raise ValidationError.
        """
        try:
            response = await self.async_client.get(f"/v1/payments/{payment_id}")
            response.raise_for_status()
            return response.json()
        except httpx.RequestError as e:
            logger.error(f"Network error during GET request to {e.request.url!r}.", exc_info=True)
            raise TransientStoreError(f"MercadoPago unreachable: {e}", payment_id=payment_id) from e
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error during GET request to {e.request.url!r}: {e.response.text}")
            if e.response.status_code == 429 or e.response.status_code >= 500:
                raise TransientStoreError(
                    f"MercadoPago returned {e.response.status_code}", payment_id=payment_id
                ) from e
            raise ValidationError(
                f"MercadoPago rejected payment lookup ({e.response.status_code})", payment_id=payment_id
            ) from e

    async def close(self):
        await self.async_client.aclose()


mp_client = MercadoPagoClient(
    base_url=settings.MERCADOPAGO_API_URL,
    access_token=settings.MERCADOPAGO_ACCESS_TOKEN,
)
