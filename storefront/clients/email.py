# storefront/clients/email.py

import httpx
import logging
from typing import Optional

from storefront.core.config import settings
from storefront.core.exceptions import TransientStoreError, ValidationError

logger = logging.getLogger(__name__)


class EmailClient:
    """Transactional email through the Resend HTTP API."""

    def __init__(self, base_url: str, api_key: str, sender: str):
        self.api_key = api_key
        self.sender = sender
        self.async_client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(10.0, read=30.0),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def send(self, to: str, subject: str, html: str) -> Optional[str]:
        """
        Sends one email and returns the provider message id.
        Returns None without sending when no API key is configured.
        """
        if not self.enabled:
            logger.warning(f"RESEND_API_KEY not configured. Skipping email '{subject}' to {to}.")
            return None

        payload = {"from": self.sender, "to": [to], "subject": subject, "html": html}
        try:
            response = await self.async_client.post("/emails", json=payload)
            response.raise_for_status()
        except httpx.RequestError as e:
            logger.error(f"Network error during POST request to {e.request.url!r}.", exc_info=True)
            raise TransientStoreError(f"Email provider unreachable: {e}") from e
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error during POST request to {e.request.url!r}: {e.response.text}")
            if e.response.status_code == 429 or e.response.status_code >= 500:
                raise TransientStoreError(f"Email provider returned {e.response.status_code}") from e
            raise ValidationError(f"Email rejected by provider ({e.response.status_code})", to=to) from e

        return response.json().get("id")

    async def close(self):
        await self.async_client.aclose()


email_client = EmailClient(
    base_url=settings.RESEND_API_URL,
    api_key=settings.RESEND_API_KEY,
    sender=settings.EMAIL_FROM,
)
