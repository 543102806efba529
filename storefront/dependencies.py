# storefront/dependencies.py

import hmac
import logging
from typing import Iterator

from fastapi import Header, HTTPException, status
from sqlalchemy.orm import Session, sessionmaker

from storefront.clients.mercadopago import MercadoPagoClient, mp_client
from storefront.core.config import settings
from storefront.core.redis import redis_client
from storefront.db.session import SessionLocal
from storefront.jobs.queue import RedisJobQueue

logger = logging.getLogger(__name__)

# --- Job queue ---
job_queue = RedisJobQueue(
    redis_client,
    retry_limit=settings.JOB_RETRY_LIMIT,
    retry_delay=settings.JOB_RETRY_DELAY_SECONDS,
    retention_seconds=settings.JOB_RETENTION_SECONDS,
)


# --- DB session ---
def get_db_session_instance() -> Session:
    return SessionLocal()


def get_db() -> Iterator[Session]:
    """FastAPI dependency: one session per request."""
    db = get_db_session_instance()
    try:
        yield db
    finally:
        db.close()


def get_job_queue() -> RedisJobQueue:
    return job_queue


def get_payment_gateway() -> MercadoPagoClient:
    return mp_client


def get_session_factory() -> sessionmaker:
    """For endpoints that hand work to the job layer, which opens its own sessions."""
    return SessionLocal


# --- Admin access ---
async def verify_admin_api_key(x_admin_api_key: str | None = Header(None)):
    """Admin endpoints are closed while ADMIN_API_KEY is not configured."""
    if not settings.ADMIN_API_KEY:
        logger.warning("ADMIN_API_KEY not configured. Rejecting admin request.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin API is disabled")
    if not x_admin_api_key or not hmac.compare_digest(x_admin_api_key, settings.ADMIN_API_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin API key")
