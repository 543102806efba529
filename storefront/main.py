# storefront/main.py

import asyncio
import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

# Config and core
from storefront.core.config import settings as config
from storefront.core.exceptions import (
    ConflictError, OrderNotFoundError, PermanentEntityError, StorefrontError, TransientStoreError, ValidationError,
)
from storefront.core.logging_config import setup_logging
from storefront.core.redis import redis_client

# Routers
from storefront.routers import webhooks
from storefront.routers.v1.api import api_router as api_v1_router

# Background jobs
from storefront.bot.services import notification as bot_notification_service
from storefront.clients.email import email_client
from storefront.clients.mercadopago import mp_client
from storefront.db.session import SessionLocal
from storefront.dependencies import job_queue
from storefront.jobs.wiring import build_registry, build_scheduler

# --- Init ---
logger = logging.getLogger(__name__)

STARTUP_LOCK_KEY = "app_startup_lock"


# --- Domain errors -> HTTP ---
async def storefront_error_handler(request: Request, exc: StorefrontError):
    if isinstance(exc, OrderNotFoundError):
        status_code = 404
    elif isinstance(exc, ValidationError):
        status_code = 400
    elif isinstance(exc, ConflictError):
        status_code = 409
    elif isinstance(exc, TransientStoreError):
        status_code = 503
    elif isinstance(exc, PermanentEntityError):
        status_code = 422
    else:
        status_code = 500

    log = logger.warning if status_code < 500 else logger.error
    log(f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "error": exc.__class__.__name__})


# --- Critical errors ---
async def unhandled_exception_handler(request: Request, exc: Exception):
    """
    Last resort for anything unhandled: log it and alert the admins.
    """
    logger.critical(f"Unhandled exception for request: {request.method} {request.url}", exc_info=True)

    error_details = "".join(traceback.format_exception(exc))[-3000:]
    error_message = (
        f"🚨 <b>Unhandled API error</b>\n\n"
        f"<b>URL:</b> <code>{request.method} {request.url}</code>\n\n"
        f"<b>Traceback:</b>\n<pre>{error_details}</pre>"
    )
    asyncio.create_task(bot_notification_service.send_error_to_super_admins(error_message))

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error. The administrator has been notified."},
    )


# --- Lifespan ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("Application lifespan startup...")

    registry = build_registry(job_queue, SessionLocal)
    await registry.setup()

    # Only one process schedules cron jobs
    is_main_worker = await redis_client.set(STARTUP_LOCK_KEY, "1", ex=60, nx=True)
    scheduler = None
    if is_main_worker:
        logger.info("This is the main worker. Starting the cron scheduler...")
        scheduler = build_scheduler(job_queue)
        scheduler.start()
    else:
        logger.info("This is a secondary worker. Skipping cron scheduling.")

    stop_event = asyncio.Event()
    worker_task = None
    if config.JOB_WORKER_EMBEDDED:
        worker_task = asyncio.create_task(registry.run(stop_event))

    yield

    if worker_task is not None:
        stop_event.set()
        await worker_task
    if is_main_worker:
        logger.info("Main worker shutting down...")
        scheduler.shutdown()
        await redis_client.delete(STARTUP_LOCK_KEY)
    else:
        logger.info("Secondary worker shutting down.")

    await mp_client.close()
    await email_client.close()


# --- App ---
app = FastAPI(
    title="Storefront settlement service",
    description="Payment reconciliation, discount-code ledger and settlement jobs",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_exception_handler(StorefrontError, storefront_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

api_router = APIRouter(prefix="/api")
api_router.include_router(api_v1_router)
app.include_router(api_router)

# Webhooks stay at the root
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
