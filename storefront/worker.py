# storefront/worker.py
"""
Standalone job worker: ``python -m storefront.worker``.

Runs the same registry as the API process. Start as many as needed; the queue
hands each job to one of them at a time.
"""

import asyncio
import logging
import signal

from storefront.clients.email import email_client
from storefront.core.logging_config import setup_logging
from storefront.db.session import SessionLocal
from storefront.dependencies import job_queue
from storefront.jobs.wiring import build_registry

logger = logging.getLogger(__name__)


async def main():
    setup_logging()
    registry = build_registry(job_queue, SessionLocal)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info("Starting job worker...")
    await registry.run(stop_event)
    await job_queue.redis.aclose()
    await email_client.close()


if __name__ == "__main__":
    asyncio.run(main())
