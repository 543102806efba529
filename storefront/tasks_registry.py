# storefront/tasks_registry.py

from dataclasses import asdict

from storefront.db.session import SessionLocal
from storefront.dependencies import job_queue
from storefront.jobs import discount_code_expiration, lead_notification
from storefront.jobs.wiring import build_registry

# --- Wrappers: each task builds what it needs, so it can run from the API or a script ---

async def run_scan_expired_discount_codes():
    registry = build_registry(job_queue, SessionLocal)
    await registry.setup()
    result = await discount_code_expiration.scan_expired_discount_codes(SessionLocal, job_queue)
    return asdict(result)

async def run_notify_pending_leads():
    registry = build_registry(job_queue, SessionLocal)
    await registry.setup()
    return await lead_notification.enqueue_pending_leads(SessionLocal, job_queue)

async def run_recover_stalled_jobs():
    registry = build_registry(job_queue, SessionLocal)
    return {"recovered": await registry.recover_stalled()}


# --- Tasks available for manual runs ---
# 'function': coroutine to call
# 'description': shown in the admin API

TASKS = {
    "scan_expired_discount_codes": {
        "function": run_scan_expired_discount_codes,
        "description": "Queues settlement for every expired discount code that is still active.",
    },
    "notify_pending_leads": {
        "function": run_notify_pending_leads,
        "description": "Queues the availability notice for every lead that has not been notified.",
    },
    "recover_stalled_jobs": {
        "function": run_recover_stalled_jobs,
        "description": "Returns jobs stuck past the visibility timeout to their queues.",
    },
}


def get_tasks_list():
    return [
        {"task_name": name, "description": data["description"]}
        for name, data in TASKS.items()
    ]
