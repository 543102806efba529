# tests/test_job_registry.py

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from storefront.core.exceptions import PermanentEntityError, TransientStoreError
from storefront.jobs.registry import COMPLETED, FAILED, RETRY, JobRegistry, JobResult, run_in_session
from storefront.jobs.scheduler import CronJobScheduler
from storefront.schemas.jobs import JOB_DISCOUNT_CODE_SCAN, JOB_DISCOUNT_CODE_SETTLE

QUEUE = JOB_DISCOUNT_CODE_SETTLE


def build(job_queue, session_factory, handler):
    registry = JobRegistry(job_queue, session_factory, poll_interval=0.01)
    registry.register(QUEUE, handler, payload_kinds=("discount_code.settle",), batch_size=2)
    return registry


async def test_completed_result_completes_the_job(job_queue, session_factory):
    seen = []

    async def handler(payload, store, queue):
        seen.append(payload.discount_code_id)
        return JobResult.completed(status="settled")

    registry = build(job_queue, session_factory, handler)
    job_id = await job_queue.send(QUEUE, {"kind": "discount_code.settle", "discount_code_id": 3})

    [result] = await registry.run_once(QUEUE)

    assert result.status == COMPLETED
    assert seen == [3]
    assert (await job_queue.get_job(job_id))["state"] == "completed"


@pytest.mark.parametrize(
    "data",
    [
        {"kind": "discount_code.settle"},
        {"kind": "discount_code.settle", "discount_code_id": 0},
        {"kind": "nonsense"},
        # Valid payload, wrong queue
        {"kind": "lead.availability", "lead_id": 1},
    ],
)
async def test_invalid_payload_fails_without_calling_the_handler(job_queue, session_factory, data):
    async def handler(payload, store, queue):
        raise AssertionError("handler must not run")

    registry = build(job_queue, session_factory, handler)
    await job_queue.send(QUEUE, data)

    [result] = await registry.run_once(QUEUE)

    assert result.status == FAILED
    assert await job_queue.size(QUEUE, "failed") == 1


async def test_permanent_error_fails_the_job(job_queue, session_factory):
    async def handler(payload, store, queue):
        raise PermanentEntityError("influencer code without influencer")

    registry = build(job_queue, session_factory, handler)
    await job_queue.send(QUEUE, {"kind": "discount_code.settle", "discount_code_id": 1})

    [result] = await registry.run_once(QUEUE)

    assert result.status == FAILED
    assert result.error == "influencer code without influencer"


async def test_transient_error_retries_until_the_limit(job_queue, session_factory):
    calls = 0

    async def handler(payload, store, queue):
        nonlocal calls
        calls += 1
        raise TransientStoreError("database unavailable")

    registry = build(job_queue, session_factory, handler)
    job_id = await job_queue.send(QUEUE, {"kind": "discount_code.settle", "discount_code_id": 1})

    # retry_limit=2 in the fixture: three attempts in total
    statuses = []
    for _ in range(3):
        [result] = await registry.run_once(QUEUE)
        statuses.append(result.status)

    assert statuses == [RETRY, RETRY, FAILED]
    assert calls == 3
    assert (await job_queue.get_job(job_id))["state"] == "failed"
    assert await registry.run_once(QUEUE) == []


async def test_unexpected_error_is_retried(job_queue, session_factory):
    async def handler(payload, store, queue):
        raise RuntimeError("surprise")

    registry = build(job_queue, session_factory, handler)
    await job_queue.send(QUEUE, {"kind": "discount_code.settle", "discount_code_id": 1})

    [result] = await registry.run_once(QUEUE)

    assert result.status == RETRY
    assert await job_queue.size(QUEUE, "delayed") == 1


async def test_duplicate_registration_is_refused(job_queue, session_factory):
    async def handler(payload, store, queue):
        return JobResult.completed()

    registry = build(job_queue, session_factory, handler)
    with pytest.raises(ValueError):
        registry.register(QUEUE, handler, payload_kinds=("discount_code.settle",))


async def test_run_in_session_turns_driver_errors_into_transient(session_factory):
    def broken(db):
        raise OperationalError("SELECT 1", {}, Exception("connection reset"))

    with pytest.raises(TransientStoreError):
        await run_in_session(session_factory, broken)


async def test_run_loop_processes_until_stopped(job_queue, session_factory):
    done = asyncio.Event()

    async def handler(payload, store, queue):
        done.set()
        return JobResult.completed()

    registry = build(job_queue, session_factory, handler)
    await job_queue.send(QUEUE, {"kind": "discount_code.settle", "discount_code_id": 1})

    stop_event = asyncio.Event()
    worker = asyncio.create_task(registry.run(stop_event))
    await asyncio.wait_for(done.wait(), timeout=5)
    stop_event.set()
    await asyncio.wait_for(worker, timeout=5)

    assert await job_queue.size(QUEUE, "active") == 0


# --- Cron ---

async def test_cron_fire_is_deduplicated_per_minute(job_queue):
    scheduler = CronJobScheduler(job_queue)
    fired_at = datetime(2026, 3, 1, 3, 5, 10, tzinfo=timezone.utc)

    first = await scheduler.fire(JOB_DISCOUNT_CODE_SCAN, {"kind": "discount_code.scan"}, fired_at=fired_at)
    second = await scheduler.fire(
        JOB_DISCOUNT_CODE_SCAN, {"kind": "discount_code.scan"}, fired_at=fired_at.replace(second=50)
    )
    next_minute = await scheduler.fire(
        JOB_DISCOUNT_CODE_SCAN, {"kind": "discount_code.scan"}, fired_at=fired_at.replace(minute=6)
    )

    assert first is not None
    assert second is None
    assert next_minute is not None


async def test_schedule_registers_a_cron_job(job_queue):
    scheduler = CronJobScheduler(job_queue)
    scheduler.schedule(
        JOB_DISCOUNT_CODE_SCAN, "5 0 * * *", {"kind": "discount_code.scan"},
        timezone="America/Argentina/Buenos_Aires",
    )

    job = scheduler.scheduler.get_job(f"cron:{JOB_DISCOUNT_CODE_SCAN}")
    assert job is not None
    assert job.args == (JOB_DISCOUNT_CODE_SCAN, {"kind": "discount_code.scan"})
