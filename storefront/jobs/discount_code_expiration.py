# storefront/jobs/discount_code_expiration.py
"""
Expired discount codes.

The daily scan only finds codes that are past ``valid_until`` but still active
and queues one settlement job per code. Settlement closes the code: it rolls
the pending commissions into an influencer payout, writes the settlement row
and deactivates the code, all in one transaction.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from storefront.bot.services import notification as bot_notification_service
from storefront.core.config import settings
from storefront.core.exceptions import PermanentEntityError, TransientStoreError
from storefront.core.timeutils import as_utc, utcnow
from storefront.crud import commission as commission_crud
from storefront.crud import discount_code as discount_code_crud
from storefront.jobs.queue import RedisJobQueue
from storefront.jobs.registry import JobRegistry, JobResult, run_in_session
from storefront.jobs.scheduler import CronJobScheduler
from storefront.models.discount_code import DiscountCodeSettlement
from storefront.models.status import CodeType
from storefront.schemas.jobs import (
    JOB_DISCOUNT_CODE_SCAN, JOB_DISCOUNT_CODE_SETTLE, DiscountCodeScanPayload, DiscountCodeSettlePayload,
)
from storefront.services import dedup
from storefront.services.commission import has_commission_config
from storefront.services.discount_ledger import CENTS, to_money

logger = logging.getLogger(__name__)

SETTLED = "settled"
ALREADY_SETTLED = "already_settled"
NOT_EXPIRED = "not_expired"
NOT_FOUND = "not_found"


# --- Scan ---

@dataclass
class ScanResult:
    scanned: int = 0
    enqueued: int = 0
    deduplicated: int = 0
    failed: int = 0
    # Last id of a full batch; a follow-up scan continues after it
    next_cursor: Optional[int] = None


async def scan_expired_discount_codes(
    store: sessionmaker,
    queue: RedisJobQueue,
    *,
    after_id: Optional[int] = None,
    batch_size: Optional[int] = None,
    now: Optional[datetime] = None,
) -> ScanResult:
    """Queues a settlement job for each expired but still active code. Changes nothing in the database."""
    logger.info("--- Starting scheduled job: scan expired discount codes ---")
    batch_size = batch_size or settings.JOB_DISCOUNT_CODE_SCAN_BATCH_SIZE
    now = now or utcnow()

    code_ids = await run_in_session(
        store, discount_code_crud.get_expired_active_ids, now, batch_size, after_id=after_id
    )
    result = ScanResult(scanned=len(code_ids))

    for code_id in code_ids:
        try:
            job_id = await dedup.send_once(
                queue,
                JOB_DISCOUNT_CODE_SETTLE,
                DiscountCodeSettlePayload(discount_code_id=code_id),
                dedup.discount_code_settlement(code_id),
            )
        except Exception as e:
            logger.error(f"Failed to queue settlement for discount code {code_id}: {e}")
            result.failed += 1
            continue
        if job_id is None:
            result.deduplicated += 1
        else:
            result.enqueued += 1

    if code_ids and len(code_ids) == batch_size:
        result.next_cursor = code_ids[-1]
        try:
            await dedup.send_once(
                queue,
                JOB_DISCOUNT_CODE_SCAN,
                DiscountCodeScanPayload(after_id=result.next_cursor),
                dedup.discount_code_scan_followup(result.next_cursor),
            )
        except Exception as e:
            logger.error(f"Failed to queue follow-up scan after discount code {result.next_cursor}: {e}")

    logger.info(
        f"--- Finished scan: {result.scanned} expired, {result.enqueued} queued, "
        f"{result.deduplicated} already queued, {result.failed} failed ---"
    )
    return result


async def handle_scan(payload: DiscountCodeScanPayload, store: sessionmaker, queue: RedisJobQueue) -> JobResult:
    result = await scan_expired_discount_codes(store, queue, after_id=payload.after_id)
    return JobResult.completed(**asdict(result))


# --- Settlement ---

@dataclass
class SettlementOutcome:
    status: str
    discount_code_id: int
    settlement_id: Optional[int] = None
    code: Optional[str] = None
    influencer_name: Optional[str] = None
    total_amount: Decimal = Decimal("0.00")
    currency: str = "ARS"
    commissions_count: int = 0
    influencer_payment_id: Optional[int] = None

    def as_output(self) -> dict:
        output = asdict(self)
        output["total_amount"] = str(self.total_amount)
        return output


def settle_discount_code(db: Session, discount_code_id: int, now: Optional[datetime] = None) -> SettlementOutcome:
    """
    Settles one expired code in a single transaction, with the code row locked.
    Safe to run any number of times: the unique settlement row makes every run after the first a no-op.
    """
    now = now or utcnow()
    try:
        discount_code = discount_code_crud.get(db, discount_code_id, for_update=True)
        if discount_code is None:
            db.rollback()
            logger.warning(f"Discount code {discount_code_id} not found. Nothing to settle.")
            return SettlementOutcome(status=NOT_FOUND, discount_code_id=discount_code_id)

        existing = discount_code_crud.get_settlement(db, discount_code_id)
        if existing is not None:
            db.rollback()
            logger.info(f"Discount code {discount_code_id} already settled (settlement {existing.id}).")
            return SettlementOutcome(
                status=ALREADY_SETTLED, discount_code_id=discount_code_id, settlement_id=existing.id
            )

        # Inclusive until valid_until
        valid_until = as_utc(discount_code.valid_until)
        if valid_until is None or now <= valid_until:
            db.rollback()
            return SettlementOutcome(status=NOT_EXPIRED, discount_code_id=discount_code_id)

        influencer = discount_code.influencer
        if discount_code.code_type == CodeType.INFLUENCER:
            if influencer is None:
                raise PermanentEntityError(
                    f"Influencer code {discount_code.code} has no influencer", discount_code_id=discount_code_id
                )
            if not has_commission_config(discount_code):
                raise PermanentEntityError(
                    f"Influencer code {discount_code.code} has no commission configuration",
                    discount_code_id=discount_code_id,
                )

        commissions = []
        if influencer is not None:
            commissions = commission_crud.get_pending_unlinked(db, discount_code_id, influencer.id)
        total_amount = sum((to_money(c.commission_amount) for c in commissions), Decimal("0")).quantize(CENTS)

        influencer_payment_id = None
        if commissions and total_amount > 0:
            payment = commission_crud.create_influencer_payment(
                db,
                influencer_id=influencer.id,
                total_amount=total_amount,
                currency=settings.STORE_CURRENCY,
                payment_method=influencer.payment_method or "transfer",
                status="pending",
                account_number=influencer.account_number,
                cvu=influencer.cvu,
                bank_name=influencer.bank_name,
                mercadopago_email=influencer.mercadopago_email,
            )
            db.flush()
            commission_crud.link_to_payment(db, [c.id for c in commissions], payment.id)
            influencer_payment_id = payment.id

        settlement = DiscountCodeSettlement(
            discount_code_id=discount_code_id,
            influencer_id=influencer.id if influencer is not None else None,
            influencer_payment_id=influencer_payment_id,
            total_amount=total_amount,
            currency=settings.STORE_CURRENCY,
            commissions_count=len(commissions),
            processed_at=now,
        )
        db.add(settlement)
        discount_code.is_active = False
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Discount code {discount_code_id} was settled concurrently.")
        return SettlementOutcome(status=ALREADY_SETTLED, discount_code_id=discount_code_id)
    except PermanentEntityError:
        db.rollback()
        raise
    except DBAPIError as e:
        db.rollback()
        raise TransientStoreError(f"Database error while settling discount code {discount_code_id}: {e}") from e

    logger.info(
        f"Discount code {discount_code.code} settled: {len(commissions)} commission(s), "
        f"total {total_amount} {settings.STORE_CURRENCY}."
    )
    return SettlementOutcome(
        status=SETTLED,
        discount_code_id=discount_code_id,
        settlement_id=settlement.id,
        code=discount_code.code,
        influencer_name=influencer.name if influencer is not None else None,
        total_amount=total_amount,
        currency=settings.STORE_CURRENCY,
        commissions_count=len(commissions),
        influencer_payment_id=influencer_payment_id,
    )


async def handle_settle(payload: DiscountCodeSettlePayload, store: sessionmaker, queue: RedisJobQueue) -> JobResult:
    logger.info(f"--- Starting scheduled job: settle discount code {payload.discount_code_id} ---")
    outcome = await run_in_session(store, settle_discount_code, payload.discount_code_id)

    if outcome.status == SETTLED:
        try:
            await bot_notification_service.send_settlement_report_to_admins(
                discount_code=outcome.code,
                influencer_name=outcome.influencer_name,
                total_amount=outcome.total_amount,
                currency=outcome.currency,
                commissions_count=outcome.commissions_count,
                influencer_payment_id=outcome.influencer_payment_id,
            )
        except Exception as e:
            logger.error(f"Settlement report for discount code {outcome.discount_code_id} was not delivered: {e}")

    return JobResult.completed(**outcome.as_output())


# --- Wiring ---

def register(registry: JobRegistry) -> None:
    registry.register(
        JOB_DISCOUNT_CODE_SCAN, handle_scan, payload_kinds=("discount_code.scan",), batch_size=1
    )
    registry.register(
        JOB_DISCOUNT_CODE_SETTLE,
        handle_settle,
        payload_kinds=("discount_code.settle",),
        batch_size=settings.JOB_DISCOUNT_CODE_SETTLE_CONCURRENCY,
    )


def schedule(scheduler: CronJobScheduler) -> None:
    scheduler.schedule(
        JOB_DISCOUNT_CODE_SCAN,
        settings.JOB_DISCOUNT_CODE_SCAN_CRON,
        DiscountCodeScanPayload().model_dump(),
        timezone=settings.STORE_TIMEZONE,
    )
