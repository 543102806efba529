# storefront/crud/discount_code.py

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import and_, case, false, or_, update
from sqlalchemy.orm import Session

from storefront.models.discount_code import DiscountCode, DiscountCodeSettlement


def normalize_code(code: str) -> str:
    return code.strip().upper()


# --- Reads ---

def get(db: Session, discount_code_id: int, *, for_update: bool = False) -> DiscountCode | None:
    query = db.query(DiscountCode).filter(DiscountCode.id == discount_code_id)
    if for_update:
        query = query.with_for_update()
    return query.first()


def get_by_code(db: Session, code: str) -> DiscountCode | None:
    return db.query(DiscountCode).filter(DiscountCode.code == normalize_code(code)).first()


def code_exists(db: Session, code: str) -> bool:
    return db.query(DiscountCode.id).filter(DiscountCode.code == normalize_code(code)).first() is not None


def get_expired_active_ids(
    db: Session, now: datetime, limit: int, after_id: Optional[int] = None
) -> List[int]:
    """Ids of codes still marked active whose validity ended before ``now``, oldest id first."""
    query = db.query(DiscountCode.id).filter(
        DiscountCode.is_active.is_(True),
        DiscountCode.valid_until.is_not(None),
        DiscountCode.valid_until < now,
    )
    if after_id is not None:
        query = query.filter(DiscountCode.id > after_id)
    return [row.id for row in query.order_by(DiscountCode.id).limit(limit).all()]


def get_settlement(db: Session, discount_code_id: int) -> DiscountCodeSettlement | None:
    return db.query(DiscountCodeSettlement).filter_by(discount_code_id=discount_code_id).first()


# --- Writes ---

def create(db: Session, **fields) -> DiscountCode:
    """
    Adds a code to the session. Requires an external db.commit().
    """
    fields["code"] = normalize_code(fields["code"])
    discount_code = DiscountCode(**fields)
    db.add(discount_code)
    return discount_code


def try_increment_usage(
    db: Session,
    discount_code_id: int,
    *,
    now: Optional[datetime] = None,
    purchase_amount: Optional[Decimal] = None,
) -> bool:
    """
    Single conditional UPDATE: bumps used_count only if the code is still redeemable.
    Deactivates the code in the same statement when it reaches max_uses.

    With ``now=None`` the validity window and is_active are not checked (usage that
    was authorized earlier and is being recorded on payment); max_uses always is.
    Returns True if exactly one row changed.
    """
    conditions = [
        DiscountCode.id == discount_code_id,
        or_(DiscountCode.max_uses.is_(None), DiscountCode.used_count < DiscountCode.max_uses),
    ]
    if now is not None:
        conditions += [
            DiscountCode.is_active.is_(True),
            DiscountCode.valid_from <= now,
            or_(DiscountCode.valid_until.is_(None), DiscountCode.valid_until >= now),
        ]
    if purchase_amount is not None:
        conditions.append(
            or_(DiscountCode.min_purchase.is_(None), DiscountCode.min_purchase <= purchase_amount)
        )

    reaches_limit = and_(
        DiscountCode.max_uses.is_not(None),
        DiscountCode.used_count + 1 >= DiscountCode.max_uses,
    )
    stmt = (
        update(DiscountCode)
        .where(*conditions)
        .values(
            used_count=DiscountCode.used_count + 1,
            is_active=case((reaches_limit, false()), else_=DiscountCode.is_active),
        )
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1
