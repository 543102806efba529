# storefront/crud/commission.py

from typing import List

from sqlalchemy import update
from sqlalchemy.orm import Session

from storefront.models.influencer import Commission, InfluencerPayment
from storefront.models.status import CommissionStatus


def get_by_order(db: Session, order_id: int) -> Commission | None:
    return db.query(Commission).filter(Commission.order_id == order_id).first()


def get_pending_unlinked(db: Session, discount_code_id: int, influencer_id: int) -> List[Commission]:
    """Pending commissions of this code not yet rolled into any influencer payment."""
    return db.query(Commission).filter(
        Commission.discount_code_id == discount_code_id,
        Commission.influencer_id == influencer_id,
        Commission.status == CommissionStatus.PENDING,
        Commission.influencer_payment_id.is_(None),
    ).order_by(Commission.id).all()


def create(db: Session, **fields) -> Commission:
    """
    Adds a commission to the session. Requires an external db.commit().
    """
    commission = Commission(**fields)
    db.add(commission)
    return commission


def create_influencer_payment(db: Session, **fields) -> InfluencerPayment:
    payment = InfluencerPayment(**fields)
    db.add(payment)
    return payment


def link_to_payment(db: Session, commission_ids: List[int], influencer_payment_id: int) -> int:
    """Links only rows that are still unlinked. Returns how many were linked."""
    if not commission_ids:
        return 0
    result = db.execute(
        update(Commission)
        .where(Commission.id.in_(commission_ids), Commission.influencer_payment_id.is_(None))
        .values(influencer_payment_id=influencer_payment_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def cancel_for_order(db: Session, order_id: int) -> int:
    """Refunded order: its commission, if still unpaid, is cancelled."""
    result = db.execute(
        update(Commission)
        .where(
            Commission.order_id == order_id,
            Commission.status == CommissionStatus.PENDING,
            Commission.influencer_payment_id.is_(None),
        )
        .values(status=CommissionStatus.CANCELLED)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
