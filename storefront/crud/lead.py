# storefront/crud/lead.py

from datetime import datetime
from typing import List

from sqlalchemy import update
from sqlalchemy.orm import Session

from storefront.models.lead import Lead


def get(db: Session, lead_id: int) -> Lead | None:
    return db.query(Lead).filter(Lead.id == lead_id).first()


def get_pending_notification(db: Session, limit: int = 100) -> List[Lead]:
    """Leads that never got an availability notice."""
    return db.query(Lead).filter(Lead.notified_at.is_(None)).order_by(Lead.id).limit(limit).all()


def mark_notified(db: Session, lead_id: int, now: datetime) -> None:
    db.execute(
        update(Lead)
        .where(Lead.id == lead_id)
        .values(notified_at=now, notification_sent_count=Lead.notification_sent_count + 1)
        .execution_options(synchronize_session=False)
    )
