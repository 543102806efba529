# storefront/models/discount_code.py
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.orm import relationship
from sqlalchemy.sql import expression

from storefront.core.timeutils import utcnow
from storefront.db.session import Base
from storefront.models.status import AmountType, CodeType
from storefront.models.types import enum_column


class DiscountCode(Base):
    __tablename__ = "discount_codes"

    id = Column(Integer, primary_key=True, index=True)
    # Always stored upper-cased and trimmed
    code = Column(String(64), unique=True, index=True, nullable=False)
    code_type = Column(enum_column(CodeType), nullable=False)
    influencer_id = Column(Integer, ForeignKey("influencers.id"), nullable=True, index=True)

    discount_type = Column(enum_column(AmountType), nullable=False)
    discount_value = Column(Numeric(10, 2), nullable=False)
    commission_type = Column(enum_column(AmountType), nullable=True)
    commission_value = Column(Numeric(10, 2), nullable=True)

    min_purchase = Column(Numeric(10, 2), nullable=True)
    max_uses = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0, server_default="0")

    is_active = Column(Boolean, nullable=False, default=True, server_default=expression.true())
    valid_from = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    # End of day in the store timezone, stored in UTC. Inclusive.
    valid_until = Column(DateTime(timezone=True), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    influencer = relationship("Influencer", back_populates="discount_codes")
    settlement = relationship("DiscountCodeSettlement", back_populates="discount_code", uselist=False)


class DiscountCodeSettlement(Base):
    __tablename__ = "discount_code_settlements"

    id = Column(Integer, primary_key=True, index=True)
    # One settlement per code: this constraint is what makes settlement idempotent
    discount_code_id = Column(Integer, ForeignKey("discount_codes.id"), unique=True, nullable=False)
    influencer_id = Column(Integer, ForeignKey("influencers.id"), nullable=True)
    influencer_payment_id = Column(Integer, ForeignKey("influencer_payments.id"), nullable=True)

    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    commissions_count = Column(Integer, nullable=False, default=0)
    processed_at = Column(DateTime(timezone=True), nullable=False)

    discount_code = relationship("DiscountCode", back_populates="settlement")
