# storefront/models/influencer.py
from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.orm import relationship

from storefront.db.session import Base
from storefront.models.status import CommissionStatus
from storefront.models.types import enum_column


class Influencer(Base):
    __tablename__ = "influencers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)

    # 'transfer' or 'mercadopago'
    payment_method = Column(String, nullable=True)
    account_number = Column(String, nullable=True)
    cvu = Column(String, nullable=True)
    bank_name = Column(String, nullable=True)
    mercadopago_email = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    discount_codes = relationship("DiscountCode", back_populates="influencer")


class Commission(Base):
    __tablename__ = "commissions"

    id = Column(Integer, primary_key=True, index=True)
    influencer_id = Column(Integer, ForeignKey("influencers.id"), nullable=False, index=True)
    # One commission per paid order
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)
    discount_code_id = Column(Integer, ForeignKey("discount_codes.id"), nullable=False, index=True)

    order_total = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False)
    commission_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(enum_column(CommissionStatus), nullable=False, default=CommissionStatus.PENDING)
    influencer_payment_id = Column(Integer, ForeignKey("influencer_payments.id"), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)


class InfluencerPayment(Base):
    __tablename__ = "influencer_payments"

    id = Column(Integer, primary_key=True, index=True)
    influencer_id = Column(Integer, ForeignKey("influencers.id"), nullable=False, index=True)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    payment_method = Column(String, nullable=False, default="transfer")
    # 'pending' until an admin pays it out
    status = Column(String, nullable=False, default="pending")

    account_number = Column(String, nullable=True)
    cvu = Column(String, nullable=True)
    bank_name = Column(String, nullable=True)
    mercadopago_email = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    commissions = relationship("Commission")
