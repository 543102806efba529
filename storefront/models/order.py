# storefront/models/order.py
from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.orm import relationship
from sqlalchemy.sql import expression

from storefront.db.session import Base
from storefront.models.status import OrderStatus, PaymentStatus
from storefront.models.types import enum_column


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=True, index=True)

    subtotal = Column(Numeric(12, 2), nullable=False)
    discount = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    total = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="ARS", server_default="ARS")

    discount_code_id = Column(Integer, ForeignKey("discount_codes.id"), nullable=True, index=True)
    # True once used_count was incremented for this order (at checkout or on payment)
    discount_usage_recorded = Column(Boolean, nullable=False, default=False, server_default=expression.false())

    status = Column(enum_column(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    # Set once the "order paid" lead notification made it into the queue
    paid_notification_enqueued_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="order", order_by="Payment.id")
    discount_code = relationship("DiscountCode")
    lead = relationship("Lead", back_populates="orders")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String, nullable=False)
    product_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    # Price snapshot at checkout time
    unit_price = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    # Gateway-side id. NULL until the first webhook for this checkout attempt arrives.
    provider_ref = Column(String(64), unique=True, nullable=True)
    status = Column(enum_column(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    amount = Column(Numeric(12, 2), nullable=True)
    # Raw gateway payload, kept for audit/replay
    raw_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    order = relationship("Order", back_populates="payments")
