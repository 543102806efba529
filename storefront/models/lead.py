# storefront/models/lead.py
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import relationship

from storefront.db.session import Base


class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, nullable=False, index=True)
    name = Column(String, nullable=True)

    # Reservation code handed out with the availability notice
    reservation_code_id = Column(Integer, ForeignKey("discount_codes.id"), nullable=True, unique=True)
    notified_at = Column(DateTime(timezone=True), nullable=True)
    notification_sent_count = Column(Integer, nullable=False, default=0, server_default="0")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    reservation_code = relationship("DiscountCode")
    orders = relationship("Order", back_populates="lead")
