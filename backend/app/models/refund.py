"""Refund model"""
from sqlalchemy import Column, Integer, String, Boolean, Text, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class Refund(Base):
    """Full or partial reversal of a completed donation"""
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, index=True)
    donation_id = Column(Integer, ForeignKey("donations.id"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    state = Column(String(20), nullable=False, default="pending")  # 'pending', 'confirmed', 'failed'
    is_full = Column(Boolean, nullable=False, default=False)
    gateway_refund_id = Column(String(255), unique=True, nullable=True, index=True)
    parked = Column(Boolean, nullable=False, default=False)  # gateway call exhausted retries
    actor = Column(String(255), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationship
    donation = relationship("Donation", back_populates="refunds")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_refunds_amount_positive"),
    )
