"""Donation model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, JSON, Index, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class Donation(Base):
    """A monetary contribution moving through the ledger state machine"""
    __tablename__ = "donations"

    id = Column(Integer, primary_key=True, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")

    # Donor reference (identity verified upstream)
    donor_id = Column(String(255), nullable=False, index=True)
    donor_email = Column(String(255), nullable=True)
    donor_fingerprint = Column(String(64), nullable=False, index=True)

    # Itemization data, required once a single contribution reaches the threshold
    donor_name = Column(String(255), nullable=True)
    donor_address = Column(Text, nullable=True)
    donor_employer = Column(String(255), nullable=True)
    donor_occupation = Column(String(255), nullable=True)

    fundraiser_id = Column(String(255), nullable=False, index=True)
    organization_id = Column(String(255), nullable=False, index=True)

    # Compliance windows this donation counts against
    jurisdiction = Column(String(50), nullable=False)
    cycle_ids = Column(JSON, nullable=False, default=list)

    state = Column(String(20), nullable=False, default="pending", index=True)
    external_transaction_id = Column(String(255), unique=True, nullable=True, index=True)
    idempotency_key = Column(String(255), unique=True, nullable=False, index=True)
    failure_reason = Column(Text, nullable=True)

    charge_parked = Column(Boolean, default=False, nullable=False)  # charge submission exhausted retries, outcome unknown
    limit_override_actor = Column(String(255), nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    refunds = relationship("Refund", back_populates="donation", order_by="Refund.id")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_donations_amount_positive"),
        Index("ix_donations_donor_state", "donor_fingerprint", "jurisdiction", "state"),
    )

    def __repr__(self):
        return f"<Donation(id={self.id}, amount_cents={self.amount_cents}, state={self.state})>"
