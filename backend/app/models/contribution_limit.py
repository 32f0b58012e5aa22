"""ContributionLimit model"""
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from datetime import datetime, timezone
from app.models.base import Base


class ContributionLimit(Base):
    """Configured per-donor limit for a (jurisdiction, cycle) window"""
    __tablename__ = "contribution_limits"

    id = Column(Integer, primary_key=True, index=True)
    jurisdiction = Column(String(50), nullable=False, index=True)
    cycle_id = Column(String(100), nullable=False)
    limit_cents = Column(Integer, nullable=False)
    window_start = Column(DateTime(timezone=True), nullable=True)
    window_end = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint("jurisdiction", "cycle_id", name="uq_contribution_limits_window"),
    )
