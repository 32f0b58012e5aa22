"""DonorAggregate model"""
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint, CheckConstraint
from datetime import datetime, timezone
from app.models.base import Base


class DonorAggregate(Base):
    """Running total of a donor's contributions within one compliance window"""
    __tablename__ = "donor_aggregates"

    id = Column(Integer, primary_key=True, index=True)
    donor_fingerprint = Column(String(64), nullable=False, index=True)
    jurisdiction = Column(String(50), nullable=False)
    cycle_id = Column(String(100), nullable=False)

    total_cents = Column(Integer, default=0, nullable=False)  # never negative
    version = Column(Integer, default=1, nullable=False)  # compare-and-swap token
    last_updated = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint("donor_fingerprint", "jurisdiction", "cycle_id", name="uq_donor_aggregates_key"),
        CheckConstraint("total_cents >= 0", name="ck_donor_aggregates_total_non_negative"),
    )

    def __repr__(self):
        return f"<DonorAggregate({self.donor_fingerprint[:8]}, {self.jurisdiction}, {self.cycle_id}, total={self.total_cents})>"
