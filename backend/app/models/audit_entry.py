"""AuditEntry model"""
from sqlalchemy import Column, Integer, String, JSON, Index, DateTime, event
from datetime import datetime, timezone
from app.models.base import Base


class AuditEntry(Base):
    """Append-only compliance log of every ledger transition and money-affecting rejection"""
    __tablename__ = "audit_entries"

    id = Column(Integer, primary_key=True, index=True)
    donation_id = Column(Integer, nullable=True, index=True)  # null for rejections before a donation exists
    ledger_event = Column(String(50), nullable=True)
    from_state = Column(String(20), nullable=True)
    to_state = Column(String(20), nullable=True)
    trigger = Column(String(20), nullable=False)  # 'webhook', 'refund', 'cancel', 'manual', 'charge', 'limit'
    outcome = Column(String(20), nullable=False)  # 'applied', 'rejected', 'error'
    causing_event_id = Column(String(255), nullable=True, index=True)
    refund_id = Column(Integer, nullable=True)

    # Aggregate context so totals can be rebuilt from the log alone
    aggregate_delta_cents = Column(Integer, default=0, nullable=False)  # positive on completion, negative on refund
    donor_fingerprint = Column(String(64), nullable=True)
    jurisdiction = Column(String(50), nullable=True)
    cycle_ids = Column(JSON, default=list)

    error_code = Column(String(50), nullable=True)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    __table_args__ = (
        Index('ix_audit_entries_donation_created', 'donation_id', 'created_at'),
    )


@event.listens_for(AuditEntry, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise ValueError("audit entries are immutable")


@event.listens_for(AuditEntry, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise ValueError("audit entries cannot be deleted")
