"""WebhookEvent model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime
from datetime import datetime, timezone
from app.models.base import Base


class WebhookEvent(Base):
    """Processor webhook event log for exactly-once application"""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    processor_event_id = Column(String(255), unique=True, nullable=False, index=True)  # dedup key
    event_type = Column(String(100), nullable=False, index=True)
    payload_hash = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)
    outcome = Column(String(50), nullable=True)  # 'applied', 'noop', 'conflict', 'rejected', 'amount_mismatch'
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)  # null until applied or definitively handled
