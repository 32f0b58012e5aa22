"""ReviewItem model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Index
from datetime import datetime, timezone
from app.models.base import Base


class ReviewItem(Base):
    """Manual review / reconciliation queue entry"""
    __tablename__ = "review_items"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(50), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="open")  # 'open', 'resolved'
    donation_id = Column(Integer, nullable=True, index=True)
    refund_id = Column(Integer, nullable=True)
    processor_event_id = Column(String(255), nullable=True)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(255), nullable=True)
    resolution_notes = Column(Text, nullable=True)

    __table_args__ = (
        Index('ix_review_items_status_kind', 'status', 'kind'),
    )
