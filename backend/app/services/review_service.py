"""Manual review queue - conflicts, unknown transactions, parked gateway calls, anomalies"""
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlalchemy.orm import Session

from app.core.errors import DonationNotFoundError, ValidationError
from app.core.metrics import open_review_items_gauge
from app.models.review_item import ReviewItem
from app.models.states import ReviewKind, ReviewStatus

logger = logging.getLogger(__name__)
compliance_logger = logging.getLogger("compliance")


def open_review_item(
    db: Session,
    kind: ReviewKind,
    donation_id: Optional[int] = None,
    refund_id: Optional[int] = None,
    processor_event_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
) -> ReviewItem:
    """Queue an item for manual review. Does not commit.

    An open item with the same kind, donation, refund and event is reused, so
    redelivered events do not pile up duplicates.
    """
    existing = db.query(ReviewItem).filter(
        ReviewItem.kind == kind.value,
        ReviewItem.status == ReviewStatus.OPEN.value,
        ReviewItem.donation_id == donation_id,
        ReviewItem.refund_id == refund_id,
        ReviewItem.processor_event_id == processor_event_id
    ).first()
    if existing:
        return existing

    item = ReviewItem(
        kind=kind.value,
        status=ReviewStatus.OPEN.value,
        donation_id=donation_id,
        refund_id=refund_id,
        processor_event_id=processor_event_id,
        details=details or {}
    )
    db.add(item)
    compliance_logger.warning(
        f"Review item queued - kind: {kind.value}, donation: {donation_id}, "
        f"refund: {refund_id}, event: {processor_event_id}"
    )
    return item


def list_review_items(
    db: Session,
    status: Optional[str] = ReviewStatus.OPEN.value,
    kind: Optional[str] = None,
    limit: int = 100
) -> List[ReviewItem]:
    """List review items, newest first"""
    query = db.query(ReviewItem)
    if status:
        query = query.filter(ReviewItem.status == status)
    if kind:
        query = query.filter(ReviewItem.kind == kind)
    return query.order_by(ReviewItem.id.desc()).limit(limit).all()


def resolve_review_item(item_id: int, actor: str, notes: Optional[str], db: Session) -> ReviewItem:
    """Mark a review item resolved"""
    item = db.query(ReviewItem).filter(ReviewItem.id == item_id).first()
    if not item:
        raise DonationNotFoundError(f"Review item {item_id} not found")
    if item.status == ReviewStatus.RESOLVED.value:
        raise ValidationError(f"Review item {item_id} is already resolved")

    item.status = ReviewStatus.RESOLVED.value
    item.resolved_at = datetime.now(timezone.utc)
    item.resolved_by = actor
    item.resolution_notes = notes
    db.commit()
    db.refresh(item)

    compliance_logger.info(f"Review item {item_id} ({item.kind}) resolved by {actor}")
    refresh_open_review_gauge(db)
    return item


def resolve_open_items_for(
    db: Session,
    kind: ReviewKind,
    donation_id: Optional[int] = None,
    refund_id: Optional[int] = None,
    actor: str = "scheduler",
    notes: str = "Settled by automatic retry"
) -> int:
    """Close open items of one kind for a donation or refund once the condition has cleared"""
    query = db.query(ReviewItem).filter(
        ReviewItem.kind == kind.value,
        ReviewItem.status == ReviewStatus.OPEN.value
    )
    if donation_id is not None:
        query = query.filter(ReviewItem.donation_id == donation_id)
    if refund_id is not None:
        query = query.filter(ReviewItem.refund_id == refund_id)

    items = query.all()
    now = datetime.now(timezone.utc)
    for item in items:
        item.status = ReviewStatus.RESOLVED.value
        item.resolved_at = now
        item.resolved_by = actor
        item.resolution_notes = notes
    if items:
        db.commit()
        logger.info(f"Auto-resolved {len(items)} {kind.value} review items")
    return len(items)


def refresh_open_review_gauge(db: Session) -> int:
    count = db.query(ReviewItem).filter(ReviewItem.status == ReviewStatus.OPEN.value).count()
    open_review_items_gauge.set(count)
    return count
