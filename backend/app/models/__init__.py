"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.donation import Donation
from app.models.donor_aggregate import DonorAggregate
from app.models.webhook_event import WebhookEvent
from app.models.refund import Refund
from app.models.audit_entry import AuditEntry
from app.models.contribution_limit import ContributionLimit
from app.models.review_item import ReviewItem

# Export all for convenience
__all__ = [
    "Base", "Donation", "DonorAggregate", "WebhookEvent", "Refund",
    "AuditEntry", "ContributionLimit", "ReviewItem"
]
