"""Refund coordinator - full and partial reversals of completed donations"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ComplianceError, NotRefundableError, ValidationError, ExternalGatewayError
from app.core.metrics import scheduler_runs_counter
from app.models.donation import Donation
from app.models.refund import Refund
from app.models.states import (
    DonationState, LedgerEvent, RefundState, AuditTrigger, ReviewKind
)
from app.services import ledger_service
from app.services.audit_service import record_rejection
from app.services.authorization_service import require_capability, REFUND_ISSUE
from app.services.donation_service import get_donation
from app.services.payment_gateway import get_gateway
from app.services.review_service import open_review_item, resolve_open_items_for

logger = logging.getLogger(__name__)
ledger_logger = logging.getLogger("ledger")


def remaining_refundable_cents(donation: Donation) -> int:
    """Donation amount minus confirmed and pending refunds"""
    committed = sum(
        r.amount_cents for r in donation.refunds
        if r.state in (RefundState.CONFIRMED.value, RefundState.PENDING.value)
    )
    return max(0, donation.amount_cents - committed)


def list_refunds(donation_id: int, db: Session) -> List[Refund]:
    get_donation(donation_id, db)
    return db.query(Refund).filter(Refund.donation_id == donation_id).order_by(Refund.id).all()


def get_refund(refund_id: int, db: Session) -> Optional[Refund]:
    return db.query(Refund).filter(Refund.id == refund_id).first()


def get_refund_by_gateway_id(gateway_refund_id: str, db: Session) -> Optional[Refund]:
    return db.query(Refund).filter(Refund.gateway_refund_id == gateway_refund_id).first()


def _not_refundable(db: Session, donation: Donation, message: str, actor: str, amount_cents: Optional[int]):
    error = NotRefundableError(
        message,
        donation_id=donation.id,
        state=donation.state,
        requested_cents=amount_cents,
        remaining_cents=remaining_refundable_cents(donation)
    )
    record_rejection(
        db, error, AuditTrigger.REFUND,
        donation=donation,
        ledger_event=LedgerEvent.REFUND_INITIATED,
        details={"actor": actor}
    )
    db.commit()
    ledger_logger.warning(f"Refund rejected for donation {donation.id}: {message}")
    raise error


def request_refund(
    donation_id: int,
    amount_cents: Optional[int],
    actor: str,
    db: Session,
    reason: Optional[str] = None,
    gateway=None
) -> Refund:
    """Issue a full or partial refund of a completed donation.

    Omitting amount_cents refunds the whole remaining balance. A refund of the
    whole remaining balance moves the donation to refund_pending; a partial
    refund leaves it completed and settles on its own.

    Raises:
        AuthorizationError: actor lacks refund_issue for the organization
        ValidationError: non-positive amount
        NotRefundableError: donation not completed or amount exceeds the balance
    """
    donation = get_donation(donation_id, db)
    require_capability(actor, REFUND_ISSUE, donation.organization_id)

    # Hold the donation row so concurrent requests cannot both claim the balance
    donation = db.query(Donation).filter(
        Donation.id == donation_id
    ).with_for_update().populate_existing().first()

    if amount_cents is not None and amount_cents <= 0:
        raise ValidationError("Refund amount must be greater than zero", field="amount_cents")

    if donation.state != DonationState.COMPLETED.value:
        _not_refundable(db, donation, f"Donation {donation_id} is {donation.state}, only completed donations can be refunded", actor, amount_cents)

    created_at = donation.created_at if donation.created_at.tzinfo else donation.created_at.replace(tzinfo=timezone.utc)
    if datetime.now(timezone.utc) - created_at > timedelta(days=settings.REFUND_WINDOW_DAYS):
        _not_refundable(
            db, donation,
            f"Donation {donation_id} is older than the {settings.REFUND_WINDOW_DAYS}-day refund window",
            actor, amount_cents
        )

    remaining = remaining_refundable_cents(donation)
    if amount_cents is None:
        amount_cents = remaining
    if remaining <= 0:
        _not_refundable(db, donation, f"Donation {donation_id} has no refundable balance left", actor, amount_cents)
    if amount_cents > remaining:
        _not_refundable(
            db, donation,
            f"Refund of {amount_cents} cents exceeds remaining balance of {remaining} cents",
            actor, amount_cents
        )

    # A refund that leaves nothing behind reverses the donation as a whole
    is_full = amount_cents == remaining
    refund = Refund(
        donation_id=donation.id,
        amount_cents=amount_cents,
        state=RefundState.PENDING.value,
        is_full=is_full,
        actor=actor,
        reason=reason
    )
    db.add(refund)
    db.commit()
    db.refresh(refund)

    if is_full:
        ledger_service.transition(
            donation.id, LedgerEvent.REFUND_INITIATED, db,
            trigger=AuditTrigger.REFUND,
            refund_id=refund.id,
            details={"actor": actor, "amount_cents": amount_cents}
        )

    ledger_logger.info(
        f"Refund {refund.id} requested by {actor} for donation {donation.id} - "
        f"{amount_cents} cents ({'full' if is_full else 'partial'})"
    )
    return submit_refund(refund.id, db, gateway=gateway)


def submit_refund(refund_id: int, db: Session, gateway=None) -> Refund:
    """Send a pending refund to the processor and apply any synchronous outcome"""
    gateway = gateway or get_gateway()
    refund = get_refund(refund_id, db)
    donation = refund.donation

    try:
        result = gateway.refund(donation.external_transaction_id, refund.amount_cents, refund)
    except ExternalGatewayError as e:
        refund.parked = True
        open_review_item(
            db, ReviewKind.GATEWAY_EXHAUSTED,
            donation_id=donation.id,
            refund_id=refund.id,
            details={"operation": "refund", "message": e.message}
        )
        db.commit()
        ledger_logger.error(f"Refund {refund.id} parked after gateway retries: {e.message}")
        return refund

    if result.refund_id and refund.gateway_refund_id != result.refund_id:
        refund.gateway_refund_id = result.refund_id
    refund.parked = False
    db.commit()

    if result.status == "succeeded":
        settle_refund(refund.id, LedgerEvent.REFUND_CONFIRMED, db, trigger=AuditTrigger.REFUND)
    elif result.status in ("failed", "canceled"):
        settle_refund(refund.id, LedgerEvent.REFUND_FAILED, db, trigger=AuditTrigger.REFUND)

    db.refresh(refund)
    return refund


def settle_refund(
    refund_id: int,
    event: LedgerEvent,
    db: Session,
    trigger: AuditTrigger = AuditTrigger.WEBHOOK,
    causing_event_id: Optional[str] = None,
    finalize=None
) -> Donation:
    """Confirm or fail a refund through the ledger"""
    refund = get_refund(refund_id, db)
    return ledger_service.transition(
        refund.donation_id, event, db,
        trigger=trigger,
        causing_event_id=causing_event_id,
        refund_id=refund.id,
        details={"refund_amount_cents": refund.amount_cents, "gateway_refund_id": refund.gateway_refund_id},
        finalize=finalize
    )


def retry_parked_refunds(db: Session, gateway=None, limit: int = 50) -> int:
    """Resubmit parked refunds; the refund id is the idempotency key"""
    parked = db.query(Refund).filter(
        Refund.parked.is_(True),
        Refund.state == RefundState.PENDING.value
    ).order_by(Refund.id).limit(limit).all()

    resubmitted = 0
    for refund in parked:
        refund_id = refund.id
        try:
            updated = submit_refund(refund_id, db, gateway=gateway)
        except ComplianceError as e:
            db.rollback()
            scheduler_runs_counter.labels(job="retry_refund", status="error").inc()
            logger.error(f"Retry of parked refund {refund_id} failed: {e.code} - {e.message}")
            continue
        if not updated.parked:
            resolve_open_items_for(db, ReviewKind.GATEWAY_EXHAUSTED, refund_id=refund_id)
            resubmitted += 1
    if resubmitted:
        logger.info(f"Resubmitted {resubmitted} parked refunds")
    return resubmitted
