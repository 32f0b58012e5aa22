"""Donation service - creation with limit pre-check, charge submission and cancellation"""
import logging
from typing import Optional, List

from sqlalchemy.orm import Session

from app.core.errors import (
    ChargeDeclinedError, ComplianceError, DonationNotFoundError, ExternalGatewayError,
    LimitExceededError
)
from app.core.metrics import limit_rejections_counter, scheduler_runs_counter
from app.core.otel import tracer
from app.models.donation import Donation
from app.models.states import DonationState, LedgerEvent, AuditTrigger, ReviewKind
from app.services import ledger_service
from app.services.audit_service import record_rejection
from app.services.authorization_service import require_capability, LIMIT_OVERRIDE
from app.services.contribution_limit_service import (
    donor_fingerprint, resolve_active_cycles, check_limits, donor_limit_lock
)
from app.services.payment_gateway import get_gateway
from app.services.review_service import open_review_item, resolve_open_items_for

logger = logging.getLogger(__name__)
compliance_logger = logging.getLogger("compliance")


def get_donation(donation_id: int, db: Session) -> Donation:
    donation = db.query(Donation).filter(Donation.id == donation_id).first()
    if not donation:
        raise DonationNotFoundError(f"Donation {donation_id} not found", donation_id=donation_id)
    return donation


def create_donation(request, db: Session, gateway=None) -> Donation:
    """Create a donation and submit its charge.

    Order matters: validation, then the limit pre-check (serialized per donor
    and jurisdiction), then the pending record, then the gateway. A rejected
    request is never charged.

    Raises:
        ValidationError: malformed request
        AuthorizationError: limit override requested without the capability
        LimitExceededError: contribution would exceed a window's limit
        LedgerConflictError: limit lock could not be acquired in time
    """
    existing = ledger_service.get_by_idempotency_key(request.idempotency_key, db) if request.idempotency_key else None
    if existing:
        logger.info(f"Returning existing donation {existing.id} for idempotency key {request.idempotency_key}")
        return existing

    ledger_service.validate_donation_request(request)

    override_actor = request.limit_override_actor
    if override_actor:
        require_capability(override_actor, LIMIT_OVERRIDE, request.organization_id)

    donor_fp = donor_fingerprint(request.donor_id, request.donor_email)
    cycle_ids = list(request.cycle_ids) if request.cycle_ids else resolve_active_cycles(request.jurisdiction, db)

    with donor_limit_lock(donor_fp, request.jurisdiction):
        if override_actor:
            compliance_logger.warning(
                f"Limit check overridden by {override_actor} for donor {donor_fp[:8]} "
                f"in {request.jurisdiction} ({request.amount_cents} cents)"
            )
        else:
            try:
                check_limits(donor_fp, request.amount_cents, request.jurisdiction, cycle_ids, db)
            except LimitExceededError as e:
                record_rejection(
                    db, e, AuditTrigger.LIMIT,
                    ledger_event=None,
                    details={
                        "amount_cents": request.amount_cents,
                        "fundraiser_id": request.fundraiser_id,
                        "idempotency_key": request.idempotency_key,
                    }
                )
                db.commit()
                limit_rejections_counter.labels(jurisdiction=request.jurisdiction).inc()
                compliance_logger.info(f"Donation rejected by limit pre-check: {e.message}")
                raise

        donation = ledger_service.create_donation_record(
            request, donor_fp, cycle_ids, db, limit_override_actor=override_actor
        )

    if override_actor:
        open_review_item(
            db, ReviewKind.LIMIT_OVERRIDE,
            donation_id=donation.id,
            details={"actor": override_actor, "amount_cents": donation.amount_cents, "cycle_ids": cycle_ids}
        )
        db.commit()

    return submit_charge(donation.id, db, gateway=gateway, payment_method_id=request.payment_method_id)


def submit_charge(donation_id: int, db: Session, gateway=None, payment_method_id: Optional[str] = None) -> Donation:
    """Send a pending donation to the processor and record the outcome.

    A definitive decline fails the donation; exhausted retries park it pending.
    """
    gateway = gateway or get_gateway()
    donation = get_donation(donation_id, db)

    try:
        with tracer.start_as_current_span("gateway.charge", attributes={"donation.id": donation.id}):
            result = gateway.charge(donation, payment_method_id=payment_method_id)
    except ChargeDeclinedError as e:
        logger.info(f"Charge for donation {donation_id} declined: {e.message}")
        return ledger_service.transition(
            donation_id, LedgerEvent.CHARGE_FAILED, db,
            trigger=AuditTrigger.CHARGE,
            failure_reason=e.message,
            details=e.details
        )
    except ExternalGatewayError as e:
        return ledger_service.park_charge(donation_id, e, db)

    return ledger_service.transition(
        donation_id, LedgerEvent.CHARGE_SUBMITTED, db,
        trigger=AuditTrigger.CHARGE,
        external_transaction_id=result.transaction_id,
        details={"gateway_status": result.status}
    )


def cancel_donation(donation_id: int, actor: str, db: Session, reason: Optional[str] = None) -> Donation:
    """User-initiated cancellation, allowed only before any charge is in flight"""
    get_donation(donation_id, db)
    return ledger_service.transition(
        donation_id, LedgerEvent.CANCELLED, db,
        trigger=AuditTrigger.CANCEL,
        failure_reason=reason or f"Cancelled by {actor}",
        details={"actor": actor, "reason": reason}
    )


def list_parked_charges(db: Session, limit: int = 50) -> List[Donation]:
    return db.query(Donation).filter(
        Donation.state == DonationState.PENDING.value,
        Donation.charge_parked.is_(True)
    ).order_by(Donation.id).limit(limit).all()


def retry_parked_charges(db: Session, gateway=None) -> int:
    """Resubmit parked charges; the idempotency key makes a resubmission safe"""
    resubmitted = 0
    for donation in list_parked_charges(db):
        donation_id = donation.id
        try:
            updated = submit_charge(donation_id, db, gateway=gateway)
        except ComplianceError as e:
            db.rollback()
            scheduler_runs_counter.labels(job="retry_charge", status="error").inc()
            logger.error(f"Retry of parked charge for donation {donation_id} failed: {e.code} - {e.message}")
            continue
        if updated.state != DonationState.PENDING.value:
            resolve_open_items_for(db, ReviewKind.GATEWAY_EXHAUSTED, donation_id=donation_id)
            resubmitted += 1
    if resubmitted:
        logger.info(f"Resubmitted {resubmitted} parked charges")
    return resubmitted
