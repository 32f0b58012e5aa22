"""Donation ledger - the single transition function shared by webhook, refund and cancellation paths"""
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable, List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.errors import (
    ValidationError, IllegalTransitionError, LedgerConflictError, DonationNotFoundError
)
from app.core.metrics import donations_created_counter, ledger_transitions_counter
from app.models.donation import Donation
from app.models.refund import Refund
from app.models.states import (
    DonationState, LedgerEvent, RefundState, AuditTrigger, AuditOutcome, ReviewKind
)
from app.services.audit_service import record_transition, record_rejection
from app.services.contribution_limit_service import AggregateIntent, apply_aggregate_intent
from app.services.review_service import open_review_item

logger = logging.getLogger(__name__)
ledger_logger = logging.getLogger("ledger")

S = DonationState
E = LedgerEvent

# (current state, event) -> next state
TRANSITIONS = {
    (S.PENDING, E.CHARGE_SUBMITTED): S.PROCESSING,
    (S.PENDING, E.CHARGE_FAILED): S.FAILED,  # synchronous decline
    (S.PROCESSING, E.CHARGE_COMPLETED): S.COMPLETED,
    (S.PROCESSING, E.CHARGE_FAILED): S.FAILED,
    (S.COMPLETED, E.REFUND_INITIATED): S.REFUND_PENDING,
    (S.REFUND_PENDING, E.REFUND_CONFIRMED): S.REFUNDED,
    (S.REFUND_PENDING, E.REFUND_FAILED): S.COMPLETED,
    (S.PENDING, E.CANCELLED): S.CANCELLED,
    (S.PROCESSING, E.CANCELLED): S.CANCELLED,  # processor-driven only
}

# Where each event leads; receiving it while already there is a no-op
EVENT_TARGETS = {
    E.CHARGE_SUBMITTED: S.PROCESSING,
    E.CHARGE_COMPLETED: S.COMPLETED,
    E.CHARGE_FAILED: S.FAILED,
    E.REFUND_INITIATED: S.REFUND_PENDING,
    E.REFUND_CONFIRMED: S.REFUNDED,
    E.REFUND_FAILED: S.COMPLETED,
    E.CANCELLED: S.CANCELLED,
}

# Donation states in which a partial refund may settle
PARTIAL_REFUND_STATES = frozenset({S.COMPLETED, S.REFUND_PENDING, S.REFUNDED})

Finalizer = Callable[[Session], None]

# Donor data for contributions at or above the itemization threshold
ITEMIZATION_REQUIRED_FIELDS = ("donor_name", "donor_address")
ITEMIZATION_RECOMMENDED_FIELDS = ("donor_employer", "donor_occupation")


def missing_fields(obj, field_names) -> List[str]:
    return [name for name in field_names if not str(getattr(obj, name, None) or "").strip()]


# ============================================================================
# CREATION
# ============================================================================

def validate_donation_request(request) -> None:
    """Reject malformed requests before anything is persisted or charged"""
    if request.amount_cents is None or request.amount_cents <= 0:
        raise ValidationError("amount_cents must be greater than zero", field="amount_cents")
    for field_name in ("donor_id", "fundraiser_id", "organization_id", "jurisdiction", "idempotency_key"):
        value = getattr(request, field_name, None)
        if not value or not str(value).strip():
            raise ValidationError(f"{field_name} is required", field=field_name)
    currency = (request.currency or "").strip()
    if len(currency) != 3 or not currency.isalpha():
        raise ValidationError("currency must be a three-letter ISO code", field="currency")

    threshold = settings.ITEMIZATION_THRESHOLD_CENTS
    if request.amount_cents >= threshold:
        missing = missing_fields(request, ITEMIZATION_REQUIRED_FIELDS)
        if missing:
            raise ValidationError(
                f"Contributions of {threshold} cents or more require {', '.join(missing)}",
                field=missing[0],
                missing_fields=missing
            )


def get_by_idempotency_key(idempotency_key: str, db: Session) -> Optional[Donation]:
    return db.query(Donation).filter(Donation.idempotency_key == idempotency_key).first()


def get_by_transaction_id(external_transaction_id: str, db: Session) -> Optional[Donation]:
    return db.query(Donation).filter(
        Donation.external_transaction_id == external_transaction_id
    ).first()


def create_donation_record(
    request,
    donor_fp: str,
    cycle_ids,
    db: Session,
    limit_override_actor: Optional[str] = None
) -> Donation:
    """Persist a validated request as a pending donation with its creation audit entry"""
    donation = Donation(
        amount_cents=request.amount_cents,
        currency=request.currency.strip().lower(),
        donor_id=request.donor_id,
        donor_email=request.donor_email,
        donor_fingerprint=donor_fp,
        donor_name=getattr(request, "donor_name", None),
        donor_address=getattr(request, "donor_address", None),
        donor_employer=getattr(request, "donor_employer", None),
        donor_occupation=getattr(request, "donor_occupation", None),
        fundraiser_id=request.fundraiser_id,
        organization_id=request.organization_id,
        jurisdiction=request.jurisdiction,
        cycle_ids=list(cycle_ids),
        state=S.PENDING.value,
        idempotency_key=request.idempotency_key,
        limit_override_actor=limit_override_actor
    )
    db.add(donation)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = get_by_idempotency_key(request.idempotency_key, db)
        if existing:
            logger.info(f"Concurrent create for idempotency key {request.idempotency_key}, returning donation {existing.id}")
            return existing
        raise

    record_transition(
        db, donation, None, None, S.PENDING,
        trigger=AuditTrigger.MANUAL,
        details={"amount_cents": donation.amount_cents, "limit_override_actor": limit_override_actor}
    )
    db.commit()
    db.refresh(donation)

    donations_created_counter.inc()
    ledger_logger.info(
        f"Donation {donation.id} created - amount: {donation.amount_cents} {donation.currency}, "
        f"fundraiser: {donation.fundraiser_id}, jurisdiction: {donation.jurisdiction}, cycles: {donation.cycle_ids}"
    )
    return donation


# ============================================================================
# TRANSITIONS
# ============================================================================

def _lock_donation(donation_id: int, db: Session) -> Donation:
    donation = db.query(Donation).filter(
        Donation.id == donation_id
    ).with_for_update().populate_existing().first()
    if not donation:
        raise DonationNotFoundError(f"Donation {donation_id} not found", donation_id=donation_id)
    return donation


def _reject(
    db: Session,
    donation: Donation,
    event: LedgerEvent,
    trigger: AuditTrigger,
    causing_event_id: Optional[str],
    refund_id: Optional[int],
    finalize: Optional[Finalizer],
    reason: Optional[str] = None
):
    """Record an incompatible event and raise, leaving the donation untouched"""
    error = IllegalTransitionError(
        reason or f"Event {event.value} is not allowed for donation {donation.id} in state {donation.state}",
        donation_id=donation.id,
        from_state=donation.state,
        event=event.value
    )
    record_rejection(
        db, error, trigger,
        donation=donation,
        ledger_event=event,
        to_state=EVENT_TARGETS.get(event),
        causing_event_id=causing_event_id,
        refund_id=refund_id
    )
    open_review_item(
        db, ReviewKind.ILLEGAL_TRANSITION,
        donation_id=donation.id,
        refund_id=refund_id,
        processor_event_id=causing_event_id,
        details={"from_state": donation.state, "event": event.value, "trigger": trigger.value}
    )
    if finalize:
        finalize(db)
    db.commit()

    ledger_transitions_counter.labels(event=event.value, outcome="rejected").inc()
    ledger_logger.warning(
        f"Rejected {event.value} for donation {donation.id} in state {donation.state} "
        f"(trigger: {trigger.value}, event: {causing_event_id})"
    )
    raise error


def _noop(db: Session, donation: Donation, event: LedgerEvent, finalize: Optional[Finalizer]) -> Donation:
    if finalize:
        finalize(db)
    db.commit()
    ledger_transitions_counter.labels(event=event.value, outcome="noop").inc()
    logger.info(f"Event {event.value} for donation {donation.id} already reflected in state {donation.state}")
    return donation


def _load_refund(refund_id: Optional[int], donation: Donation, db: Session) -> Optional[Refund]:
    if refund_id is None:
        return None
    refund = db.query(Refund).filter(
        Refund.id == refund_id
    ).with_for_update().populate_existing().first()
    if not refund or refund.donation_id != donation.id:
        raise ValidationError(f"Refund {refund_id} does not belong to donation {donation.id}", refund_id=refund_id)
    return refund


def _settle_partial_refund(
    db: Session,
    donation: Donation,
    refund: Refund,
    event: LedgerEvent,
    trigger: AuditTrigger,
    causing_event_id: Optional[str],
    details: Optional[Dict[str, Any]],
    finalize: Optional[Finalizer]
) -> Donation:
    """Confirm or fail a partial refund; the donation state does not move"""
    target = RefundState.CONFIRMED if event == E.REFUND_CONFIRMED else RefundState.FAILED
    if refund.state == target.value:
        return _noop(db, donation, event, finalize)
    if refund.state != RefundState.PENDING.value or S(donation.state) not in PARTIAL_REFUND_STATES:
        _reject(
            db, donation, event, trigger, causing_event_id, refund.id, finalize,
            reason=f"Refund {refund.id} is {refund.state}; cannot apply {event.value}"
        )

    delta = 0
    refund.state = target.value
    if target == RefundState.CONFIRMED:
        refund.confirmed_at = datetime.now(timezone.utc)
        delta = -refund.amount_cents
        apply_aggregate_intent(db, AggregateIntent(
            donation_id=donation.id,
            donor_fingerprint=donation.donor_fingerprint,
            jurisdiction=donation.jurisdiction,
            cycle_ids=list(donation.cycle_ids or []),
            delta_cents=delta,
            ledger_event=event.value,
            refund_id=refund.id,
            causing_event_id=causing_event_id
        ))

    record_transition(
        db, donation, event, donation.state, donation.state,
        trigger=trigger,
        causing_event_id=causing_event_id,
        refund_id=refund.id,
        aggregate_delta_cents=delta,
        details={**(details or {}), "partial_refund": True, "refund_amount_cents": refund.amount_cents}
    )
    if finalize:
        finalize(db)
    db.commit()
    db.refresh(donation)

    ledger_transitions_counter.labels(event=event.value, outcome="applied").inc()
    ledger_logger.info(f"Partial refund {refund.id} on donation {donation.id} {target.value} ({refund.amount_cents} cents)")
    return donation


def _apply(
    db: Session,
    donation_id: int,
    event: LedgerEvent,
    trigger: AuditTrigger,
    causing_event_id: Optional[str],
    external_transaction_id: Optional[str],
    failure_reason: Optional[str],
    refund_id: Optional[int],
    details: Optional[Dict[str, Any]],
    finalize: Optional[Finalizer]
) -> Donation:
    donation = _lock_donation(donation_id, db)
    current = S(donation.state)
    refund = _load_refund(refund_id, donation, db)

    if refund is not None and not refund.is_full and event in (E.REFUND_CONFIRMED, E.REFUND_FAILED):
        return _settle_partial_refund(db, donation, refund, event, trigger, causing_event_id, details, finalize)

    # The processor's webhook can bind and settle a charge before the submit call returns
    if (
        event == E.CHARGE_SUBMITTED
        and current != S.PENDING
        and external_transaction_id
        and donation.external_transaction_id == external_transaction_id
    ):
        return _noop(db, donation, event, finalize)

    if event == E.CANCELLED and trigger == AuditTrigger.CANCEL and current != S.CANCELLED:
        if current != S.PENDING or donation.charge_parked:
            _reject(
                db, donation, event, trigger, causing_event_id, refund_id, finalize,
                reason=f"Donation {donation.id} cannot be cancelled in state {donation.state}"
                + (" with a parked charge" if donation.charge_parked else "")
            )

    target = TRANSITIONS.get((current, event))
    if target is None:
        if EVENT_TARGETS[event] == current:
            return _noop(db, donation, event, finalize)
        _reject(db, donation, event, trigger, causing_event_id, refund_id, finalize)

    if event in (E.REFUND_CONFIRMED, E.REFUND_FAILED) and refund is None:
        raise ValidationError(f"{event.value} requires the refund it settles", donation_id=donation.id)

    delta = 0
    intent = None
    if event == E.CHARGE_SUBMITTED and external_transaction_id:
        donation.external_transaction_id = external_transaction_id
    elif event == E.CHARGE_COMPLETED:
        delta = donation.amount_cents
    elif event == E.REFUND_CONFIRMED:
        refund.state = RefundState.CONFIRMED.value
        refund.confirmed_at = datetime.now(timezone.utc)
        delta = -refund.amount_cents
    elif event == E.REFUND_FAILED:
        refund.state = RefundState.FAILED.value
    if event in (E.CHARGE_FAILED, E.CANCELLED) and failure_reason:
        donation.failure_reason = failure_reason
    if current == S.PENDING:
        donation.charge_parked = False

    if delta:
        intent = AggregateIntent(
            donation_id=donation.id,
            donor_fingerprint=donation.donor_fingerprint,
            jurisdiction=donation.jurisdiction,
            cycle_ids=list(donation.cycle_ids or []),
            delta_cents=delta,
            ledger_event=event.value,
            refund_id=refund_id,
            causing_event_id=causing_event_id,
            limit_override_actor=donation.limit_override_actor,
            missing_donor_fields=missing_fields(donation, ITEMIZATION_REQUIRED_FIELDS + ITEMIZATION_RECOMMENDED_FIELDS),
        )

    donation.state = target.value
    record_transition(
        db, donation, event, current, target,
        trigger=trigger,
        causing_event_id=causing_event_id,
        refund_id=refund_id,
        aggregate_delta_cents=delta,
        details=details
    )
    if intent:
        apply_aggregate_intent(db, intent)
    if finalize:
        finalize(db)
    db.commit()
    db.refresh(donation)

    ledger_transitions_counter.labels(event=event.value, outcome="applied").inc()
    ledger_logger.info(
        f"Donation {donation.id}: {current.value} -> {target.value} on {event.value} "
        f"(trigger: {trigger.value}, event: {causing_event_id}, delta: {delta})"
    )
    return donation


def transition(
    donation_id: int,
    event: LedgerEvent,
    db: Session,
    trigger: AuditTrigger = AuditTrigger.MANUAL,
    causing_event_id: Optional[str] = None,
    external_transaction_id: Optional[str] = None,
    failure_reason: Optional[str] = None,
    refund_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
    finalize: Optional[Finalizer] = None
) -> Donation:
    """Apply a ledger event to a donation.

    The state change, its audit entry and any aggregate update commit together.
    `finalize` runs inside the same transaction right before every commit,
    including no-op and rejection commits, so callers can mark their own
    bookkeeping (e.g. a webhook event as processed) atomically.

    Raises:
        IllegalTransitionError: event incompatible with the current state
            (audited and queued for review, donation unchanged)
        LedgerConflictError: concurrent writers kept winning after retries
        DonationNotFoundError: no such donation
    """
    event = E(event)
    for attempt in range(1, settings.LEDGER_MAX_CONFLICT_RETRIES + 1):
        try:
            return _apply(
                db, donation_id, event, trigger, causing_event_id,
                external_transaction_id, failure_reason, refund_id, details, finalize
            )
        except StaleDataError:
            db.rollback()
            logger.warning(
                f"Version conflict on donation {donation_id} applying {event.value} "
                f"(attempt {attempt}/{settings.LEDGER_MAX_CONFLICT_RETRIES})"
            )
        except IntegrityError as e:
            db.rollback()
            raise ValidationError(
                f"Transition {event.value} violates a ledger constraint for donation {donation_id}",
                donation_id=donation_id,
                reason=str(e.orig)
            )
        except LedgerConflictError:
            db.rollback()
            raise

    ledger_transitions_counter.labels(event=event.value, outcome="conflict").inc()
    raise LedgerConflictError(
        f"Donation {donation_id} kept changing while applying {event.value}",
        donation_id=donation_id
    )


def park_charge(donation_id: int, error, db: Session) -> Donation:
    """Mark a donation whose charge outcome is unknown after exhausted gateway retries.

    The donation stays pending and cannot be cancelled by the user until a
    retry or a processor event settles it.
    """
    for attempt in range(1, settings.LEDGER_MAX_CONFLICT_RETRIES + 1):
        try:
            donation = _lock_donation(donation_id, db)
            donation.charge_parked = True
            record_rejection(
                db, error, AuditTrigger.CHARGE,
                donation=donation,
                ledger_event=E.CHARGE_SUBMITTED,
                to_state=S.PROCESSING,
                outcome=AuditOutcome.ERROR
            )
            open_review_item(
                db, ReviewKind.GATEWAY_EXHAUSTED,
                donation_id=donation.id,
                details={"operation": "charge", "message": error.message}
            )
            db.commit()
            db.refresh(donation)
            ledger_logger.error(f"Charge for donation {donation.id} parked: {error.message}")
            return donation
        except StaleDataError:
            db.rollback()
            logger.warning(f"Version conflict parking donation {donation_id} (attempt {attempt})")

    raise LedgerConflictError(f"Could not park donation {donation_id}", donation_id=donation_id)
