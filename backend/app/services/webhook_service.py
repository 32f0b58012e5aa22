"""Processor webhook ingestion - signature check, dedup, ordering and application to the ledger"""
import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Iterable

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    AuthenticationError, IllegalTransitionError, TransientError,
    UnknownDonationError, UnsupportedEventError, ValidationError
)
from app.core.metrics import webhook_events_counter
from app.core.otel import tracer
from app.db.redis import acquire_lock, release_lock, webhook_lock_key
from app.models.donation import Donation
from app.models.refund import Refund
from app.models.states import LedgerEvent, AuditTrigger, ReviewKind
from app.models.webhook_event import WebhookEvent
from app.services import ledger_service
from app.services.audit_service import record_rejection
from app.services.review_service import open_review_item
from app.services.refund_service import get_refund_by_gateway_id

logger = logging.getLogger(__name__)
webhook_logger = logging.getLogger("webhook")

PAYMENT_INTENT_EVENTS = {
    "payment_intent.processing": LedgerEvent.CHARGE_SUBMITTED,
    "payment_intent.succeeded": LedgerEvent.CHARGE_COMPLETED,
    "payment_intent.payment_failed": LedgerEvent.CHARGE_FAILED,
    "payment_intent.canceled": LedgerEvent.CANCELLED,
}
REFUND_EVENTS = ("refund.created", "refund.updated", "refund.failed")
SUPPORTED_EVENT_TYPES = tuple(PAYMENT_INTENT_EVENTS) + REFUND_EVENTS

# Lower applies first within a batch
EVENT_PRIORITY = {
    LedgerEvent.CHARGE_SUBMITTED: 0,
    LedgerEvent.CHARGE_COMPLETED: 1,
    LedgerEvent.CHARGE_FAILED: 1,
    LedgerEvent.CANCELLED: 1,
    LedgerEvent.REFUND_CONFIRMED: 2,
    LedgerEvent.REFUND_FAILED: 2,
}
UNSUPPORTED_PRIORITY = 3


@dataclass(frozen=True)
class ProcessorEvent:
    """A processor event narrowed to one of the ledger's recognized variants"""
    event_id: str
    event_type: str
    ledger_event: LedgerEvent
    transaction_id: Optional[str]
    amount_cents: Optional[int]
    created: int = 0
    donation_id: Optional[int] = None  # from charge metadata
    gateway_refund_id: Optional[str] = None
    refund_id: Optional[int] = None  # from refund metadata
    failure_reason: Optional[str] = None

    @property
    def is_refund(self) -> bool:
        return self.ledger_event in (LedgerEvent.REFUND_CONFIRMED, LedgerEvent.REFUND_FAILED)


# ============================================================================
# PARSING
# ============================================================================

def _field(obj: Any, key: str, default=None):
    """Read a key from a Stripe object or a plain dict"""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
    else:
        try:
            value = obj[key]
        except (KeyError, TypeError):
            value = getattr(obj, key, default)
    return default if value is None else value


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value) if value is not None and value != "" else None
    except (TypeError, ValueError):
        return None


def parse_processor_event(event) -> ProcessorEvent:
    """Map a Stripe event onto the closed set of ledger event variants.

    Raises UnsupportedEventError for anything outside that set, including
    refund notifications that have not reached a final status yet.
    """
    event_id = _field(event, "id")
    event_type = _field(event, "type")
    if not event_id or not event_type:
        raise ValidationError("Processor event is missing id or type")

    obj = _field(_field(event, "data"), "object")
    if obj is None:
        raise ValidationError(f"Processor event {event_id} has no data object")
    metadata = _field(obj, "metadata", {})
    created = _int_or_none(_field(event, "created")) or 0

    if event_type in PAYMENT_INTENT_EVENTS:
        failure_reason = None
        if event_type == "payment_intent.payment_failed":
            failure_reason = _field(_field(obj, "last_payment_error"), "message", "payment failed")
        elif event_type == "payment_intent.canceled":
            failure_reason = _field(obj, "cancellation_reason", "canceled by processor")
        return ProcessorEvent(
            event_id=event_id,
            event_type=event_type,
            ledger_event=PAYMENT_INTENT_EVENTS[event_type],
            transaction_id=_field(obj, "id"),
            amount_cents=_int_or_none(_field(obj, "amount_received") or _field(obj, "amount")),
            created=created,
            donation_id=_int_or_none(_field(metadata, "donation_id")),
            failure_reason=failure_reason
        )

    if event_type in REFUND_EVENTS:
        status = _field(obj, "status")
        if event_type == "refund.failed" or status in ("failed", "canceled"):
            ledger_event = LedgerEvent.REFUND_FAILED
        elif status == "succeeded":
            ledger_event = LedgerEvent.REFUND_CONFIRMED
        else:
            raise UnsupportedEventError(
                f"Refund event {event_id} has non-final status {status}",
                event_type=event_type,
                status=status
            )
        return ProcessorEvent(
            event_id=event_id,
            event_type=event_type,
            ledger_event=ledger_event,
            transaction_id=_field(obj, "payment_intent"),
            amount_cents=_int_or_none(_field(obj, "amount")),
            created=created,
            gateway_refund_id=_field(obj, "id"),
            refund_id=_int_or_none(_field(metadata, "refund_id")),
            failure_reason=_field(obj, "failure_reason")
        )

    raise UnsupportedEventError(f"Unsupported processor event type {event_type}", event_type=event_type)


# ============================================================================
# EVENT LOG
# ============================================================================

def _payload_dict(event) -> Dict[str, Any]:
    if isinstance(event, dict):
        return json.loads(json.dumps(event))
    return json.loads(str(event))


def record_webhook_event(event_id: str, event_type: str, payload: Dict[str, Any], payload_hash: str, db: Session) -> WebhookEvent:
    """Insert the event log row if this event id has not been seen"""
    record = db.query(WebhookEvent).filter(WebhookEvent.processor_event_id == event_id).first()
    if record:
        if record.payload_hash != payload_hash:
            webhook_logger.warning(f"Event {event_id} redelivered with a different payload; treating as replay")
        return record

    record = WebhookEvent(
        processor_event_id=event_id,
        event_type=event_type,
        payload_hash=payload_hash,
        payload=payload
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return db.query(WebhookEvent).filter(WebhookEvent.processor_event_id == event_id).one()
    db.refresh(record)
    return record


def _mark_processed(record: WebhookEvent, outcome: str, error_message: Optional[str] = None):
    record.processed_at = datetime.now(timezone.utc)
    record.outcome = outcome
    record.error_message = error_message


# ============================================================================
# INGESTION
# ============================================================================

def ingest_webhook_event(payload: bytes, sig_header: Optional[str], db: Session) -> Dict[str, Any]:
    """Verify a raw webhook delivery and apply it at most once.

    Raises:
        AuthenticationError: signature or payload could not be verified
        UnknownDonationError: no ledger record for the transaction yet
        TransientError: retryable failure, event left unprocessed
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        webhook_logger.error("Webhook secret not configured")
        raise AuthenticationError("Webhook secret not configured")
    if not sig_header:
        raise AuthenticationError("Missing stripe-signature header")

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError as e:
        webhook_events_counter.labels(outcome="auth_failed").inc()
        webhook_logger.error(f"Invalid webhook payload: {e}")
        raise AuthenticationError("Invalid payload")
    except stripe.SignatureVerificationError as e:
        webhook_events_counter.labels(outcome="auth_failed").inc()
        webhook_logger.error(f"Invalid webhook signature: {e}")
        raise AuthenticationError("Invalid signature")

    raw = payload if isinstance(payload, bytes) else payload.encode("utf-8")
    return process_event(
        event, db,
        payload=json.loads(raw),
        payload_hash=hashlib.sha256(raw).hexdigest()
    )


def process_event(
    event,
    db: Session,
    payload: Optional[Dict[str, Any]] = None,
    payload_hash: Optional[str] = None
) -> Dict[str, Any]:
    """Dedup and apply an authenticated event, serialized per event id"""
    event_id = _field(event, "id")
    event_type = _field(event, "type", "unknown")
    if not event_id:
        raise ValidationError("Processor event is missing an id")
    if payload is None:
        payload = _payload_dict(event)
    if payload_hash is None:
        payload_hash = hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()

    lock_key = webhook_lock_key(event_id)
    owner = uuid.uuid4().hex
    if not acquire_lock(lock_key, timeout=settings.WEBHOOK_LOCK_TIMEOUT, owner=owner):
        webhook_events_counter.labels(outcome="in_progress").inc()
        webhook_logger.info(f"Event {event_id} is already being processed")
        return {"status": "in_progress", "event_id": event_id}

    try:
        with tracer.start_as_current_span(
            "webhook.process", attributes={"processor.event_id": event_id, "processor.event_type": event_type}
        ):
            record = record_webhook_event(event_id, event_type, payload, payload_hash, db)
            if record.processed_at is not None:
                webhook_events_counter.labels(outcome="duplicate").inc()
                webhook_logger.info(f"Webhook event {event_id} already processed")
                return {"status": "already_processed", "event_id": event_id}
            return apply_processor_event(record, event, db)
    finally:
        release_lock(lock_key, owner=owner)


def _resolve_donation(parsed: ProcessorEvent, db: Session) -> Optional[Donation]:
    donation = None
    if parsed.transaction_id:
        donation = ledger_service.get_by_transaction_id(parsed.transaction_id, db)
    if donation is None and parsed.donation_id is not None:
        # A parked charge was never bound; metadata carries our id. Unparked
        # donations bind through submit_charge, so their events wait for redelivery.
        candidate = db.query(Donation).filter(Donation.id == parsed.donation_id).first()
        if candidate is not None and candidate.external_transaction_id is None and candidate.charge_parked:
            donation = candidate
    return donation


def _resolve_refund(parsed: ProcessorEvent, donation: Donation, db: Session) -> Optional[Refund]:
    refund = None
    if parsed.gateway_refund_id:
        refund = get_refund_by_gateway_id(parsed.gateway_refund_id, db)
    if refund is None and parsed.refund_id is not None:
        refund = db.query(Refund).filter(Refund.id == parsed.refund_id).first()
        if refund is not None and parsed.gateway_refund_id and refund.gateway_refund_id is None:
            refund.gateway_refund_id = parsed.gateway_refund_id
            db.flush()
    if refund is not None and refund.donation_id != donation.id:
        return None
    return refund


def _unknown(record: WebhookEvent, parsed: ProcessorEvent, db: Session, message: str):
    open_review_item(
        db, ReviewKind.UNKNOWN_DONATION,
        processor_event_id=parsed.event_id,
        details={
            "event_type": parsed.event_type,
            "transaction_id": parsed.transaction_id,
            "gateway_refund_id": parsed.gateway_refund_id,
            "amount_cents": parsed.amount_cents,
        }
    )
    record.outcome = "unknown_donation"
    record.error_message = message
    db.commit()
    webhook_events_counter.labels(outcome="unknown_donation").inc()
    webhook_logger.warning(f"Event {parsed.event_id}: {message}")
    raise UnknownDonationError(message, processor_event_id=parsed.event_id, transaction_id=parsed.transaction_id)


def apply_processor_event(record: WebhookEvent, event, db: Session) -> Dict[str, Any]:
    """Apply a logged, unprocessed event to the ledger"""
    try:
        parsed = parse_processor_event(event)
    except ValidationError as e:
        _mark_processed(record, "rejected", e.message)
        db.commit()
        webhook_events_counter.labels(outcome="rejected").inc()
        webhook_logger.info(f"Event {record.processor_event_id} not applied: {e.message}")
        return {"status": "rejected", "event_id": record.processor_event_id, "reason": e.message}

    donation = _resolve_donation(parsed, db)
    if donation is None:
        _unknown(record, parsed, db, f"No donation for transaction {parsed.transaction_id}")

    refund = None
    if parsed.is_refund:
        refund = _resolve_refund(parsed, donation, db)
        if refund is None:
            _unknown(record, parsed, db, f"No refund record for processor refund {parsed.gateway_refund_id}")

    if (
        parsed.ledger_event == LedgerEvent.CHARGE_COMPLETED
        and parsed.amount_cents is not None
        and parsed.amount_cents != donation.amount_cents
    ):
        message = f"Processor amount {parsed.amount_cents} does not match donation amount {donation.amount_cents}"
        record_rejection(
            db, ValidationError(message, processor_amount_cents=parsed.amount_cents),
            AuditTrigger.WEBHOOK,
            donation=donation,
            ledger_event=parsed.ledger_event,
            causing_event_id=parsed.event_id
        )
        open_review_item(
            db, ReviewKind.AMOUNT_MISMATCH,
            donation_id=donation.id,
            processor_event_id=parsed.event_id,
            details={"processor_amount_cents": parsed.amount_cents, "donation_amount_cents": donation.amount_cents}
        )
        _mark_processed(record, "amount_mismatch", message)
        db.commit()
        webhook_events_counter.labels(outcome="amount_mismatch").inc()
        webhook_logger.error(f"Event {parsed.event_id} for donation {donation.id}: {message}")
        return {"status": "amount_mismatch", "event_id": parsed.event_id, "donation_id": donation.id}

    def finalize(session: Session):
        _mark_processed(record, "applied")

    try:
        if parsed.is_refund:
            updated = ledger_service.transition(
                donation.id, parsed.ledger_event, db,
                trigger=AuditTrigger.WEBHOOK,
                causing_event_id=parsed.event_id,
                refund_id=refund.id,
                details={"event_type": parsed.event_type, "gateway_refund_id": parsed.gateway_refund_id},
                finalize=finalize
            )
        else:
            if parsed.ledger_event == LedgerEvent.CHARGE_COMPLETED and donation.external_transaction_id is None:
                # Bind the processor transaction before completing a parked charge
                ledger_service.transition(
                    donation.id, LedgerEvent.CHARGE_SUBMITTED, db,
                    trigger=AuditTrigger.WEBHOOK,
                    causing_event_id=parsed.event_id,
                    external_transaction_id=parsed.transaction_id
                )
            updated = ledger_service.transition(
                donation.id, parsed.ledger_event, db,
                trigger=AuditTrigger.WEBHOOK,
                causing_event_id=parsed.event_id,
                external_transaction_id=parsed.transaction_id,
                failure_reason=parsed.failure_reason,
                details={"event_type": parsed.event_type},
                finalize=finalize
            )
    except IllegalTransitionError as e:
        _mark_processed(record, "conflict", e.message)
        db.commit()
        webhook_events_counter.labels(outcome="conflict").inc()
        webhook_logger.warning(f"Event {parsed.event_id} conflicts with donation {donation.id}: {e.message}")
        return {
            "status": "conflict",
            "event_id": parsed.event_id,
            "donation_id": donation.id,
            "state": e.from_state,
        }
    except TransientError:
        db.rollback()
        webhook_events_counter.labels(outcome="transient_error").inc()
        webhook_logger.warning(f"Event {parsed.event_id} left unprocessed after a transient failure")
        raise

    webhook_events_counter.labels(outcome="applied").inc()
    webhook_logger.info(
        f"Applied {parsed.event_type} ({parsed.event_id}) to donation {updated.id}, now {updated.state}"
    )
    return {"status": "processed", "event_id": parsed.event_id, "donation_id": updated.id, "state": updated.state}


# ============================================================================
# BATCH INGESTION
# ============================================================================

def _batch_priority(event) -> int:
    try:
        return EVENT_PRIORITY[parse_processor_event(event).ledger_event]
    except ValidationError:
        return UNSUPPORTED_PRIORITY


def order_event_batch(events: Iterable) -> List:
    """Submission before completion/failure before reversal, then oldest first"""
    return sorted(events, key=lambda e: (_batch_priority(e), _int_or_none(_field(e, "created")) or 0))


def ingest_event_batch(events: Iterable, db: Session) -> List[Dict[str, Any]]:
    """Apply already-authenticated events in dependency order.

    Events that cannot be applied yet stay unprocessed and do not stop the batch.
    """
    results = []
    for event in order_event_batch(events):
        event_id = _field(event, "id")
        try:
            results.append(process_event(event, db))
        except (UnknownDonationError, TransientError) as e:
            results.append({"status": "deferred", "event_id": event_id, "error": e.code})
        except ValidationError as e:
            webhook_logger.error(f"Malformed event in batch: {e.message}")
            results.append({"status": "invalid", "event_id": event_id, "error": e.code})
    return results


def sync_missed_events(db: Session, gateway=None) -> List[Dict[str, Any]]:
    """Pull recent processor events and feed any that never arrived through batch ingestion"""
    from app.services.payment_gateway import get_gateway

    gateway = gateway or get_gateway()
    created_after = int(time.time()) - settings.EVENT_SYNC_LOOKBACK_SECONDS
    events = gateway.list_events(created_after, SUPPORTED_EVENT_TYPES)

    seen = {
        row[0] for row in db.query(WebhookEvent.processor_event_id).filter(
            WebhookEvent.processor_event_id.in_([_field(e, "id") for e in events]),
            WebhookEvent.processed_at.isnot(None)
        ).all()
    } if events else set()
    missed = [e for e in events if _field(e, "id") not in seen]
    if not missed:
        return []

    webhook_logger.info(f"Event sync found {len(missed)} unprocessed events")
    return ingest_event_batch(missed, db)
