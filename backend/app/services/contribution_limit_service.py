"""Contribution limit engine - donor aggregates per compliance window"""
import hashlib
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

import redis
from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import LimitExceededError, LedgerConflictError, ValidationError
from app.core.metrics import aggregate_anomalies_counter
from app.db.redis import (
    acquire_lock, release_lock, limit_lock_key,
    get_cached_limit, set_cached_limit, invalidate_limit_cache
)
from app.models.contribution_limit import ContributionLimit
from app.models.donation import Donation
from app.models.donor_aggregate import DonorAggregate
from app.models.states import IN_FLIGHT_STATES, ReviewKind
from app.services.review_service import open_review_item

logger = logging.getLogger(__name__)
compliance_logger = logging.getLogger("compliance")


@dataclass
class LimitCheck:
    cycle_id: str
    limit_cents: Optional[int]  # None when no limit is configured
    current_cents: int
    in_flight_cents: int
    proposed_cents: int

    @property
    def projected_cents(self) -> int:
        return self.current_cents + self.in_flight_cents + self.proposed_cents

    @property
    def within_limit(self) -> bool:
        return self.limit_cents is None or self.projected_cents <= self.limit_cents

    @property
    def remaining_cents(self) -> Optional[int]:
        if self.limit_cents is None:
            return None
        return max(0, self.limit_cents - self.current_cents - self.in_flight_cents)


@dataclass
class AggregateIntent:
    """Emitted by the ledger when a committed transition moves money in or out of a donor's totals"""
    donation_id: int
    donor_fingerprint: str
    jurisdiction: str
    cycle_ids: List[str]
    delta_cents: int
    ledger_event: str
    refund_id: Optional[int] = None
    causing_event_id: Optional[str] = None
    limit_override_actor: Optional[str] = None
    missing_donor_fields: List[str] = field(default_factory=list)


@dataclass
class AggregateChange:
    cycle_id: str
    before_cents: int
    after_cents: int
    clamped: bool = False
    flags: List[str] = field(default_factory=list)


# ============================================================================
# DONOR IDENTITY
# ============================================================================

def donor_fingerprint(donor_id: str, donor_email: Optional[str] = None) -> str:
    """Stable key used to aggregate one donor's contributions.

    The verified email is preferred so several donor records belonging to the
    same person aggregate together; the donor id is the fallback.
    """
    if donor_email and donor_email.strip():
        basis = f"email:{donor_email.strip().lower()}"
    else:
        basis = f"id:{donor_id.strip()}"
    return hashlib.sha256(basis.encode("utf-8")).hexdigest()


# ============================================================================
# LIMIT CONFIGURATION STORE
# ============================================================================

def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_limit(jurisdiction: str, cycle_id: str, db: Session) -> Optional[int]:
    """Configured per-donor limit in cents for a window, or None when unlimited"""
    try:
        cached = get_cached_limit(jurisdiction, cycle_id)
        if cached is not None:
            return cached["limit_cents"]
    except redis.RedisError as e:
        logger.warning(f"Limit cache unavailable, reading from database: {e}")

    row = db.query(ContributionLimit).filter(
        ContributionLimit.jurisdiction == jurisdiction,
        ContributionLimit.cycle_id == cycle_id
    ).first()
    limit_cents = row.limit_cents if row else None

    try:
        set_cached_limit(jurisdiction, cycle_id, limit_cents)
    except redis.RedisError as e:
        logger.warning(f"Failed to cache limit for {jurisdiction}/{cycle_id}: {e}")
    return limit_cents


def set_limit(
    jurisdiction: str,
    cycle_id: str,
    limit_cents: int,
    db: Session,
    window_start: Optional[datetime] = None,
    window_end: Optional[datetime] = None
) -> ContributionLimit:
    """Create or update a window's limit"""
    if limit_cents <= 0:
        raise ValidationError("limit_cents must be positive", field="limit_cents")
    if window_start and window_end and _as_utc(window_end) <= _as_utc(window_start):
        raise ValidationError("window_end must be after window_start", field="window_end")

    row = db.query(ContributionLimit).filter(
        ContributionLimit.jurisdiction == jurisdiction,
        ContributionLimit.cycle_id == cycle_id
    ).first()
    if row is None:
        row = ContributionLimit(jurisdiction=jurisdiction, cycle_id=cycle_id, limit_cents=limit_cents)
        db.add(row)
    row.limit_cents = limit_cents
    row.window_start = window_start
    row.window_end = window_end
    db.commit()
    db.refresh(row)

    try:
        invalidate_limit_cache(jurisdiction, cycle_id)
    except redis.RedisError as e:
        logger.warning(f"Failed to invalidate limit cache for {jurisdiction}/{cycle_id}: {e}")

    compliance_logger.info(f"Limit for {jurisdiction}/{cycle_id} set to {limit_cents} cents")
    return row


def resolve_active_cycles(jurisdiction: str, db: Session, at: Optional[datetime] = None) -> List[str]:
    """Every configured window for the jurisdiction that contains the given instant"""
    at = _as_utc(at) or datetime.now(timezone.utc)
    rows = db.query(ContributionLimit).filter(
        ContributionLimit.jurisdiction == jurisdiction
    ).order_by(ContributionLimit.cycle_id).all()

    active = []
    for row in rows:
        start, end = _as_utc(row.window_start), _as_utc(row.window_end)
        if start is not None and at < start:
            continue
        if end is not None and at >= end:
            continue
        active.append(row.cycle_id)
    return active


# ============================================================================
# AGGREGATES
# ============================================================================

def get_donor_aggregate(donor_fp: str, cycle_id: str, jurisdiction: str, db: Session) -> int:
    """Current total in cents for (donor, cycle, jurisdiction); 0 when no row exists"""
    row = db.query(DonorAggregate).filter(
        DonorAggregate.donor_fingerprint == donor_fp,
        DonorAggregate.jurisdiction == jurisdiction,
        DonorAggregate.cycle_id == cycle_id
    ).first()
    return row.total_cents if row else 0


def get_in_flight_cents(
    donor_fp: str,
    jurisdiction: str,
    cycle_id: str,
    db: Session,
    exclude_donation_id: Optional[int] = None
) -> int:
    """Sum of this donor's pending/processing donations that count against the window"""
    query = db.query(Donation).filter(
        Donation.donor_fingerprint == donor_fp,
        Donation.jurisdiction == jurisdiction,
        Donation.state.in_([s.value for s in IN_FLIGHT_STATES])
    )
    if exclude_donation_id is not None:
        query = query.filter(Donation.id != exclude_donation_id)
    return sum(d.amount_cents for d in query.all() if cycle_id in (d.cycle_ids or []))


def check_limit(donor_fp: str, amount_cents: int, jurisdiction: str, cycle_id: str, db: Session) -> LimitCheck:
    """Pre-check a proposed contribution against one window.

    Raises LimitExceededError when current + in-flight + proposed would exceed
    the configured limit. Windows without a configured limit always pass.
    """
    limit_cents = get_limit(jurisdiction, cycle_id, db)
    check = LimitCheck(
        cycle_id=cycle_id,
        limit_cents=limit_cents,
        current_cents=get_donor_aggregate(donor_fp, cycle_id, jurisdiction, db) if limit_cents is not None else 0,
        in_flight_cents=get_in_flight_cents(donor_fp, jurisdiction, cycle_id, db) if limit_cents is not None else 0,
        proposed_cents=amount_cents
    )
    if not check.within_limit:
        raise LimitExceededError(
            f"Contribution of {amount_cents} cents would exceed the {cycle_id} limit of "
            f"{limit_cents} cents (current {check.current_cents}, in flight {check.in_flight_cents})",
            cycle_id=cycle_id,
            limit_cents=limit_cents,
            current_cents=check.current_cents,
            in_flight_cents=check.in_flight_cents,
            jurisdiction=jurisdiction,
            donor_fingerprint=donor_fp
        )
    return check


def check_limits(donor_fp: str, amount_cents: int, jurisdiction: str, cycle_ids: List[str], db: Session) -> List[LimitCheck]:
    """Pre-check every window; the first exceeded window raises"""
    return [check_limit(donor_fp, amount_cents, jurisdiction, cycle_id, db) for cycle_id in cycle_ids]


@contextmanager
def donor_limit_lock(donor_fp: str, jurisdiction: str):
    """Serialize pre-check + create for one donor within a jurisdiction.

    Waits at most LIMIT_LOCK_TIMEOUT seconds, then raises LedgerConflictError.
    """
    key = limit_lock_key(donor_fp, jurisdiction)
    owner = uuid.uuid4().hex
    deadline = time.monotonic() + settings.LIMIT_LOCK_TIMEOUT
    while not acquire_lock(key, timeout=settings.LIMIT_LOCK_TIMEOUT, owner=owner):
        if time.monotonic() >= deadline:
            raise LedgerConflictError(f"Timed out waiting for limit lock {key}")
        time.sleep(0.05)
    try:
        yield
    finally:
        release_lock(key, owner=owner)


def _ensure_aggregate_row(db: Session, donor_fp: str, jurisdiction: str, cycle_id: str) -> None:
    """Insert the aggregate row if missing; concurrent inserts of the same key are harmless"""
    values = {
        "donor_fingerprint": donor_fp,
        "jurisdiction": jurisdiction,
        "cycle_id": cycle_id,
        "total_cents": 0,
        "version": 1,
        "last_updated": datetime.now(timezone.utc),
    }
    key_columns = ["donor_fingerprint", "jurisdiction", "cycle_id"]
    dialect = db.get_bind().dialect.name

    if dialect == "postgresql":
        db.execute(pg_insert(DonorAggregate).values(**values).on_conflict_do_nothing(index_elements=key_columns))
    elif dialect == "sqlite":
        db.execute(sqlite_insert(DonorAggregate).values(**values).on_conflict_do_nothing(index_elements=key_columns))
    elif get_donor_aggregate_row(db, donor_fp, jurisdiction, cycle_id) is None:
        db.add(DonorAggregate(**values))
        db.flush()


def get_donor_aggregate_row(db: Session, donor_fp: str, jurisdiction: str, cycle_id: str) -> Optional[DonorAggregate]:
    return db.query(DonorAggregate).filter(
        DonorAggregate.donor_fingerprint == donor_fp,
        DonorAggregate.jurisdiction == jurisdiction,
        DonorAggregate.cycle_id == cycle_id
    ).with_for_update().populate_existing().first()


def adjust_aggregate(db: Session, donor_fp: str, jurisdiction: str, cycle_id: str, delta_cents: int) -> AggregateChange:
    """Atomic read-increment-write of one aggregate row.

    Compare-and-swap on the row version with a bounded retry loop. A decrement
    that would go below zero is clamped at zero and reported as clamped.
    """
    _ensure_aggregate_row(db, donor_fp, jurisdiction, cycle_id)

    for attempt in range(1, settings.LEDGER_MAX_CONFLICT_RETRIES + 1):
        row = get_donor_aggregate_row(db, donor_fp, jurisdiction, cycle_id)
        before = row.total_cents
        after = before + delta_cents
        clamped = after < 0
        if clamped:
            after = 0

        result = db.execute(
            update(DonorAggregate)
            .where(DonorAggregate.id == row.id, DonorAggregate.version == row.version)
            .values(total_cents=after, version=row.version + 1, last_updated=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.expire(row)
            return AggregateChange(cycle_id=cycle_id, before_cents=before, after_cents=after, clamped=clamped)

        logger.warning(
            f"Aggregate CAS conflict on {jurisdiction}/{cycle_id} "
            f"(attempt {attempt}/{settings.LEDGER_MAX_CONFLICT_RETRIES})"
        )

    raise LedgerConflictError(f"Could not update aggregate {jurisdiction}/{cycle_id} after retries")


def apply_aggregate_intent(db: Session, intent: AggregateIntent) -> List[AggregateChange]:
    """Apply a ledger intent to every window the donation counts against.

    Runs inside the ledger's transaction so the aggregate moves if and only if
    the transition commits. Does not commit.
    """
    changes = []
    for cycle_id in intent.cycle_ids:
        change = adjust_aggregate(db, intent.donor_fingerprint, intent.jurisdiction, cycle_id, intent.delta_cents)
        changes.append(change)

        details: Dict[str, Any] = {
            "cycle_id": cycle_id,
            "jurisdiction": intent.jurisdiction,
            "donor_fingerprint": intent.donor_fingerprint,
            "before_cents": change.before_cents,
            "after_cents": change.after_cents,
            "delta_cents": intent.delta_cents,
        }

        if change.clamped:
            change.flags.append(ReviewKind.AGGREGATE_ANOMALY.value)
            aggregate_anomalies_counter.inc()
            compliance_logger.error(
                f"Aggregate for {intent.jurisdiction}/{cycle_id} would go negative "
                f"({change.before_cents} + {intent.delta_cents}); clamped to 0"
            )
            open_review_item(
                db, ReviewKind.AGGREGATE_ANOMALY,
                donation_id=intent.donation_id,
                refund_id=intent.refund_id,
                processor_event_id=intent.causing_event_id,
                details=details
            )

        if intent.delta_cents > 0:
            limit_cents = get_limit(intent.jurisdiction, cycle_id, db)
            if limit_cents is not None and change.after_cents > limit_cents and not intent.limit_override_actor:
                change.flags.append(ReviewKind.LIMIT_BREACH.value)
                open_review_item(
                    db, ReviewKind.LIMIT_BREACH,
                    donation_id=intent.donation_id,
                    processor_event_id=intent.causing_event_id,
                    details={**details, "limit_cents": limit_cents}
                )

            threshold = settings.ITEMIZATION_THRESHOLD_CENTS
            if change.before_cents <= threshold < change.after_cents:
                change.flags.append(ReviewKind.ITEMIZATION_REQUIRED.value)
                open_review_item(
                    db, ReviewKind.ITEMIZATION_REQUIRED,
                    donation_id=intent.donation_id,
                    details={**details, "threshold_cents": threshold, "missing_fields": intent.missing_donor_fields}
                )

    return changes
