"""Audit/compliance log - append-only record of ledger transitions, replayable into aggregates"""
import logging
from collections import defaultdict
from typing import Optional, Dict, Any, List, Tuple
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ComplianceError
from app.models.audit_entry import AuditEntry
from app.models.donation import Donation
from app.models.donor_aggregate import DonorAggregate
from app.models.states import AuditOutcome, AuditTrigger

logger = logging.getLogger(__name__)

AggregateKey = Tuple[str, str, str]  # (donor_fingerprint, jurisdiction, cycle_id)


def _value(v):
    return v.value if hasattr(v, "value") else v


def record_transition(
    db: Session,
    donation: Donation,
    ledger_event,
    from_state,
    to_state,
    trigger: AuditTrigger,
    causing_event_id: Optional[str] = None,
    refund_id: Optional[int] = None,
    aggregate_delta_cents: int = 0,
    details: Optional[Dict[str, Any]] = None
) -> AuditEntry:
    """Append an applied-transition entry. Joins the caller's transaction; does not commit."""
    entry = AuditEntry(
        donation_id=donation.id,
        ledger_event=_value(ledger_event),
        from_state=_value(from_state),
        to_state=_value(to_state),
        trigger=_value(trigger),
        outcome=AuditOutcome.APPLIED.value,
        causing_event_id=causing_event_id,
        refund_id=refund_id,
        aggregate_delta_cents=aggregate_delta_cents,
        donor_fingerprint=donation.donor_fingerprint,
        jurisdiction=donation.jurisdiction,
        cycle_ids=list(donation.cycle_ids or []),
        details=details or {}
    )
    db.add(entry)
    return entry


def record_rejection(
    db: Session,
    error: ComplianceError,
    trigger: AuditTrigger,
    donation: Optional[Donation] = None,
    ledger_event=None,
    to_state=None,
    causing_event_id: Optional[str] = None,
    refund_id: Optional[int] = None,
    outcome: AuditOutcome = AuditOutcome.REJECTED,
    details: Optional[Dict[str, Any]] = None
) -> AuditEntry:
    """Append an entry for a money-affecting operation that was refused or failed.

    Rejections never carry an aggregate delta, so replay ignores them.
    """
    merged = dict(error.details)
    merged.update(details or {})
    merged["message"] = error.message
    entry = AuditEntry(
        donation_id=donation.id if donation is not None else None,
        ledger_event=_value(ledger_event),
        from_state=donation.state if donation is not None else None,
        to_state=_value(to_state),
        trigger=_value(trigger),
        outcome=outcome.value,
        causing_event_id=causing_event_id,
        refund_id=refund_id,
        aggregate_delta_cents=0,
        donor_fingerprint=donation.donor_fingerprint if donation is not None else merged.get("donor_fingerprint"),
        jurisdiction=donation.jurisdiction if donation is not None else merged.get("jurisdiction"),
        cycle_ids=list(donation.cycle_ids or []) if donation is not None else [],
        error_code=error.code,
        details=merged
    )
    db.add(entry)
    return entry


def get_donation_audit_trail(donation_id: int, db: Session) -> List[AuditEntry]:
    """All audit entries for a donation in the order they were written"""
    return db.query(AuditEntry).filter(
        AuditEntry.donation_id == donation_id
    ).order_by(AuditEntry.id).all()


def replay_aggregates(db: Session) -> Dict[AggregateKey, int]:
    """Rebuild every donor aggregate from an empty state by replaying the log.

    Applies the same zero clamp as the live limit engine, so a clean log
    reproduces the stored totals exactly.
    """
    totals: Dict[AggregateKey, int] = defaultdict(int)
    entries = db.query(AuditEntry).filter(
        AuditEntry.outcome == AuditOutcome.APPLIED.value,
        AuditEntry.aggregate_delta_cents != 0
    ).order_by(AuditEntry.id).yield_per(500)

    for entry in entries:
        for cycle_id in entry.cycle_ids or []:
            key = (entry.donor_fingerprint, entry.jurisdiction, cycle_id)
            totals[key] = max(0, totals[key] + entry.aggregate_delta_cents)

    return dict(totals)


def verify_aggregates(db: Session) -> Dict[str, Any]:
    """Compare stored aggregates with a replay of the audit log"""
    replayed = replay_aggregates(db)
    stored = {
        (row.donor_fingerprint, row.jurisdiction, row.cycle_id): row.total_cents
        for row in db.query(DonorAggregate).all()
    }

    discrepancies = []
    for key in sorted(set(replayed) | set(stored)):
        expected = replayed.get(key, 0)
        actual = stored.get(key, 0)
        if expected != actual:
            discrepancies.append({
                "donor_fingerprint": key[0],
                "jurisdiction": key[1],
                "cycle_id": key[2],
                "replayed_cents": expected,
                "stored_cents": actual,
            })

    if discrepancies:
        logger.error(f"Aggregate verification found {len(discrepancies)} discrepancies")

    return {
        "consistent": not discrepancies,
        "checked": len(set(replayed) | set(stored)),
        "discrepancies": discrepancies,
    }


def build_cycle_report(jurisdiction: str, cycle_id: str, db: Session) -> Dict[str, Any]:
    """Per-donor contribution summary for one compliance window, built from the log"""
    from app.services.contribution_limit_service import get_limit

    donors: Dict[str, Dict[str, Any]] = {}
    entries = db.query(AuditEntry).filter(
        AuditEntry.outcome == AuditOutcome.APPLIED.value,
        AuditEntry.jurisdiction == jurisdiction,
        AuditEntry.aggregate_delta_cents != 0
    ).order_by(AuditEntry.id).all()

    for entry in entries:
        if cycle_id not in (entry.cycle_ids or []):
            continue
        summary = donors.setdefault(entry.donor_fingerprint, {
            "donor_fingerprint": entry.donor_fingerprint,
            "total_cents": 0,
            "contributions_cents": 0,
            "refunds_cents": 0,
            "contribution_count": 0,
        })
        if entry.aggregate_delta_cents > 0:
            summary["contributions_cents"] += entry.aggregate_delta_cents
            summary["contribution_count"] += 1
        else:
            summary["refunds_cents"] += -entry.aggregate_delta_cents
        summary["total_cents"] = max(0, summary["total_cents"] + entry.aggregate_delta_cents)

    limit_cents = get_limit(jurisdiction, cycle_id, db)
    for summary in donors.values():
        summary["itemization_required"] = summary["total_cents"] > settings.ITEMIZATION_THRESHOLD_CENTS
        summary["remaining_cents"] = (
            max(0, limit_cents - summary["total_cents"]) if limit_cents is not None else None
        )

    rows = sorted(donors.values(), key=lambda s: s["total_cents"], reverse=True)
    return {
        "jurisdiction": jurisdiction,
        "cycle_id": cycle_id,
        "limit_cents": limit_cents,
        "total_receipts_cents": sum(s["contributions_cents"] for s in rows),
        "total_refunds_cents": sum(s["refunds_cents"] for s in rows),
        "itemized_donor_count": sum(1 for s in rows if s["itemization_required"]),
        "donors": rows,
    }
