"""Compliance API routes - aggregates, reports, review queue and limit configuration"""
import logging
from typing import Optional, List
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.api.errors import to_http_exception
from app.core.errors import ComplianceError
from app.core.security import require_actor
from app.db.session import get_db
from app.schemas.compliance import (
    ContributionLimitUpdate, ContributionLimitResponse,
    ReviewItemResponse, ReviewResolveRequest
)
from app.services.audit_service import verify_aggregates, build_cycle_report
from app.services.authorization_service import (
    require_capability, COMPLIANCE_READ, LIMITS_MANAGE, REVIEW_RESOLVE
)
from app.services.contribution_limit_service import (
    donor_fingerprint, get_donor_aggregate, get_limit, set_limit
)
from app.services.review_service import list_review_items, resolve_review_item

router = APIRouter(prefix="/api/compliance", tags=["compliance"])
logger = logging.getLogger(__name__)

# Scope for capabilities that are not tied to one organization or jurisdiction
GLOBAL_SCOPE = "compliance"


@router.get("/aggregates")
def get_aggregate_route(
    jurisdiction: str,
    cycle_id: str,
    donor_fingerprint_value: Optional[str] = Query(None, alias="donor_fingerprint"),
    donor_id: Optional[str] = None,
    donor_email: Optional[str] = None,
    actor_id: str = Depends(require_actor),
    db: Session = Depends(get_db)
):
    """A donor's current total in one window, by fingerprint or by donor reference"""
    if not donor_fingerprint_value and not donor_id:
        raise HTTPException(422, "Provide donor_fingerprint or donor_id")
    fingerprint = donor_fingerprint_value or donor_fingerprint(donor_id, donor_email)

    try:
        require_capability(actor_id, COMPLIANCE_READ, jurisdiction)
        total = get_donor_aggregate(fingerprint, cycle_id, jurisdiction, db)
        limit_cents = get_limit(jurisdiction, cycle_id, db)
    except ComplianceError as e:
        raise to_http_exception(e)

    return {
        "donor_fingerprint": fingerprint,
        "jurisdiction": jurisdiction,
        "cycle_id": cycle_id,
        "total_cents": total,
        "limit_cents": limit_cents,
        "remaining_cents": max(0, limit_cents - total) if limit_cents is not None else None,
    }


@router.get("/aggregates/verify")
def verify_aggregates_route(actor_id: str = Depends(require_actor), db: Session = Depends(get_db)):
    """Replay the audit log and compare it with the stored aggregates"""
    try:
        require_capability(actor_id, COMPLIANCE_READ, GLOBAL_SCOPE)
        return verify_aggregates(db)
    except ComplianceError as e:
        raise to_http_exception(e)


@router.get("/reports/{jurisdiction}/{cycle_id}")
def cycle_report_route(
    jurisdiction: str,
    cycle_id: str,
    actor_id: str = Depends(require_actor),
    db: Session = Depends(get_db)
):
    """Per-donor totals and itemization flags for one compliance window"""
    try:
        require_capability(actor_id, COMPLIANCE_READ, jurisdiction)
        return build_cycle_report(jurisdiction, cycle_id, db)
    except ComplianceError as e:
        raise to_http_exception(e)


@router.get("/review-items", response_model=List[ReviewItemResponse])
def list_review_items_route(
    status: Optional[str] = Query("open"),
    kind: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    actor_id: str = Depends(require_actor),
    db: Session = Depends(get_db)
):
    """Manual review queue, newest first"""
    try:
        require_capability(actor_id, COMPLIANCE_READ, GLOBAL_SCOPE)
        return list_review_items(db, status=status or None, kind=kind, limit=limit)
    except ComplianceError as e:
        raise to_http_exception(e)


@router.post("/review-items/{item_id}/resolve", response_model=ReviewItemResponse)
def resolve_review_item_route(
    item_id: int,
    request: ReviewResolveRequest,
    actor_id: str = Depends(require_actor),
    db: Session = Depends(get_db)
):
    """Close a review item"""
    try:
        require_capability(actor_id, REVIEW_RESOLVE, GLOBAL_SCOPE)
        return resolve_review_item(item_id, actor_id, request.notes, db)
    except ComplianceError as e:
        raise to_http_exception(e)


@router.put("/limits", response_model=ContributionLimitResponse)
def set_limit_route(
    request: ContributionLimitUpdate,
    actor_id: str = Depends(require_actor),
    db: Session = Depends(get_db)
):
    """Create or update a compliance window's per-donor limit"""
    try:
        require_capability(actor_id, LIMITS_MANAGE, request.jurisdiction)
        row = set_limit(
            request.jurisdiction, request.cycle_id, request.limit_cents, db,
            window_start=request.window_start, window_end=request.window_end
        )
    except ComplianceError as e:
        raise to_http_exception(e)

    logger.info(f"Limit {request.jurisdiction}/{request.cycle_id} set to {request.limit_cents} by {actor_id}")
    return row
