"""Donations API routes"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.errors import to_http_exception
from app.core.errors import ComplianceError
from app.core.security import require_actor
from app.db.session import get_db
from app.schemas.donations import (
    DonationCreate, DonationResponse, CancelRequest,
    RefundCreate, RefundResponse, AuditEntryResponse
)
from app.services.audit_service import get_donation_audit_trail
from app.services.authorization_service import require_capability, COMPLIANCE_READ
from app.services.donation_service import create_donation, get_donation, cancel_donation
from app.services.refund_service import request_refund, list_refunds

router = APIRouter(prefix="/api/donations", tags=["donations"])
logger = logging.getLogger(__name__)


@router.post("", response_model=DonationResponse, status_code=201)
def create_donation_route(
    request: DonationCreate,
    actor_id: str = Depends(require_actor),
    db: Session = Depends(get_db)
):
    """Create a donation and submit its charge"""
    try:
        return create_donation(request, db)
    except ComplianceError as e:
        logger.info(f"Donation request from {actor_id} rejected: {e.code} - {e.message}")
        raise to_http_exception(e)


@router.get("/{donation_id}", response_model=DonationResponse)
def get_donation_route(
    donation_id: int,
    actor_id: str = Depends(require_actor),
    db: Session = Depends(get_db)
):
    """Get a donation"""
    try:
        donation = get_donation(donation_id, db)
        require_capability(actor_id, COMPLIANCE_READ, donation.organization_id)
        return donation
    except ComplianceError as e:
        raise to_http_exception(e)


@router.post("/{donation_id}/cancel", response_model=DonationResponse)
def cancel_donation_route(
    donation_id: int,
    request: Optional[CancelRequest] = None,
    actor_id: str = Depends(require_actor),
    db: Session = Depends(get_db)
):
    """Cancel a pending donation before any charge is in flight"""
    try:
        return cancel_donation(donation_id, actor_id, db, reason=request.reason if request else None)
    except ComplianceError as e:
        raise to_http_exception(e)


@router.get("/{donation_id}/audit", response_model=List[AuditEntryResponse])
def get_donation_audit_route(
    donation_id: int,
    actor_id: str = Depends(require_actor),
    db: Session = Depends(get_db)
):
    """Audit trail of a donation in write order"""
    try:
        donation = get_donation(donation_id, db)
        require_capability(actor_id, COMPLIANCE_READ, donation.organization_id)
        return get_donation_audit_trail(donation_id, db)
    except ComplianceError as e:
        raise to_http_exception(e)


@router.post("/{donation_id}/refunds", response_model=RefundResponse, status_code=201)
def create_refund_route(
    donation_id: int,
    request: RefundCreate,
    actor_id: str = Depends(require_actor),
    db: Session = Depends(get_db)
):
    """Refund a completed donation in full or in part"""
    try:
        return request_refund(donation_id, request.amount_cents, actor_id, db, reason=request.reason)
    except ComplianceError as e:
        logger.info(f"Refund of donation {donation_id} by {actor_id} rejected: {e.code} - {e.message}")
        raise to_http_exception(e)


@router.get("/{donation_id}/refunds", response_model=List[RefundResponse])
def list_refunds_route(
    donation_id: int,
    actor_id: str = Depends(require_actor),
    db: Session = Depends(get_db)
):
    """Refunds issued against a donation"""
    try:
        donation = get_donation(donation_id, db)
        require_capability(actor_id, COMPLIANCE_READ, donation.organization_id)
        return list_refunds(donation_id, db)
    except ComplianceError as e:
        raise to_http_exception(e)
