"""Pydantic schemas for donations and refunds"""
from datetime import datetime
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field

from app.core.config import settings


class DonationCreate(BaseModel):
    """Donation request; donor identity is already verified upstream"""
    amount_cents: int
    currency: str = Field(default_factory=lambda: settings.DEFAULT_CURRENCY, max_length=3)
    donor_id: str
    donor_email: Optional[str] = None
    donor_name: Optional[str] = Field(None, max_length=255)
    donor_address: Optional[str] = Field(None, max_length=1000)
    donor_employer: Optional[str] = Field(None, max_length=255)
    donor_occupation: Optional[str] = Field(None, max_length=255)
    fundraiser_id: str
    organization_id: str
    jurisdiction: str
    cycle_ids: Optional[List[str]] = None
    idempotency_key: str = Field(..., min_length=1, max_length=255)
    payment_method_id: Optional[str] = None
    limit_override_actor: Optional[str] = None


class DonationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    currency: str
    donor_id: str
    fundraiser_id: str
    organization_id: str
    jurisdiction: str
    cycle_ids: List[str]
    state: str
    external_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    charge_parked: bool
    created_at: datetime
    updated_at: datetime


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class RefundCreate(BaseModel):
    """Omit amount_cents to refund the whole remaining balance"""
    amount_cents: Optional[int] = None
    reason: Optional[str] = Field(None, max_length=500)


class RefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    donation_id: int
    amount_cents: int
    state: str
    is_full: bool
    gateway_refund_id: Optional[str] = None
    parked: bool
    actor: str
    reason: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    donation_id: Optional[int] = None
    ledger_event: Optional[str] = None
    from_state: Optional[str] = None
    to_state: Optional[str] = None
    trigger: str
    outcome: str
    causing_event_id: Optional[str] = None
    refund_id: Optional[int] = None
    aggregate_delta_cents: int
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime
