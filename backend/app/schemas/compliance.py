"""Pydantic schemas for compliance administration"""
from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field


class ContributionLimitUpdate(BaseModel):
    """Create or replace the per-donor limit for one compliance window"""
    jurisdiction: str = Field(..., min_length=1, max_length=50)
    cycle_id: str = Field(..., min_length=1, max_length=100)
    limit_cents: int
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None


class ContributionLimitResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    jurisdiction: str
    cycle_id: str
    limit_cents: int
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None


class ReviewItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    status: str
    donation_id: Optional[int] = None
    refund_id: Optional[int] = None
    processor_event_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None


class ReviewResolveRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)
