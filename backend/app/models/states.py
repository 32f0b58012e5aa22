"""Closed vocabularies stored in string columns"""
from enum import Enum


class DonationState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({DonationState.FAILED, DonationState.CANCELLED, DonationState.REFUNDED})
IN_FLIGHT_STATES = frozenset({DonationState.PENDING, DonationState.PROCESSING})


class LedgerEvent(str, Enum):
    CHARGE_SUBMITTED = "charge_submitted"
    CHARGE_COMPLETED = "charge_completed"
    CHARGE_FAILED = "charge_failed"
    REFUND_INITIATED = "refund_initiated"
    REFUND_CONFIRMED = "refund_confirmed"
    REFUND_FAILED = "refund_failed"
    CANCELLED = "cancelled"


class RefundState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class AuditTrigger(str, Enum):
    WEBHOOK = "webhook"
    REFUND = "refund"
    CANCEL = "cancel"
    MANUAL = "manual"
    CHARGE = "charge"
    LIMIT = "limit"


class AuditOutcome(str, Enum):
    APPLIED = "applied"
    REJECTED = "rejected"
    ERROR = "error"


class ReviewKind(str, Enum):
    ILLEGAL_TRANSITION = "illegal_transition"
    UNKNOWN_DONATION = "unknown_donation"
    GATEWAY_EXHAUSTED = "gateway_exhausted"
    AGGREGATE_ANOMALY = "aggregate_anomaly"
    AMOUNT_MISMATCH = "amount_mismatch"
    LIMIT_OVERRIDE = "limit_override"
    LIMIT_BREACH = "limit_breach"
    ITEMIZATION_REQUIRED = "itemization_required"


class ReviewStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
