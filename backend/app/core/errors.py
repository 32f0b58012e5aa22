"""Domain errors raised by the ledger, limit engine, webhook ingestion and refund services.

API routes translate these into HTTP responses; services never raise HTTPException.
"""
from typing import Optional


class ComplianceError(Exception):
    """Base class for all domain errors"""
    code = "compliance_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        return {"error": self.code, "message": self.message, **self.details}


class ValidationError(ComplianceError):
    """Malformed input; caller-correctable, rejected before any external call"""
    code = "validation_error"


class UnsupportedEventError(ValidationError):
    """Processor event type outside the closed set of recognized variants"""
    code = "unsupported_event"


class LimitExceededError(ComplianceError):
    """Donation would push a donor aggregate over its configured limit"""
    code = "limit_exceeded"

    def __init__(self, message: str, cycle_id: str, limit_cents: int, current_cents: int, **details):
        super().__init__(
            message,
            cycle_id=cycle_id,
            limit_cents=limit_cents,
            current_cents=current_cents,
            **details
        )
        self.cycle_id = cycle_id
        self.limit_cents = limit_cents
        self.current_cents = current_cents


class AuthenticationError(ComplianceError):
    """Webhook signature or payload could not be verified"""
    code = "authentication_failed"


class AuthorizationError(ComplianceError):
    """Actor lacks the capability for the requested action"""
    code = "forbidden"


class UnknownDonationError(ComplianceError):
    """No ledger record matches the processor's transaction id"""
    code = "unknown_donation"


class DonationNotFoundError(ComplianceError):
    """No donation with the given id"""
    code = "not_found"


class IllegalTransitionError(ComplianceError):
    """Event is incompatible with the donation's current state"""
    code = "illegal_transition"

    def __init__(self, message: str, donation_id: Optional[int] = None,
                 from_state: Optional[str] = None, event: Optional[str] = None):
        super().__init__(message, donation_id=donation_id, from_state=from_state, event=event)
        self.donation_id = donation_id
        self.from_state = from_state
        self.event = event


class NotRefundableError(ComplianceError):
    """Donation is not refundable or the amount exceeds the remaining balance"""
    code = "not_refundable"


class TransientError(ComplianceError):
    """Failure that is expected to succeed on retry"""
    code = "transient_error"


class LedgerConflictError(TransientError):
    """Concurrent writers kept winning the optimistic lock"""
    code = "ledger_conflict"


class ExternalGatewayError(TransientError):
    """Timeout or network failure talking to the payment processor, after bounded retries"""
    code = "gateway_unavailable"


class ChargeDeclinedError(ComplianceError):
    """Processor definitively declined the charge"""
    code = "charge_declined"
