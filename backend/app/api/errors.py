"""Translation of domain errors into HTTP responses"""
from fastapi import HTTPException

from app.core.errors import (
    ComplianceError, ValidationError, LimitExceededError, AuthenticationError,
    AuthorizationError, UnknownDonationError, DonationNotFoundError,
    IllegalTransitionError, NotRefundableError, ExternalGatewayError,
    TransientError, ChargeDeclinedError
)

# Most specific first; subclasses must precede their bases
STATUS_CODES = (
    (ValidationError, 422),
    (LimitExceededError, 409),
    (AuthenticationError, 400),
    (AuthorizationError, 403),
    (UnknownDonationError, 404),
    (DonationNotFoundError, 404),
    (IllegalTransitionError, 409),
    (NotRefundableError, 409),
    (ChargeDeclinedError, 402),
    (ExternalGatewayError, 502),
    (TransientError, 503),
)


def to_http_exception(error: ComplianceError) -> HTTPException:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return HTTPException(status_code, error.to_dict())
    return HTTPException(500, error.to_dict())
