"""Capability checks against the external authorization service"""
import logging
import httpx

from app.core.config import settings
from app.core.errors import AuthorizationError

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

# Actions checked by this service
REFUND_ISSUE = "refund_issue"
LIMIT_OVERRIDE = "limit_override"
LIMITS_MANAGE = "limits_manage"
REVIEW_RESOLVE = "review_resolve"
COMPLIANCE_READ = "compliance_read"


def has_capability(actor: str, action: str, scope: str) -> bool:
    """Ask the authorization service whether actor may perform action within scope.

    Any failure to get a definite answer is treated as a denial.
    """
    if not settings.AUTHZ_SERVICE_URL:
        security_logger.warning(f"AUTHZ_SERVICE_URL not configured, denying {action} for {actor}")
        return False

    try:
        with httpx.Client(timeout=settings.AUTHZ_TIMEOUT_SECONDS) as client:
            response = client.post(
                f"{settings.AUTHZ_SERVICE_URL.rstrip('/')}/v1/capabilities/check",
                json={"actor": actor, "action": action, "scope": scope}
            )
            if response.status_code != 200:
                security_logger.warning(
                    f"Authorization service returned {response.status_code} for {actor}/{action}/{scope}"
                )
                return False
            allowed = response.json().get("allowed") is True
    except (httpx.HTTPError, ValueError) as e:
        security_logger.error(f"Authorization check failed for {actor}/{action}/{scope}: {e}")
        return False

    if not allowed:
        security_logger.info(f"Capability denied - actor: {actor}, action: {action}, scope: {scope}")
    return allowed


def require_capability(actor: str, action: str, scope: str) -> None:
    """Raise AuthorizationError unless the actor holds the capability"""
    if not has_capability(actor, action, scope):
        raise AuthorizationError(
            f"Actor {actor} is not allowed to {action} for {scope}",
            action=action,
            scope=scope
        )
