"""Security dependencies and API access logging"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import Header, HTTPException, Request

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")

# Header set by the upstream identity gateway after it has verified the caller
ACTOR_HEADER = "X-Actor-Id"


def require_actor(x_actor_id: Optional[str] = Header(None, alias=ACTOR_HEADER)) -> str:
    """Dependency: Require a verified actor identity, return actor id"""
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(401, "Missing verified actor identity")
    return x_actor_id.strip()


def get_client_ip(request: Request) -> str:
    """Best-effort client address for logging"""
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return client_ip


def log_api_access(
    request: Request,
    actor_id: Optional[str] = None,
    status_code: int = 200,
    error: Optional[str] = None
):
    """Log detailed API access information"""
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "query": str(request.url.query) if request.url.query else None,
        "actor_id": actor_id,
        "client_ip": get_client_ip(request),
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
