"""Monitoring API routes for health checks and metrics"""
import logging
from fastapi import APIRouter, Response, Depends
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.db.redis import get_redis_client
from app.db.session import get_db
from app.services.review_service import refresh_open_review_gauge

router = APIRouter(tags=["monitoring"])
logger = logging.getLogger(__name__)


@router.get("/metrics")
def metrics_endpoint(db: Session = Depends(get_db)):
    """Prometheus metrics endpoint - updates gauges before export"""
    refresh_open_review_gauge(db)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Health check endpoint - database and Redis reachability"""
    checks = {}
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        logger.error(f"Health check database failure: {e}")
        checks["database"] = "error"
    try:
        get_redis_client().ping()
        checks["redis"] = "ok"
    except Exception as e:
        logger.error(f"Health check redis failure: {e}")
        checks["redis"] = "error"

    healthy = all(v == "ok" for v in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "healthy" if healthy else "degraded", "checks": checks}
    )
