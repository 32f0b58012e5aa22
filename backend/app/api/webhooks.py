"""Processor webhook routes"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.errors import AuthenticationError, UnknownDonationError, TransientError, ValidationError
from app.db.session import get_db
from app.services.webhook_service import ingest_webhook_event

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook events

    The body is read as raw bytes; signature verification needs it untouched.
    Non-2xx responses make Stripe redeliver, so only conditions a later
    delivery can fix answer with one.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        result = ingest_webhook_event(payload, sig_header, db)
    except AuthenticationError as e:
        raise HTTPException(400, e.to_dict())
    except UnknownDonationError as e:
        # Queued for reconciliation; redelivery applies it once the record exists
        raise HTTPException(404, e.to_dict())
    except TransientError as e:
        logger.warning(f"Transient failure processing webhook: {e.message}")
        raise HTTPException(503, e.to_dict())
    except ValidationError as e:
        raise HTTPException(400, e.to_dict())

    if result.get("status") == "in_progress":
        return JSONResponse(status_code=409, content=result)
    return result
