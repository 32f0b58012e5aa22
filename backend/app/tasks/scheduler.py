"""Background tasks: retry of parked gateway calls and recovery of missed processor events"""
import asyncio
import logging

from app.core.config import settings
from app.core.metrics import scheduler_runs_counter
from app.db.session import SessionLocal
from app.services.donation_service import retry_parked_charges
from app.services.refund_service import retry_parked_refunds
from app.services.review_service import refresh_open_review_gauge
from app.services.webhook_service import sync_missed_events

logger = logging.getLogger(__name__)


def run_retry_cycle(gateway=None) -> dict:
    """One pass over parked charges and refunds"""
    db = SessionLocal()
    try:
        charges = retry_parked_charges(db, gateway=gateway)
        refunds = retry_parked_refunds(db, gateway=gateway)
        refresh_open_review_gauge(db)
        return {"charges": charges, "refunds": refunds}
    finally:
        db.close()


def run_event_sync(gateway=None) -> list:
    """One pass of the processor event sync"""
    db = SessionLocal()
    try:
        results = sync_missed_events(db, gateway=gateway)
        refresh_open_review_gauge(db)
        return results
    finally:
        db.close()


async def retry_parked_task():
    """Periodically resubmit charges and refunds whose gateway calls exhausted their retries"""
    while True:
        try:
            await asyncio.sleep(settings.RETRY_INTERVAL_SECONDS)
            result = await asyncio.to_thread(run_retry_cycle)
            scheduler_runs_counter.labels(job="retry_parked", status="success").inc()
            if result["charges"] or result["refunds"]:
                logger.info(f"Parked retry pass settled {result['charges']} charges and {result['refunds']} refunds")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            scheduler_runs_counter.labels(job="retry_parked", status="error").inc()
            logger.error(f"Error in parked retry task: {e}", exc_info=True)


async def event_sync_task():
    """Periodically pull recent processor events so a lost webhook is still applied"""
    while True:
        try:
            await asyncio.sleep(settings.EVENT_SYNC_INTERVAL_SECONDS)
            results = await asyncio.to_thread(run_event_sync)
            scheduler_runs_counter.labels(job="event_sync", status="success").inc()
            if results:
                applied = sum(1 for r in results if r.get("status") == "processed")
                logger.info(f"Event sync processed {len(results)} events ({applied} applied)")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            scheduler_runs_counter.labels(job="event_sync", status="error").inc()
            logger.error(f"Error in event sync task: {e}", exc_info=True)
