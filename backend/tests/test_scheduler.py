"""Background task tests"""
import asyncio
import pytest
from unittest.mock import patch

from app.core.config import settings
from app.core.errors import ExternalGatewayError
from app.models.donation import Donation
from app.models.refund import Refund
from app.models.states import DonationState
from app.services.refund_service import request_refund
from app.tasks.scheduler import retry_parked_task, run_event_sync, run_retry_cycle

from tests.factories import payment_intent_event


class TestSchedulerPasses:
    """Test one pass of each background job"""

    def test_retry_cycle_settles_parked_calls(self, completed_donation, make_donation, gateway, db_session):
        """Test parked charges and refunds are resubmitted in one pass"""
        refundable = completed_donation()
        gateway.charge_error = ExternalGatewayError("timeout", operation="charge")
        gateway.refund_error = ExternalGatewayError("timeout", operation="refund")
        parked = make_donation(donor_id="donor-2", donor_email="two@example.com")
        refund = request_refund(refundable.id, 1000, "officer-1", db_session)
        parked_id, refund_id = parked.id, refund.id

        gateway.charge_error = None
        gateway.refund_error = None
        with patch("app.tasks.scheduler.SessionLocal", return_value=db_session):
            result = run_retry_cycle()

        assert result == {"charges": 1, "refunds": 1}
        assert db_session.get(Donation, parked_id).state == DonationState.PROCESSING.value
        assert db_session.get(Refund, refund_id).parked is False

    def test_event_sync_applies_missed_events(self, make_donation, gateway, db_session):
        """Test the sync pass applies processor events that never arrived"""
        donation = make_donation()
        donation_id = donation.id
        gateway.events = [payment_intent_event("evt_lost", "payment_intent.succeeded", donation)]

        with patch("app.tasks.scheduler.SessionLocal", return_value=db_session):
            results = run_event_sync()

        assert [r["status"] for r in results] == ["processed"]
        assert db_session.get(Donation, donation_id).state == DonationState.COMPLETED.value


class TestSchedulerLoops:
    """Test the long-running task loops"""

    def test_retry_loop_survives_errors_and_cancels(self):
        """Test a failing pass does not stop the loop and cancellation propagates"""
        calls = []

        def flaky_cycle():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database unavailable")
            return {"charges": 0, "refunds": 0}

        async def scenario():
            task = asyncio.create_task(retry_parked_task())
            while len(calls) < 2:
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        with patch.object(settings, "RETRY_INTERVAL_SECONDS", 0), \
             patch("app.tasks.scheduler.run_retry_cycle", side_effect=flaky_cycle):
            asyncio.run(scenario())

        assert len(calls) >= 2
