"""Contribution limit engine tests"""
import pytest
import redis
from datetime import datetime, timezone, timedelta
from unittest.mock import MagicMock, patch
from sqlalchemy import update

from app.core.config import settings
from app.core.errors import (
    LimitExceededError, LedgerConflictError, ValidationError,
    AuthorizationError, ChargeDeclinedError
)
from app.db.redis import acquire_lock, limit_lock_key, release_lock, set_redis_client
from app.models.audit_entry import AuditEntry
from app.models.contribution_limit import ContributionLimit
from app.models.donation import Donation
from app.models.donor_aggregate import DonorAggregate
from app.models.review_item import ReviewItem
from app.models.states import DonationState, LedgerEvent, ReviewKind
from app.services import contribution_limit_service
from app.services.authorization_service import LIMIT_OVERRIDE
from app.services.contribution_limit_service import (
    AggregateIntent, adjust_aggregate, apply_aggregate_intent, check_limit, donor_fingerprint,
    get_donor_aggregate, get_in_flight_cents, get_limit, resolve_active_cycles, set_limit
)
from app.services.ledger_service import transition

from tests.factories import CYCLE, JURISDICTION

real_get_donor_aggregate_row = contribution_limit_service.get_donor_aggregate_row


def _items(db_session, kind):
    return db_session.query(ReviewItem).filter(ReviewItem.kind == kind.value).all()


class TestDonorFingerprint:
    """Test donor identity keys"""

    def test_email_is_case_insensitive(self):
        """Test the same verified email maps to one fingerprint"""
        assert donor_fingerprint("a", "Donor@Example.com") == donor_fingerprint("b", "donor@example.com ")

    def test_falls_back_to_donor_id(self):
        """Test donors without email are keyed by donor id"""
        assert donor_fingerprint("donor-1") == donor_fingerprint("donor-1", "")
        assert donor_fingerprint("donor-1") != donor_fingerprint("donor-2")


@pytest.mark.critical
class TestLimitPreCheck:
    """Test the pre-check that runs before any charge"""

    def test_donation_within_limit_completes_and_counts(self, limit, completed_donation, db_session):
        """Test a $500 donation under a $2900 limit completes and moves the aggregate to $500"""
        donation = completed_donation(amount_cents=50000)

        assert donation.state == DonationState.COMPLETED.value
        assert get_donor_aggregate(donation.donor_fingerprint, CYCLE, JURISDICTION, db_session) == 50000

    def test_exceeding_limit_rejects_without_charge(self, limit, completed_donation, make_donation, gateway, db_session):
        """Test a $3000 follow-up to a completed $500 is rejected and never charged"""
        first = completed_donation(amount_cents=50000)

        with pytest.raises(LimitExceededError) as exc_info:
            make_donation(amount_cents=300000)

        error = exc_info.value
        assert error.cycle_id == CYCLE
        assert error.limit_cents == 290000
        assert error.current_cents == 50000
        assert gateway.charges == [first.id]
        assert db_session.query(Donation).count() == 1
        assert get_donor_aggregate(first.donor_fingerprint, CYCLE, JURISDICTION, db_session) == 50000

        rejection = db_session.query(AuditEntry).filter(AuditEntry.trigger == "limit").one()
        assert rejection.outcome == "rejected"
        assert rejection.donation_id is None
        assert rejection.error_code == "limit_exceeded"
        assert rejection.details["amount_cents"] == 300000

    def test_exact_limit_is_allowed(self, limit, make_donation):
        """Test reaching the limit exactly is permitted"""
        donation = make_donation(amount_cents=290000)
        assert donation.state == DonationState.PROCESSING.value

    def test_in_flight_donations_count(self, limit, make_donation, gateway):
        """Test pending and processing donations reserve headroom"""
        make_donation(amount_cents=200000)

        with pytest.raises(LimitExceededError) as exc_info:
            make_donation(amount_cents=100000)

        assert exc_info.value.details["in_flight_cents"] == 200000
        assert len(gateway.charges) == 1

    def test_failed_donations_release_headroom(self, limit, make_donation, gateway):
        """Test a declined donation no longer counts against the limit"""
        gateway.charge_error = ChargeDeclinedError("declined")
        failed = make_donation(amount_cents=200000)
        assert failed.state == DonationState.FAILED.value

        gateway.charge_error = None
        donation = make_donation(amount_cents=290000)
        assert donation.state == DonationState.PROCESSING.value

    def test_no_limit_configured_passes(self, make_donation, db_session):
        """Test windows without a configured limit are unbounded"""
        donation = make_donation(amount_cents=10_000_000)

        assert donation.state == DonationState.PROCESSING.value
        check = check_limit(donation.donor_fingerprint, 10_000_000, JURISDICTION, CYCLE, db_session)
        assert check.limit_cents is None
        assert check.within_limit is True

    def test_donors_sharing_email_aggregate_together(self, limit, completed_donation, make_donation):
        """Test two donor records with the same verified email share one limit"""
        completed_donation(donor_id="donor-a", donor_email="same@example.com", amount_cents=200000)

        with pytest.raises(LimitExceededError):
            make_donation(donor_id="donor-b", donor_email="SAME@example.com", amount_cents=100000)

    def test_other_donor_unaffected(self, limit, completed_donation, make_donation):
        """Test limits are tracked per donor"""
        completed_donation(donor_id="donor-a", donor_email="a@example.com", amount_cents=290000)

        donation = make_donation(donor_id="donor-b", donor_email="b@example.com", amount_cents=290000)
        assert donation.state == DonationState.PROCESSING.value

    def test_every_window_is_checked(self, limit, make_donation, db_session):
        """Test a donation counting against two windows must fit both"""
        set_limit(JURISDICTION, "2026-primary", 100000, db_session)

        with pytest.raises(LimitExceededError) as exc_info:
            make_donation(amount_cents=150000, cycle_ids=[CYCLE, "2026-primary"])

        assert exc_info.value.cycle_id == "2026-primary"

    def test_in_flight_sum_filters_by_window(self, make_donation, db_session):
        """Test in-flight totals only include donations in the same window"""
        donation = make_donation(amount_cents=30000, cycle_ids=["2026-primary"])
        fp = donation.donor_fingerprint

        assert get_in_flight_cents(fp, JURISDICTION, "2026-primary", db_session) == 30000
        assert get_in_flight_cents(fp, JURISDICTION, CYCLE, db_session) == 0
        assert get_in_flight_cents(fp, JURISDICTION, "2026-primary", db_session, exclude_donation_id=donation.id) == 0

    def test_lock_contention_raises_conflict(self, limit, make_donation, mock_redis, gateway):
        """Test a held donor lock times out into LedgerConflictError without charging"""
        fp = donor_fingerprint("donor-1", "donor@example.com")
        mock_redis.set(limit_lock_key(fp, JURISDICTION), "someone-else", ex=30)

        with pytest.raises(LedgerConflictError):
            make_donation()

        assert gateway.charges == []

    def test_lock_released_after_create(self, limit, make_donation, mock_redis):
        """Test the donor lock is released once the pending record exists"""
        donation = make_donation()
        assert mock_redis.get(limit_lock_key(donation.donor_fingerprint, JURISDICTION)) is None


class TestDistributedLocks:
    """Test owner-checked lock release"""

    def test_release_by_owner(self, mock_redis):
        """Test the holder releases its own lock"""
        assert acquire_lock("lock:test", timeout=30, owner="worker-a") is True

        release_lock("lock:test", owner="worker-a")

        assert mock_redis.get("lock:test") is None

    def test_release_leaves_other_owners_lock(self, mock_redis):
        """Test a lock taken over after expiry is not released by the previous holder"""
        mock_redis.set("lock:test", "worker-b", ex=30)

        release_lock("lock:test", owner="worker-a")

        assert mock_redis.get("lock:test") == "worker-b"

    def test_takeover_during_release_is_rechecked(self):
        """Test a lock that changes hands between the check and the delete survives"""
        pipe = MagicMock()
        pipe.get.side_effect = ["worker-a", "worker-b"]
        pipe.execute.side_effect = redis.WatchError()
        client = MagicMock()
        client.pipeline.return_value.__enter__.return_value = pipe
        set_redis_client(client)
        try:
            release_lock("lock:test", owner="worker-a")
        finally:
            set_redis_client(None)

        pipe.execute.assert_called_once()
        assert pipe.watch.call_count == 2
        pipe.unwatch.assert_called_once()
        client.delete.assert_not_called()


@pytest.mark.critical
class TestLimitOverride:
    """Test authorized overrides of the pre-check"""

    def test_override_allows_and_queues_review(self, limit, make_donation, capabilities, db_session):
        """Test an authorized override skips the limit and is queued for review"""
        donation = make_donation(amount_cents=500000, limit_override_actor="officer-1")

        assert donation.state == DonationState.PROCESSING.value
        assert donation.limit_override_actor == "officer-1"
        capabilities.assert_called_once_with("officer-1", LIMIT_OVERRIDE, "org-1")

        items = _items(db_session, ReviewKind.LIMIT_OVERRIDE)
        assert len(items) == 1
        assert items[0].details["actor"] == "officer-1"

    def test_override_requires_capability(self, limit, make_donation, capabilities, gateway):
        """Test an override without the capability is refused before any charge"""
        capabilities.return_value = False

        with pytest.raises(AuthorizationError):
            make_donation(amount_cents=500000, limit_override_actor="intern-1")

        assert gateway.charges == []

    def test_overridden_completion_is_not_a_breach(self, limit, completed_donation, db_session):
        """Test completing an overridden donation does not open a breach item"""
        completed_donation(amount_cents=500000, limit_override_actor="officer-1")

        assert _items(db_session, ReviewKind.LIMIT_BREACH) == []


class TestAggregateIntents:
    """Test aggregate updates driven by ledger transitions"""

    def test_completion_over_lowered_limit_flags_breach(self, limit, make_donation, db_session):
        """Test a completion that lands above a since-lowered limit is flagged"""
        donation = make_donation(amount_cents=200000)
        set_limit(JURISDICTION, CYCLE, 100000, db_session)

        transition(donation.id, LedgerEvent.CHARGE_COMPLETED, db_session)

        assert get_donor_aggregate(donation.donor_fingerprint, CYCLE, JURISDICTION, db_session) == 200000
        breaches = _items(db_session, ReviewKind.LIMIT_BREACH)
        assert len(breaches) == 1
        assert breaches[0].details["limit_cents"] == 100000

    def test_itemization_threshold_crossing(self, completed_donation, db_session):
        """Test the donor is flagged once, when the aggregate first passes the threshold"""
        completed_donation(amount_cents=10000)
        assert _items(db_session, ReviewKind.ITEMIZATION_REQUIRED) == []

        completed_donation(amount_cents=15000)
        items = _items(db_session, ReviewKind.ITEMIZATION_REQUIRED)
        assert len(items) == 1
        assert items[0].details["after_cents"] == 25000

        completed_donation(amount_cents=5000)
        assert len(_items(db_session, ReviewKind.ITEMIZATION_REQUIRED)) == 1

    def test_negative_aggregate_is_clamped_and_flagged(self, db_session, mock_redis):
        """Test a decrement below zero clamps at zero and opens an anomaly item"""
        fp = donor_fingerprint("donor-9")
        changes = apply_aggregate_intent(db_session, AggregateIntent(
            donation_id=1,
            donor_fingerprint=fp,
            jurisdiction=JURISDICTION,
            cycle_ids=[CYCLE],
            delta_cents=-5000,
            ledger_event="refund_confirmed",
            refund_id=7
        ))
        db_session.commit()

        assert changes[0].clamped is True
        assert changes[0].after_cents == 0
        assert ReviewKind.AGGREGATE_ANOMALY.value in changes[0].flags
        assert get_donor_aggregate(fp, CYCLE, JURISDICTION, db_session) == 0

        anomalies = _items(db_session, ReviewKind.AGGREGATE_ANOMALY)
        assert len(anomalies) == 1
        assert anomalies[0].refund_id == 7

    def test_increment_applies_to_each_window(self, db_session, mock_redis):
        """Test one intent moves every window the donation counts against"""
        fp = donor_fingerprint("donor-9")
        apply_aggregate_intent(db_session, AggregateIntent(
            donation_id=1,
            donor_fingerprint=fp,
            jurisdiction=JURISDICTION,
            cycle_ids=[CYCLE, "2026-primary"],
            delta_cents=1000,
            ledger_event="charge_completed"
        ))
        db_session.commit()

        assert get_donor_aggregate(fp, CYCLE, JURISDICTION, db_session) == 1000
        assert get_donor_aggregate(fp, "2026-primary", JURISDICTION, db_session) == 1000

    def test_itemization_item_lists_missing_donor_details(self, completed_donation, db_session):
        """Test the itemization item names the employer and occupation still on file as missing"""
        completed_donation(amount_cents=25000, donor_employer="Acme Corp")

        items = _items(db_session, ReviewKind.ITEMIZATION_REQUIRED)
        assert len(items) == 1
        assert items[0].details["missing_fields"] == ["donor_occupation"]


class _ConcurrentWriter:
    """Moves the aggregate row behind the caller's back after it has been read"""

    def __init__(self, db_session, times=None):
        self.db_session = db_session
        self.times = times
        self.calls = 0

    def __call__(self, db, donor_fp, jurisdiction, cycle_id):
        row = real_get_donor_aggregate_row(db, donor_fp, jurisdiction, cycle_id)
        self.calls += 1
        if self.times is None or self.calls <= self.times:
            self.db_session.execute(
                update(DonorAggregate)
                .where(DonorAggregate.id == row.id)
                .values(total_cents=DonorAggregate.total_cents + 1000, version=DonorAggregate.version + 1)
                .execution_options(synchronize_session=False)
            )
        return row


@pytest.mark.critical
class TestAggregateConcurrency:
    """Test the compare-and-swap on aggregate rows"""

    def test_conflicting_writer_is_retried(self, db_session, mock_redis):
        """Test a lost compare-and-swap rereads the row and applies on top of the other writer"""
        fp = donor_fingerprint("donor-9")
        writer = _ConcurrentWriter(db_session, times=1)

        with patch.object(contribution_limit_service, "get_donor_aggregate_row", side_effect=writer):
            change = adjust_aggregate(db_session, fp, JURISDICTION, CYCLE, 5000)
        db_session.commit()

        assert writer.calls == 2
        assert change.before_cents == 1000
        assert change.after_cents == 6000
        assert get_donor_aggregate(fp, CYCLE, JURISDICTION, db_session) == 6000

    def test_exhausted_retries_raise_ledger_conflict(self, db_session, mock_redis):
        """Test a writer that always wins surfaces LedgerConflictError"""
        fp = donor_fingerprint("donor-9")
        writer = _ConcurrentWriter(db_session)

        with patch.object(contribution_limit_service, "get_donor_aggregate_row", side_effect=writer):
            with pytest.raises(LedgerConflictError):
                adjust_aggregate(db_session, fp, JURISDICTION, CYCLE, 5000)

        assert writer.calls == settings.LEDGER_MAX_CONFLICT_RETRIES

    def test_transition_rolls_back_on_aggregate_conflict(self, make_donation, db_session):
        """Test a completion whose aggregate update keeps losing leaves the donation untouched"""
        donation = make_donation()
        writer = _ConcurrentWriter(db_session)

        with patch.object(contribution_limit_service, "get_donor_aggregate_row", side_effect=writer):
            with pytest.raises(LedgerConflictError):
                transition(donation.id, LedgerEvent.CHARGE_COMPLETED, db_session, causing_event_id="evt_busy")

        db_session.refresh(donation)
        assert donation.state == DonationState.PROCESSING.value
        completed = db_session.query(AuditEntry).filter(
            AuditEntry.donation_id == donation.id,
            AuditEntry.to_state == DonationState.COMPLETED.value
        ).count()
        assert completed == 0
        assert get_donor_aggregate(donation.donor_fingerprint, CYCLE, JURISDICTION, db_session) == 0


class TestLimitStore:
    """Test limit configuration and caching"""

    def test_set_limit_creates_and_updates(self, db_session, mock_redis):
        """Test set_limit upserts one row per window"""
        set_limit(JURISDICTION, CYCLE, 100000, db_session)
        set_limit(JURISDICTION, CYCLE, 290000, db_session)

        rows = db_session.query(ContributionLimit).all()
        assert len(rows) == 1
        assert rows[0].limit_cents == 290000

    @pytest.mark.parametrize("amount", [0, -1])
    def test_set_limit_rejects_non_positive(self, amount, db_session, mock_redis):
        """Test limits must be positive"""
        with pytest.raises(ValidationError):
            set_limit(JURISDICTION, CYCLE, amount, db_session)

    def test_set_limit_rejects_inverted_window(self, db_session, mock_redis):
        """Test a window must end after it starts"""
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        with pytest.raises(ValidationError):
            set_limit(JURISDICTION, CYCLE, 1000, db_session, window_start=start, window_end=start - timedelta(days=1))

    def test_get_limit_is_cached(self, limit, db_session, mock_redis):
        """Test lookups are served from Redis until the limit is changed through set_limit"""
        assert get_limit(JURISDICTION, CYCLE, db_session) == 290000

        limit.limit_cents = 1
        db_session.commit()
        assert get_limit(JURISDICTION, CYCLE, db_session) == 290000

        set_limit(JURISDICTION, CYCLE, 150000, db_session)
        assert get_limit(JURISDICTION, CYCLE, db_session) == 150000

    def test_missing_limit_is_cached_as_none(self, db_session, mock_redis):
        """Test the absence of a limit is cached too"""
        assert get_limit(JURISDICTION, "unknown-cycle", db_session) is None
        assert mock_redis.get(f"limit:{JURISDICTION}:unknown-cycle") is not None

    def test_get_limit_falls_back_when_redis_down(self, limit, db_session):
        """Test Redis failures fall back to the database"""
        with patch("app.services.contribution_limit_service.get_cached_limit",
                   side_effect=redis.ConnectionError("down")), \
             patch("app.services.contribution_limit_service.set_cached_limit",
                   side_effect=redis.ConnectionError("down")):
            assert get_limit(JURISDICTION, CYCLE, db_session) == 290000

    def test_resolve_active_cycles(self, db_session, mock_redis):
        """Test only windows containing the instant are active"""
        now = datetime(2026, 6, 1, tzinfo=timezone.utc)
        set_limit(JURISDICTION, "2026-general", 290000, db_session,
                  window_start=datetime(2026, 1, 1, tzinfo=timezone.utc),
                  window_end=datetime(2027, 1, 1, tzinfo=timezone.utc))
        set_limit(JURISDICTION, "2024-general", 290000, db_session,
                  window_start=datetime(2024, 1, 1, tzinfo=timezone.utc),
                  window_end=datetime(2025, 1, 1, tzinfo=timezone.utc))
        set_limit(JURISDICTION, "open-ended", 500000, db_session)
        set_limit("US-CA", "2026-general", 100000, db_session)

        assert resolve_active_cycles(JURISDICTION, db_session, at=now) == ["2026-general", "open-ended"]

    def test_create_uses_active_windows_when_none_given(self, make_donation, db_session):
        """Test requests without cycle ids count against the active windows"""
        now = datetime.now(timezone.utc)
        set_limit(JURISDICTION, "current", 290000, db_session,
                  window_start=now - timedelta(days=30), window_end=now + timedelta(days=30))

        donation = make_donation(cycle_ids=None)

        assert donation.cycle_ids == ["current"]
