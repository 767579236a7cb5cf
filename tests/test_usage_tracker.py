"""
Usage counter tests: atomic increments, clamped decrements, monthly reset and tier limits
"""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from models import NotificationRecord, UsageCounter
from services.usage_tracker import UsageTracker
from utils.exception_handler import ValidationError


class TestCounters:
    """Single-statement counter updates"""

    def test_increment_creates_row_lazily(self, db_session, now):
        tracker = UsageTracker(db_session)

        assert tracker.increment("tenant-1", "active_jobs", now=now) == 1
        assert tracker.increment("tenant-1", "active_jobs", now=now) == 2

        counter = db_session.query(UsageCounter).filter_by(tenant_id="tenant-1").one()
        assert counter.active_jobs_count == 2
        assert counter.last_reset_date == now

    def test_decrement_clamps_at_zero(self, db_session, now):
        tracker = UsageTracker(db_session)
        tracker.increment("tenant-1", "customers", now=now)

        assert tracker.decrement("tenant-1", "customers", now=now) == 0
        assert tracker.decrement("tenant-1", "customers", now=now) == 0, "Counters never go negative"

    def test_unknown_feature(self, db_session, now):
        with pytest.raises(ValidationError):
            UsageTracker(db_session).increment("tenant-1", "rockets", now=now)

    def test_set_value_override(self, db_session, now):
        gate = Mock()
        tracker = UsageTracker(db_session, notification_gate=gate)

        assert tracker.set_value("tenant-1", "invoices", 19, now=now) == 19

        assert tracker.get_current("tenant-1").get("invoices") == 19
        gate.check_and_notify.assert_not_called()

    @pytest.mark.parametrize("value", [-1, 2.5, True])
    def test_set_value_rejects_bad_values(self, db_session, now, value):
        with pytest.raises(ValidationError):
            UsageTracker(db_session).set_value("tenant-1", "invoices", value, now=now)

    def test_get_current_without_row(self, db_session):
        snapshot = UsageTracker(db_session).get_current("tenant-new")

        assert snapshot.counters["active_jobs"] == 0
        assert snapshot.last_reset_date is None

    def test_increment_triggers_threshold_check_after_commit(self, db_session, now, make_profile):
        make_profile("tenant-1", tier="starter")
        gate = Mock()
        tracker = UsageTracker(db_session, notification_gate=gate)

        tracker.increment("tenant-1", "customers", now=now)

        gate.check_and_notify.assert_called_once_with("tenant-1", "customers", 1, 50, now=now)

    def test_notification_failure_never_affects_increment(self, db_session, now):
        gate = Mock()
        gate.check_and_notify.side_effect = RuntimeError("mail server down")
        tracker = UsageTracker(db_session, notification_gate=gate)

        assert tracker.increment("tenant-1", "active_jobs", now=now) == 1
        assert tracker.get_current("tenant-1").get("active_jobs") == 1, "Increment stays committed"


class TestMonthlyReset:
    """Month-scoped counters reset once per billing period"""

    def test_reset_calendar_month(self, db_session):
        tracker = UsageTracker(db_session)
        january = datetime(2024, 1, 15, 10, 0)
        tracker.set_value("tenant-1", "invoices", 12, now=january)
        tracker.set_value("tenant-1", "active_jobs", 4, now=january)

        assert tracker.reset_monthly("tenant-1", now=datetime(2024, 1, 20)) is False, "Same month is a no-op"
        assert tracker.reset_monthly("tenant-1", now=datetime(2024, 2, 1, 0, 5)) is True

        snapshot = tracker.get_current("tenant-1")
        assert snapshot.get("invoices") == 0
        assert snapshot.get("active_jobs") == 4, "Only month-scoped counters reset"
        assert snapshot.last_reset_date == datetime(2024, 2, 1, 0, 5)

    def test_reset_is_idempotent_within_period(self, db_session):
        tracker = UsageTracker(db_session)
        tracker.set_value("tenant-1", "invoices", 12, now=datetime(2024, 1, 15))

        assert tracker.reset_monthly("tenant-1", now=datetime(2024, 2, 2)) is True
        tracker.increment("tenant-1", "invoices", now=datetime(2024, 2, 3))

        assert tracker.reset_monthly("tenant-1", now=datetime(2024, 2, 4)) is False
        assert tracker.get_current("tenant-1").get("invoices") == 1

    def test_reset_uses_billing_period(self, db_session, make_profile):
        make_profile("tenant-1", billing_period_ends_at=datetime(2024, 2, 10))
        tracker = UsageTracker(db_session)
        tracker.set_value("tenant-1", "invoices", 5, now=datetime(2024, 1, 5))

        assert tracker.current_period_start("tenant-1", now=datetime(2024, 1, 20)) == datetime(2024, 1, 11)
        assert tracker.reset_monthly("tenant-1", now=datetime(2024, 1, 20)) is True
        assert tracker.reset_monthly("tenant-1", now=datetime(2024, 2, 1)) is False

    def test_reset_without_counters(self, db_session, now):
        assert UsageTracker(db_session).reset_monthly("tenant-none", now=now) is False

    def test_batch_reset_counts_only_reset_tenants(self, db_session):
        tracker = UsageTracker(db_session)
        tracker.set_value("tenant-1", "invoices", 3, now=datetime(2024, 1, 5))
        tracker.set_value("tenant-2", "invoices", 3, now=datetime(2024, 2, 1, 1, 0))

        assert tracker.batch_reset_monthly(["tenant-1", "tenant-2", "tenant-3"], now=datetime(2024, 2, 2)) == 1


class TestLimits:
    """Tier limits from the subscription profile"""

    def test_starter_limit(self, db_session, now, make_profile):
        make_profile("tenant-1", tier="starter")
        tracker = UsageTracker(db_session)
        tracker.set_value("tenant-1", "invoices", 20, now=now)

        check = tracker.check_usage_limit("tenant-1", "invoices")

        assert check.allowed is False
        assert check.limit == 20
        assert check.percentage == 100

    def test_pro_unlimited_invoices(self, db_session, now, make_profile):
        make_profile("tenant-1", tier="professional")
        tracker = UsageTracker(db_session)
        tracker.set_value("tenant-1", "invoices", 5000, now=now)

        check = tracker.check_usage_limit("tenant-1", "invoices")

        assert check.allowed is True
        assert check.unlimited is True
        assert check.percentage == 0

    def test_feature_not_on_tier(self, db_session, make_profile):
        make_profile("tenant-1", tier="starter")

        check = UsageTracker(db_session).check_usage_limit("tenant-1", "team_members")

        assert check.allowed is False
        assert check.limit == 0

    def test_tenant_without_profile_is_starter(self, db_session):
        check = UsageTracker(db_session).check_usage_limit("tenant-x", "active_jobs")

        assert check.limit == 15


class TestIncrementWithGate:
    """Increment + real gate writes a notification record"""

    def test_crossing_eighty_percent_records_warning(self, db_session, now, make_profile, keyed_store):
        from services.notification_gate import NotificationGate

        make_profile("tenant-1", tier="starter")
        tracker = UsageTracker(db_session, notification_gate=NotificationGate(db_session, keyed_store))
        tracker.set_value("tenant-1", "active_jobs", 11, now=now)

        tracker.increment("tenant-1", "active_jobs", now=now)

        records = db_session.query(NotificationRecord).all()
        assert [r.threshold_type for r in records] == ["limit_warning"]
        assert records[0].payload["percentage"] == 80

        tracker.increment("tenant-1", "active_jobs", now=now + timedelta(hours=1))
        assert db_session.query(NotificationRecord).count() == 1
