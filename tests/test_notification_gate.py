"""
Notification de-duplication gate tests
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from models import NotificationQueue, NotificationRecord
from services.notification_gate import (
    FEATURE_LOCKED,
    LIMIT_REACHED,
    LIMIT_WARNING,
    NotificationGate,
    evaluate_threshold,
)


class TestEvaluateThreshold:
    """Highest crossed threshold wins; sub-100% levels share one kind"""

    @pytest.mark.parametrize(
        "current,limit,kind,level,threshold",
        [
            (8, 10, LIMIT_WARNING, "warning", 80),
            (9, 10, LIMIT_WARNING, "high", 90),
            (19, 20, LIMIT_WARNING, "critical", 95),
            (10, 10, LIMIT_REACHED, "critical", 100),
            (12, 10, LIMIT_REACHED, "critical", 100),
        ],
    )
    def test_levels(self, current, limit, kind, level, threshold):
        crossing = evaluate_threshold(current, limit)

        assert crossing.kind == kind
        assert crossing.level == level
        assert crossing.threshold == threshold

    def test_below_eighty_percent(self):
        assert evaluate_threshold(7, 10) is None

    def test_percentage_rounds_half_up(self):
        # 79.5% rounds to 80%
        crossing = evaluate_threshold(159, 200)

        assert crossing is not None
        assert crossing.percentage == 80

    @pytest.mark.parametrize("limit", [-1, 0])
    def test_unlimited_and_zero_limits_never_fire(self, limit):
        assert evaluate_threshold(1000, limit) is None


class TestCheckAndNotify:
    """Record + queue at most once per subject/feature/kind per window"""

    def test_warning_recorded_and_queued(self, db_session, now, make_profile):
        make_profile("tenant-1", email="owner@example.com")
        gate = NotificationGate(db_session)

        record = gate.check_and_notify("tenant-1", "customers", 40, 50, now=now)

        assert record is not None
        assert record.threshold_type == LIMIT_WARNING
        assert record.message == (
            "You're using 40 of 50 customers (80%). Consider upgrading to avoid interruptions."
        )
        queued = db_session.query(NotificationQueue).one()
        assert queued.template_kind == "usage_limit_warning"
        assert queued.recipient == "owner@example.com"

    def test_database_window_suppresses_repeat(self, db_session, now):
        gate = NotificationGate(db_session)
        gate.check_and_notify("tenant-1", "customers", 40, 50, now=now)

        assert gate.check_and_notify("tenant-1", "customers", 48, 50, now=now + timedelta(hours=23)) is None
        assert db_session.query(NotificationRecord).count() == 1, "95% re-crossing shares the warning window"

        again = gate.check_and_notify("tenant-1", "customers", 41, 50, now=now + timedelta(hours=25))
        assert again is not None, "Window elapsed"

    def test_limit_reached_is_separate_from_warning(self, db_session, now):
        gate = NotificationGate(db_session)
        gate.check_and_notify("tenant-1", "customers", 40, 50, now=now)

        reached = gate.check_and_notify("tenant-1", "customers", 50, 50, now=now + timedelta(hours=1))

        assert reached.threshold_type == LIMIT_REACHED
        assert reached.message == "You've reached your limit of 50 customers. Upgrade now to continue."
        assert db_session.query(NotificationRecord).count() == 2

    def test_keyed_store_claim_blocks_concurrent_fire(self, db_session, now, keyed_store):
        keyed_store.set("notify:tenant-1:customers:limit_warning", "other-instance", ttl=60)
        gate = NotificationGate(db_session, keyed_store=keyed_store)

        assert gate.check_and_notify("tenant-1", "customers", 40, 50, now=now) is None
        assert db_session.query(NotificationRecord).count() == 0

    def test_claim_released_when_database_suppresses(self, db_session, now, keyed_store):
        NotificationGate(db_session).check_and_notify("tenant-1", "customers", 40, 50, now=now)
        gate = NotificationGate(db_session, keyed_store=keyed_store)

        assert gate.check_and_notify("tenant-1", "customers", 41, 50, now=now) is None
        assert not keyed_store.exists("notify:tenant-1:customers:limit_warning")

    def test_claim_released_when_recording_fails(self, db_session, now, keyed_store):
        queue = Mock()
        queue.enqueue.side_effect = RuntimeError("queue unavailable")
        gate = NotificationGate(db_session, keyed_store=keyed_store, notification_queue=queue)

        with pytest.raises(RuntimeError):
            gate.check_and_notify("tenant-1", "customers", 40, 50, now=now)

        assert not keyed_store.exists("notify:tenant-1:customers:limit_warning")
        assert db_session.query(NotificationRecord).count() == 0, "Record rolled back with the queue entry"

    def test_no_fire_below_threshold(self, db_session, now):
        assert NotificationGate(db_session).check_and_notify("tenant-1", "customers", 10, 50, now=now) is None

    def test_should_notify(self, db_session, now):
        gate = NotificationGate(db_session)
        window = timedelta(hours=24)
        assert gate.should_notify("tenant-1", "customers", LIMIT_WARNING, window, now=now) is True

        gate.check_and_notify("tenant-1", "customers", 40, 50, now=now)

        assert gate.should_notify("tenant-1", "customers", LIMIT_WARNING, window, now=now) is False
        assert gate.should_notify("tenant-1", "customers", LIMIT_REACHED, window, now=now) is True
        assert gate.should_notify("tenant-1", "invoices", LIMIT_WARNING, window, now=now) is True


class TestFeatureLocked:
    """Upgrade prompts are limited to one per week"""

    def test_feature_locked_weekly(self, db_session, now):
        gate = NotificationGate(db_session)

        first = gate.notify_feature_locked("tenant-1", "crm", now=now)
        second = gate.notify_feature_locked("tenant-1", "crm", now=now + timedelta(days=6))
        third = gate.notify_feature_locked("tenant-1", "crm", now=now + timedelta(days=8))

        assert first.threshold_type == FEATURE_LOCKED
        assert first.message == "CRM Features is available on the pro plan. Upgrade to unlock this feature."
        assert second is None
        assert third is not None


class TestCleanup:
    def test_cleanup_removes_records_past_every_window(self, db_session, now):
        gate = NotificationGate(db_session)
        gate.check_and_notify("tenant-1", "customers", 40, 50, now=now - timedelta(days=40))
        gate.notify_feature_locked("tenant-1", "crm", now=now - timedelta(days=5))

        deleted = gate.cleanup_expired_records(older_than_days=30, now=now)

        assert deleted == 1
        assert [r.threshold_type for r in db_session.query(NotificationRecord).all()] == [FEATURE_LOCKED]

    def test_cleanup_never_shortens_dedup_windows(self, db_session, now):
        gate = NotificationGate(db_session)
        gate.notify_feature_locked("tenant-1", "crm", now=now - timedelta(days=3))

        assert gate.cleanup_expired_records(older_than_days=1, now=now) == 0
