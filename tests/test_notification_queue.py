"""
Durable notification queue: idempotent enqueue and retrying delivery
"""

from unittest.mock import AsyncMock

import pytest

from models import NotificationQueue
from services.notification_queue import NotificationQueueService
from utils.exception_handler import NotificationDeliveryError


class TestEnqueue:
    def test_enqueue_resolves_recipient_from_profile(self, db_session, now, make_profile):
        make_profile("tenant-1", email="owner@example.com")
        queue = NotificationQueueService(db_session)

        row = queue.enqueue("tenant-1", "usage_limit_warning", {"feature": "customers"}, "k-1", now=now)
        db_session.commit()

        assert row.recipient == "owner@example.com"
        assert row.status == "pending"
        assert row.created_at == now

    def test_duplicate_key_returns_existing(self, db_session, now):
        queue = NotificationQueueService(db_session)
        first = queue.enqueue("tenant-1", "x", {}, "k-1", recipient="a@example.com", now=now)
        db_session.commit()

        second = queue.enqueue("tenant-1", "x", {}, "k-1", recipient="a@example.com", now=now)

        assert second.id == first.id
        assert db_session.query(NotificationQueue).count() == 1

    def test_no_recipient_skips(self, db_session, now):
        assert NotificationQueueService(db_session).enqueue("ghost", "x", {}, "k-1", now=now) is None


class TestProcessing:
    @pytest.mark.asyncio
    async def test_sends_pending(self, db_session, now):
        queue = NotificationQueueService(db_session)
        queue.enqueue("tenant-1", "dispute_filed", {"case_number": "DSP-1"}, "k-1", recipient="a@example.com", now=now)
        db_session.commit()
        sender = AsyncMock()

        stats = await queue.process_pending_notifications(sender, now=now)

        assert stats == {"processed": 1, "sent": 1, "failed": 0}
        sender.send.assert_awaited_once_with(
            "tenant-1", "dispute_filed", {"case_number": "DSP-1", "recipient": "a@example.com"}
        )
        row = db_session.query(NotificationQueue).one()
        assert row.status == "sent"
        assert row.sent_at == now

    @pytest.mark.asyncio
    async def test_failure_is_retried_until_max(self, db_session, now):
        queue = NotificationQueueService(db_session)
        queue.enqueue("tenant-1", "dispute_filed", {}, "k-1", recipient="a@example.com", now=now)
        db_session.commit()
        sender = AsyncMock()
        sender.send.side_effect = NotificationDeliveryError("HTTP 502")

        for _ in range(2):
            stats = await queue.process_pending_notifications(sender, max_retries=2, now=now)
            assert stats["failed"] == 1

        stats = await queue.process_pending_notifications(sender, max_retries=2, now=now)

        assert stats["processed"] == 0, "Row exhausted its retries"
        row = db_session.query(NotificationQueue).one()
        assert row.status == "failed"
        assert row.retry_count == 2
        assert row.error_message == "HTTP 502"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_batch(self, db_session, now):
        queue = NotificationQueueService(db_session)
        queue.enqueue("tenant-1", "a", {}, "k-1", recipient="a@example.com", now=now)
        queue.enqueue("tenant-2", "b", {}, "k-2", recipient="b@example.com", now=now)
        db_session.commit()

        async def send(subject_id, template_kind, payload):
            if subject_id == "tenant-1":
                raise NotificationDeliveryError("bounced")

        sender = AsyncMock()
        sender.send.side_effect = send

        stats = await queue.process_pending_notifications(sender, now=now)

        assert stats == {"processed": 2, "sent": 1, "failed": 1}
