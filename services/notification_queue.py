"""
Notification Queue Service
Database-backed queue for tenant/contractor notification and email dispatch.

Enqueueing is part of the caller's unit of work; delivery happens later in the
queue processor. Delivery failures are logged and retried, never raised.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

import aiohttp
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from config import Config
from models import NotificationQueue, NotificationQueueStatus
from services.profile_lookup import DatabaseProfileLookup, ProfileLookup
from utils.datetime_helpers import resolve_now
from utils.exception_handler import NotificationDeliveryError

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    async def send(self, subject_id: str, template_kind: str, payload: Dict[str, Any]) -> None:
        ...


class WebhookNotificationSender:
    """Posts notifications to the email/notification dispatcher as JSON"""

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.url = url or Config.NOTIFICATION_WEBHOOK_URL
        self.token = token or Config.NOTIFICATION_WEBHOOK_TOKEN
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.NOTIFICATION_TIMEOUT_SECONDS)

    async def send(self, subject_id: str, template_kind: str, payload: Dict[str, Any]) -> None:
        if not self.url:
            raise NotificationDeliveryError("NOTIFICATION_WEBHOOK_URL is not configured")

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        body = {"subject_id": subject_id, "template": template_kind, "payload": payload}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.url, json=body, headers=headers) as response:
                    if response.status >= 300:
                        error_text = await response.text()
                        raise NotificationDeliveryError(f"HTTP {response.status}: {error_text}")
        except aiohttp.ClientError as e:
            raise NotificationDeliveryError(f"Network error: {e}") from e


class NotificationQueueService:
    """
    Manages the durable outbound notification queue.
    Ensures notifications are never lost and never block the triggering mutation.
    """

    def __init__(self, session: Session, profile_lookup: Optional[ProfileLookup] = None):
        self.session = session
        self.profile_lookup = profile_lookup or DatabaseProfileLookup(session)

    def enqueue(
        self,
        subject_id: str,
        template_kind: str,
        payload: Dict[str, Any],
        idempotency_key: str,
        recipient: Optional[str] = None,
        channel: str = "email",
        now: Optional[datetime] = None,
    ) -> Optional[NotificationQueue]:
        """
        Add a notification to the queue without committing.

        Returns the existing row when the idempotency key was already queued.
        Returns None when the subject has no address to deliver to.
        """
        existing = self.session.execute(
            select(NotificationQueue).where(NotificationQueue.idempotency_key == idempotency_key)
        ).scalar_one_or_none()
        if existing is not None:
            logger.info(f"📧 Duplicate notification prevented: {idempotency_key} (existing: {existing.status})")
            return existing

        if recipient is None:
            profile = self.profile_lookup.get_profile(subject_id)
            recipient = profile.email if profile else None
        if not recipient:
            logger.warning(f"⚠️ NOTIFICATION_SKIPPED: No recipient for {subject_id} ({template_kind})")
            return None

        notification = NotificationQueue(
            subject_id=subject_id,
            channel=channel,
            recipient=recipient,
            template_kind=template_kind,
            payload=payload,
            status=NotificationQueueStatus.PENDING.value,
            retry_count=0,
            idempotency_key=idempotency_key,
            created_at=resolve_now(now),
        )
        self.session.add(notification)
        self.session.flush()

        logger.info(f"✅ Notification queued: {template_kind} for {subject_id} (ID: {notification.id})")
        return notification

    def get_pending(self, batch_size: int, max_retries: int):
        return self.session.execute(
            select(NotificationQueue)
            .where(
                or_(
                    NotificationQueue.status == NotificationQueueStatus.PENDING.value,
                    (NotificationQueue.status == NotificationQueueStatus.FAILED.value)
                    & (NotificationQueue.retry_count < max_retries),
                )
            )
            .order_by(NotificationQueue.created_at.asc(), NotificationQueue.id.asc())
            .limit(batch_size)
        ).scalars().all()

    async def process_pending_notifications(
        self,
        sender: NotificationSender,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """
        Deliver queued notifications.

        Returns:
            Dict with processing statistics
        """
        batch_size = batch_size or Config.NOTIFICATION_BATCH_SIZE
        max_retries = Config.NOTIFICATION_MAX_RETRIES if max_retries is None else max_retries
        stats = {"processed": 0, "sent": 0, "failed": 0}

        pending = self.get_pending(batch_size, max_retries)
        if not pending:
            return stats

        logger.info(f"🔄 Processing {len(pending)} pending notifications...")

        for notification in pending:
            stats["processed"] += 1
            payload = dict(notification.payload or {})
            payload.setdefault("recipient", notification.recipient)
            try:
                await sender.send(notification.subject_id, notification.template_kind, payload)
            except Exception as e:
                notification.retry_count += 1
                notification.status = NotificationQueueStatus.FAILED.value
                notification.error_message = str(e)[:1000]
                stats["failed"] += 1
                logger.error(
                    f"❌ NOTIFICATION_DELIVERY_FAILED: {notification.template_kind} for {notification.subject_id} "
                    f"(ID: {notification.id}, attempt {notification.retry_count}/{max_retries}): {e}"
                )
            else:
                notification.status = NotificationQueueStatus.SENT.value
                notification.sent_at = resolve_now(now)
                notification.error_message = None
                stats["sent"] += 1
                logger.info(f"✅ Notification sent: {notification.template_kind} (ID: {notification.id})")
            self.session.commit()

        return stats
