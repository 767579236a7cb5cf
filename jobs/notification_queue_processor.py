"""
Notification Queue Processor
Delivers queued tenant/payee notifications every minute.
"""

import logging
from typing import Optional

from database import managed_session
from services.notification_queue import (
    NotificationQueueService,
    NotificationSender,
    WebhookNotificationSender,
)

logger = logging.getLogger(__name__)


async def run_notification_queue_processor(sender: Optional[NotificationSender] = None):
    """
    Process pending notifications from the database queue.
    Delivery failures stay in the queue for the next run.
    """
    try:
        with managed_session() as session:
            stats = await NotificationQueueService(session).process_pending_notifications(
                sender or WebhookNotificationSender()
            )

        if stats["processed"] > 0:
            logger.info(
                f"📧 Notification queue processed: {stats['processed']} notifications, "
                f"{stats['sent']} sent, {stats['failed']} failed"
            )

    except Exception as e:
        logger.error(f"Error processing notification queue: {e}", exc_info=True)
