"""Daily removal of notification de-duplication records past every window"""

import logging

from database import managed_session
from services.notification_gate import NotificationGate

logger = logging.getLogger(__name__)


async def run_notification_cleanup():
    try:
        with managed_session() as session:
            deleted = NotificationGate(session).cleanup_expired_records()
        logger.info(f"🧹 Notification cleanup complete: {deleted} records removed")
    except Exception as e:
        logger.error(f"Error cleaning up notification records: {e}", exc_info=True)
