"""
Pending Balance Release Job
Moves pending wallet credits into the available balance once their
business-day hold schedule has elapsed.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session

from config import Config
from database import managed_session
from services.wallet_service import WalletService
from utils.datetime_helpers import resolve_now
from utils.exception_handler import StateConflictError

logger = logging.getLogger(__name__)


def release_due_pending_balances(
    session: Session, now: Optional[datetime] = None, batch_size: Optional[int] = None
) -> Dict[str, int]:
    """Release every due pending credit in one batch"""
    now = resolve_now(now)
    service = WalletService(session)
    due_ids = [tx.id for tx in service.get_due_pending_transactions(now, limit=batch_size or Config.RELEASE_BATCH_SIZE)]
    stats = {"checked": len(due_ids), "released": 0, "skipped": 0, "failed": 0}

    for transaction_id in due_ids:
        try:
            service.release_pending(transaction_id, now=now)
            stats["released"] += 1
        except StateConflictError as e:
            # Released by another worker between the query and the update
            stats["skipped"] += 1
            logger.info(f"⏭️ PENDING_RELEASE_SKIPPED: Transaction {transaction_id}: {e}")
        except Exception as e:
            stats["failed"] += 1
            logger.error(f"❌ PENDING_RELEASE_FAILED: Transaction {transaction_id}: {e}", exc_info=True)

    return stats


async def run_pending_balance_release():
    """Scheduled entry point"""
    try:
        with managed_session() as session:
            stats = release_due_pending_balances(session)

        if stats["checked"] > 0:
            logger.info(
                f"💰 Pending balance release: {stats['released']} released, "
                f"{stats['skipped']} skipped, {stats['failed']} failed"
            )
    except Exception as e:
        logger.error(f"Error releasing pending balances: {e}", exc_info=True)
