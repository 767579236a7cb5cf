"""
Hold Auto-Release Job
Pays out job-guarantee holds whose window has elapsed without a dispute.

Holds whose transfer outcome was unknown keep their settlement claim and are
picked up again here, retrying with the same idempotency key.
Holds the rail keeps rejecting are skipped after MAX_FAILED_RELEASE_ATTEMPTS
confirmed rejections and logged for manual review.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session

from config import Config
from database import managed_session
from services.hold_manager import HoldManager
from services.payment_rail import PaymentRail
from services.profile_lookup import DatabaseProfileLookup
from utils.datetime_helpers import resolve_now
from utils.exception_handler import (
    StateConflictError,
    TransferFailedError,
    TransferOutcomeUnknownError,
)

logger = logging.getLogger(__name__)


async def release_eligible_holds(
    session: Session,
    payment_rail: Optional[PaymentRail] = None,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
    max_failed_attempts: Optional[int] = None,
) -> Dict[str, int]:
    now = resolve_now(now)
    max_failed_attempts = max_failed_attempts or Config.MAX_FAILED_RELEASE_ATTEMPTS
    manager = HoldManager(session, payment_rail=payment_rail)
    profiles = DatabaseProfileLookup(session)

    eligible = [
        (hold.id, hold.payee_id)
        for hold in manager.get_holds_eligible_for_release(now, limit=batch_size or Config.RELEASE_BATCH_SIZE)
    ]
    stats = {"checked": len(eligible), "released": 0, "skipped": 0, "failed": 0, "unknown": 0, "needs_review": 0}

    for hold_id, payee_id in eligible:
        failed_attempts = manager.count_failed_attempts(hold_id)
        if failed_attempts >= max_failed_attempts:
            stats["needs_review"] += 1
            logger.warning(
                f"⚠️ HOLD_AUTO_RELEASE: Hold {hold_id} rejected {failed_attempts} times, left held for manual review"
            )
            continue

        profile = profiles.get_profile(payee_id)
        if profile is None or not profile.payout_destination:
            stats["skipped"] += 1
            logger.warning(f"⚠️ HOLD_AUTO_RELEASE: No payout destination for payee {payee_id}, hold {hold_id} stays held")
            continue

        try:
            await manager.release(hold_id, profile.payout_destination, now=now)
            stats["released"] += 1
        except TransferOutcomeUnknownError as e:
            stats["unknown"] += 1
            logger.warning(f"⚠️ HOLD_AUTO_RELEASE: Hold {hold_id} outcome unknown ({e.idempotency_key}), will retry")
        except TransferFailedError as e:
            stats["failed"] += 1
            logger.error(f"❌ HOLD_AUTO_RELEASE: Hold {hold_id} transfer rejected: {e}")
        except StateConflictError as e:
            stats["skipped"] += 1
            logger.info(f"⏭️ HOLD_AUTO_RELEASE: Hold {hold_id} skipped: {e}")
        except Exception as e:
            stats["failed"] += 1
            logger.error(f"❌ HOLD_AUTO_RELEASE: Hold {hold_id} failed: {e}", exc_info=True)

    return stats


async def run_hold_auto_release():
    """Scheduled entry point"""
    try:
        with managed_session() as session:
            stats = await release_eligible_holds(session)

        if stats["checked"] > 0:
            logger.info(
                f"🔓 Hold auto-release: {stats['released']} released, {stats['skipped']} skipped, "
                f"{stats['unknown']} unknown, {stats['failed']} failed, {stats['needs_review']} need review"
            )
    except Exception as e:
        logger.error(f"Error auto-releasing holds: {e}", exc_info=True)
