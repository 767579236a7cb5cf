"""
Usage Limit Notification Gate
Decides whether a usage-threshold or feature-lock notification should fire,
records it, and queues the email.

De-duplication is by (subject, feature, threshold kind) within a window:
- limit_warning covers every level below 100% (80/90/95), so re-crossing a
  different sub-threshold inside the window does not fire again
- limit_reached is tracked separately and fires once per window at 100%

The database check is check-then-insert. A shared keyed store claim
(set_if_absent) narrows the race across instances; without one, two concurrent
callers may both fire. Duplicate notifications are tolerated, lost funds are not.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from caching.keyed_store import KeyedStore
from config import Config
from models import NotificationRecord
from services.notification_queue import NotificationQueueService
from services.profile_lookup import DatabaseProfileLookup, ProfileLookup
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import resolve_now
from utils.subscription_tiers import (
    FEATURE_REQUIRED_TIER,
    get_feature_display_name,
    is_unlimited,
    usage_percentage,
)

logger = logging.getLogger(__name__)

LIMIT_WARNING = "limit_warning"
LIMIT_REACHED = "limit_reached"
FEATURE_LOCKED = "feature_locked"

# (minimum percentage, threshold kind, severity), most severe first
THRESHOLD_LEVELS = (
    (100, LIMIT_REACHED, "critical"),
    (95, LIMIT_WARNING, "critical"),
    (90, LIMIT_WARNING, "high"),
    (80, LIMIT_WARNING, "warning"),
)


@dataclass(frozen=True)
class ThresholdCrossing:
    kind: str
    level: str
    threshold: int
    percentage: int


def evaluate_threshold(current: int, limit: int) -> Optional[ThresholdCrossing]:
    """Highest threshold crossed by current/limit, or None (never for unlimited or zero limits)"""
    if is_unlimited(limit) or limit <= 0:
        return None
    percentage = usage_percentage(current, limit)
    for minimum, kind, level in THRESHOLD_LEVELS:
        if percentage >= minimum:
            return ThresholdCrossing(kind=kind, level=level, threshold=minimum, percentage=percentage)
    return None


class NotificationGate:
    """Records and queues limit notifications at most once per window"""

    def __init__(
        self,
        session: Session,
        keyed_store: Optional[KeyedStore] = None,
        notification_queue: Optional[NotificationQueueService] = None,
        profile_lookup: Optional[ProfileLookup] = None,
    ):
        self.session = session
        self.keyed_store = keyed_store
        self.profile_lookup = profile_lookup or DatabaseProfileLookup(session)
        self.notification_queue = notification_queue or NotificationQueueService(session, self.profile_lookup)

    def should_notify(
        self,
        subject_id: str,
        feature: str,
        threshold_kind: str,
        window: timedelta,
        now: Optional[datetime] = None,
    ) -> bool:
        """False if a record for this subject/feature/kind exists within the window"""
        since = resolve_now(now) - window
        recent = self.session.execute(
            select(NotificationRecord.id)
            .where(
                NotificationRecord.subject_id == subject_id,
                NotificationRecord.feature == feature,
                NotificationRecord.threshold_type == threshold_kind,
                NotificationRecord.created_at >= since,
            )
            .limit(1)
        ).first()
        return recent is None

    def check_and_notify(
        self,
        subject_id: str,
        feature: str,
        current: int,
        limit: int,
        now: Optional[datetime] = None,
    ) -> Optional[NotificationRecord]:
        """
        Fire a usage notification if a threshold is crossed and not already notified.

        Returns:
            The new NotificationRecord, or None when nothing fired
        """
        crossing = evaluate_threshold(current, limit)
        if crossing is None:
            return None

        display_name = get_feature_display_name(feature)
        if crossing.kind == LIMIT_REACHED:
            title = f"{display_name} limit reached"
            message = f"You've reached your limit of {limit} {display_name.lower()}. Upgrade now to continue."
        else:
            title = f"Approaching your {display_name.lower()} limit"
            message = (
                f"You're using {current} of {limit} {display_name.lower()} ({crossing.percentage}%). "
                f"Consider upgrading to avoid interruptions."
            )

        payload = {
            "feature": feature,
            "feature_display_name": display_name,
            "current_usage": current,
            "limit": limit,
            "percentage": crossing.percentage,
            "threshold": crossing.threshold,
            "level": crossing.level,
        }
        return self._fire(
            subject_id,
            feature,
            crossing.kind,
            timedelta(hours=Config.LIMIT_NOTIFICATION_DEDUP_HOURS),
            title,
            message,
            payload,
            template_kind=f"usage_{crossing.kind}",
            now=now,
        )

    def notify_feature_locked(
        self,
        subject_id: str,
        feature: str,
        required_tier: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[NotificationRecord]:
        """Upgrade prompt after a tenant tried a feature above their tier"""
        required_tier = required_tier or FEATURE_REQUIRED_TIER.get(feature, "pro")
        display_name = get_feature_display_name(feature)
        return self._fire(
            subject_id,
            feature,
            FEATURE_LOCKED,
            timedelta(days=Config.FEATURE_LOCK_DEDUP_DAYS),
            f"Upgrade to unlock {display_name}",
            f"{display_name} is available on the {required_tier} plan. Upgrade to unlock this feature.",
            {"feature": feature, "feature_display_name": display_name, "required_tier": required_tier},
            template_kind=FEATURE_LOCKED,
            now=now,
        )

    def _fire(
        self,
        subject_id: str,
        feature: str,
        threshold_kind: str,
        window: timedelta,
        title: str,
        message: str,
        payload: dict,
        template_kind: str,
        now: Optional[datetime],
    ) -> Optional[NotificationRecord]:
        now = resolve_now(now)
        claim_key = f"notify:{subject_id}:{feature}:{threshold_kind}"

        if self.keyed_store is not None:
            ttl = int(window.total_seconds())
            if not self.keyed_store.set_if_absent(claim_key, now.isoformat(), ttl=ttl):
                logger.debug(f"NOTIFY_GATE: {claim_key} already claimed, skipping")
                return None

        try:
            if not self.should_notify(subject_id, feature, threshold_kind, window, now):
                logger.info(f"⏭️ NOTIFY_GATE: Skipping duplicate {threshold_kind} for {subject_id}/{feature}")
                self._release_claim(claim_key)
                return None

            with atomic_transaction(self.session):
                record = NotificationRecord(
                    subject_id=subject_id,
                    feature=feature,
                    threshold_type=threshold_kind,
                    title=title,
                    message=message,
                    payload=payload,
                    created_at=now,
                )
                self.session.add(record)
                self.session.flush()
                self.notification_queue.enqueue(
                    subject_id,
                    template_kind,
                    {**payload, "title": title, "message": message},
                    idempotency_key=f"{threshold_kind}:{subject_id}:{feature}:{record.id}",
                    now=now,
                )
        except Exception:
            self._release_claim(claim_key)
            raise

        logger.info(f"📧 NOTIFY_GATE: {threshold_kind} recorded for {subject_id}/{feature}: {title}")
        return record

    def _release_claim(self, claim_key: str) -> None:
        if self.keyed_store is not None:
            self.keyed_store.delete(claim_key)

    def cleanup_expired_records(self, older_than_days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Delete records that no de-duplication window can still see"""
        days = Config.NOTIFICATION_RECORD_RETENTION_DAYS if older_than_days is None else older_than_days
        longest_window = max(
            timedelta(hours=Config.LIMIT_NOTIFICATION_DEDUP_HOURS),
            timedelta(days=Config.FEATURE_LOCK_DEDUP_DAYS),
        )
        cutoff = resolve_now(now) - max(timedelta(days=days), longest_window)

        with atomic_transaction(self.session):
            deleted = self.session.execute(
                delete(NotificationRecord)
                .where(NotificationRecord.created_at < cutoff)
                .execution_options(synchronize_session=False)
            ).rowcount

        if deleted:
            logger.info(f"🧹 NOTIFY_GATE: Removed {deleted} notification records older than {cutoff.isoformat()}")
        return deleted
