"""
Usage Background Operations
Request-piggybacked maintenance for a tenant: the once-a-day threshold sweep
and the end-of-billing-period reset with its usage summary email.

Both operations are "at most once" per (tenant, day) and (tenant, period):
- the daily sweep claims a keyed-store marker with set_if_absent
- the monthly roll claims the billing period with a conditional update on the profile
run_background_ops never raises, so a caller's request is never blocked by it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from caching.keyed_store import KeyedStore
from config import Config
from models import SubscriptionProfile
from services.notification_gate import NotificationGate
from services.notification_queue import NotificationQueueService
from services.profile_lookup import DatabaseProfileLookup, ProfileLookup, TenantProfile
from services.usage_tracker import UsageSnapshot, UsageTracker
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import resolve_now
from utils.exception_handler import TenantNotFoundError, isolate_notification_failure
from utils.subscription_tiers import (
    FEATURE_COUNTERS,
    get_feature_display_name,
    get_feature_limit,
    is_unlimited,
    usage_percentage,
)

logger = logging.getLogger(__name__)

DAILY_CHECK_TTL_SECONDS = 24 * 60 * 60


@dataclass
class MonthlyResetResult:
    reset: bool
    previous_period_ends_at: Optional[datetime] = None
    next_period_ends_at: Optional[datetime] = None
    previous_usage: Optional[UsageSnapshot] = None
    approaching_limits: List[Dict[str, Any]] = field(default_factory=list)


class UsageBackgroundOps:
    """Daily threshold sweep and billing-period reset for one tenant at a time"""

    def __init__(
        self,
        session: Session,
        keyed_store: KeyedStore,
        usage_tracker: Optional[UsageTracker] = None,
        notification_gate: Optional[NotificationGate] = None,
        notification_queue: Optional[NotificationQueueService] = None,
        profile_lookup: Optional[ProfileLookup] = None,
    ):
        self.session = session
        self.keyed_store = keyed_store
        self.profile_lookup = profile_lookup or DatabaseProfileLookup(session)
        self.notification_queue = notification_queue or NotificationQueueService(session, self.profile_lookup)
        self.notification_gate = notification_gate or NotificationGate(
            session, keyed_store, self.notification_queue, self.profile_lookup
        )
        self.usage_tracker = usage_tracker or UsageTracker(session, self.notification_gate, self.profile_lookup)

    # ============ DAILY CHECK ============

    def perform_daily_check_if_needed(self, tenant_id: str, now: Optional[datetime] = None) -> bool:
        """
        Evaluate every limited feature once per tenant per day.

        Returns:
            True if this call ran the check, False if it already ran today
        """
        now = resolve_now(now)
        marker = f"daily-check:{tenant_id}:{now:%Y-%m-%d}"
        if not self.keyed_store.set_if_absent(marker, now.isoformat(), ttl=DAILY_CHECK_TTL_SECONDS):
            return False

        try:
            tier = self.usage_tracker.get_tier(tenant_id)
            snapshot = self.usage_tracker.get_current(tenant_id)
            fired = 0
            for feature in FEATURE_COUNTERS:
                limit = get_feature_limit(tier, feature)
                if is_unlimited(limit) or limit <= 0:
                    continue
                if self.notification_gate.check_and_notify(tenant_id, feature, snapshot.get(feature), limit, now=now):
                    fired += 1
        except Exception:
            # Let the next request retry today's check
            self.keyed_store.delete(marker)
            raise

        logger.info(f"✅ DAILY_CHECK: {tenant_id} checked ({tier}), {fired} notifications fired")
        return True

    # ============ MONTHLY RESET ============

    def check_and_reset_monthly(self, tenant_id: str, now: Optional[datetime] = None) -> MonthlyResetResult:
        """
        Roll the billing period and reset monthly counters if the period has ended.

        Only the caller whose conditional update moves billing_period_ends_at
        performs the reset and queues the summary.
        """
        now = resolve_now(now)
        profile = self.profile_lookup.get_profile(tenant_id)
        if profile is None:
            raise TenantNotFoundError(f"Tenant {tenant_id} not found")

        ends_at = profile.billing_period_ends_at
        if ends_at is None:
            # No billing period on file: fall back to calendar months
            previous_usage = self.usage_tracker.get_current(tenant_id)
            if not self.usage_tracker.reset_monthly(tenant_id, now):
                return MonthlyResetResult(reset=False)
            return self._finish_reset(profile, previous_usage, None, None, now)

        if now < ends_at:
            return MonthlyResetResult(reset=False, previous_period_ends_at=ends_at)

        next_ends_at = now + timedelta(days=Config.BILLING_PERIOD_DAYS)
        # Roll and reset commit together; a failed reset leaves the period unrolled
        with atomic_transaction(self.session):
            claimed = self.session.execute(
                update(SubscriptionProfile)
                .where(
                    SubscriptionProfile.subject_id == tenant_id,
                    SubscriptionProfile.billing_period_ends_at == ends_at,
                )
                .values(billing_period_ends_at=next_ends_at)
                .execution_options(synchronize_session=False)
            ).rowcount
            self.session.expire_all()

            if claimed != 1:
                logger.info(f"🔒 MONTHLY_RESET: Period roll for {tenant_id} already claimed")
                return MonthlyResetResult(reset=False, previous_period_ends_at=ends_at)

            previous_usage = self.usage_tracker.get_current(tenant_id)
            self.usage_tracker.reset_monthly(tenant_id, now)
        self.session.expire_all()

        return self._finish_reset(profile, previous_usage, ends_at, next_ends_at, now)

    def _finish_reset(
        self,
        profile: TenantProfile,
        previous_usage: UsageSnapshot,
        previous_ends_at: Optional[datetime],
        next_ends_at: Optional[datetime],
        now: datetime,
    ) -> MonthlyResetResult:
        approaching = []
        for feature in FEATURE_COUNTERS:
            limit = get_feature_limit(profile.tier, feature)
            if is_unlimited(limit) or limit <= 0:
                continue
            current = previous_usage.get(feature)
            percentage = usage_percentage(current, limit)
            if percentage >= Config.USAGE_SUMMARY_THRESHOLD_PERCENT:
                approaching.append(
                    {
                        "feature": feature,
                        "feature_display_name": get_feature_display_name(feature),
                        "current": current,
                        "limit": limit,
                        "percentage": percentage,
                    }
                )

        result = MonthlyResetResult(
            reset=True,
            previous_period_ends_at=previous_ends_at,
            next_period_ends_at=next_ends_at,
            previous_usage=previous_usage,
            approaching_limits=approaching,
        )
        logger.info(
            f"🔄 MONTHLY_RESET: {profile.subject_id} reset ({len(approaching)} features near their limit)"
        )
        self._queue_summary(profile, result, now)
        return result

    @isolate_notification_failure
    def _queue_summary(self, profile: TenantProfile, result: MonthlyResetResult, now: datetime) -> None:
        period_key = (result.previous_period_ends_at or now).strftime("%Y%m%d")
        payload = {
            "display_name": profile.display_name,
            "tier": profile.tier,
            "period_end": result.previous_period_ends_at.isoformat() if result.previous_period_ends_at else None,
            "usage": dict(result.previous_usage.counters),
            "approaching_limits": result.approaching_limits,
        }
        with atomic_transaction(self.session):
            self.notification_queue.enqueue(
                profile.subject_id,
                "monthly_usage_summary",
                payload,
                idempotency_key=f"monthly_usage_summary:{profile.subject_id}:{period_key}",
                recipient=profile.email,
                now=now,
            )

    # ============ ENTRY POINT ============

    def run_background_ops(self, tenant_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run the monthly reset and the daily check; failures are logged, never raised"""
        now = resolve_now(now)
        outcome: Dict[str, Any] = {"monthly_reset": None, "daily_check": None, "errors": []}

        try:
            outcome["monthly_reset"] = self.check_and_reset_monthly(tenant_id, now)
        except Exception as e:
            self.session.rollback()
            outcome["errors"].append(f"monthly_reset: {e}")
            logger.error(f"❌ BACKGROUND_OPS: Monthly reset failed for {tenant_id}: {e}", exc_info=True)

        try:
            outcome["daily_check"] = self.perform_daily_check_if_needed(tenant_id, now)
        except Exception as e:
            self.session.rollback()
            outcome["errors"].append(f"daily_check: {e}")
            logger.error(f"❌ BACKGROUND_OPS: Daily check failed for {tenant_id}: {e}", exc_info=True)

        return outcome
