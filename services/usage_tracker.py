"""
Usage Tracker
Per-tenant feature counters enforced against subscription tier limits.

Counters change only through single SQL statements (col = col + 1 with RETURNING),
so concurrent requests never lose an update. Threshold notifications run after
the counter commit and can never fail or roll back the increment.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import UsageCounter
from services.notification_gate import NotificationGate
from services.profile_lookup import DatabaseProfileLookup, ProfileLookup
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import resolve_now, start_of_month
from utils.exception_handler import ValidationError, isolate_notification_failure
from utils.subscription_tiers import (
    FEATURE_COUNTERS,
    counter_column,
    get_feature_limit,
    is_unlimited,
    monthly_features,
    normalize_tier,
    usage_percentage,
)

logger = logging.getLogger(__name__)


@dataclass
class UsageSnapshot:
    tenant_id: str
    counters: Dict[str, int] = field(default_factory=dict)
    last_reset_date: Optional[datetime] = None

    def get(self, feature: str) -> int:
        return self.counters.get(feature, 0)


@dataclass
class LimitCheck:
    allowed: bool
    current: int
    limit: int
    percentage: int
    unlimited: bool


class UsageTracker:
    """Atomic usage counters with post-commit threshold notifications"""

    def __init__(
        self,
        session: Session,
        notification_gate: Optional[NotificationGate] = None,
        profile_lookup: Optional[ProfileLookup] = None,
    ):
        self.session = session
        self.notification_gate = notification_gate
        self.profile_lookup = profile_lookup or DatabaseProfileLookup(session)

    @staticmethod
    def _column(feature: str):
        try:
            return getattr(UsageCounter, counter_column(feature))
        except KeyError:
            raise ValidationError(f"Unknown metered feature: {feature}") from None

    def _ensure_counter(self, tenant_id: str, now: datetime) -> None:
        exists = self.session.execute(
            select(UsageCounter.id).where(UsageCounter.tenant_id == tenant_id)
        ).first()
        if exists is not None:
            return
        try:
            with atomic_transaction(self.session):
                self.session.add(
                    UsageCounter(tenant_id=tenant_id, last_reset_date=now, created_at=now, updated_at=now)
                )
            logger.info(f"📊 USAGE: Created counters for tenant {tenant_id}")
        except IntegrityError:
            logger.debug(f"USAGE: Counters for tenant {tenant_id} created concurrently")

    # ============ COUNTERS ============

    def increment(self, tenant_id: str, feature: str, now: Optional[datetime] = None) -> int:
        """Add one to a counter and return the new value"""
        column = self._column(feature)
        now = resolve_now(now)
        self._ensure_counter(tenant_id, now)

        with atomic_transaction(self.session):
            new_value = self.session.execute(
                update(UsageCounter)
                .where(UsageCounter.tenant_id == tenant_id)
                .values({column: column + 1, UsageCounter.updated_at: now})
                .returning(column)
                .execution_options(synchronize_session=False)
            ).scalar_one()

        logger.info(f"📈 USAGE_INCREMENT: {tenant_id} {feature} -> {new_value}")
        self._check_threshold(tenant_id, feature, new_value, now)
        return new_value

    def decrement(self, tenant_id: str, feature: str, now: Optional[datetime] = None) -> int:
        """Subtract one from a counter, never going below zero"""
        column = self._column(feature)
        now = resolve_now(now)
        self._ensure_counter(tenant_id, now)

        with atomic_transaction(self.session):
            new_value = self.session.execute(
                update(UsageCounter)
                .where(UsageCounter.tenant_id == tenant_id)
                .values({column: case((column > 0, column - 1), else_=0), UsageCounter.updated_at: now})
                .returning(column)
                .execution_options(synchronize_session=False)
            ).scalar_one()

        logger.info(f"📉 USAGE_DECREMENT: {tenant_id} {feature} -> {new_value}")
        return new_value

    def set_value(self, tenant_id: str, feature: str, value: int, now: Optional[datetime] = None) -> int:
        """Administrative override; does not trigger threshold notifications"""
        column = self._column(feature)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"Usage value must be a non-negative integer, got {value!r}")
        now = resolve_now(now)
        self._ensure_counter(tenant_id, now)

        with atomic_transaction(self.session):
            self.session.execute(
                update(UsageCounter)
                .where(UsageCounter.tenant_id == tenant_id)
                .values({column: value, UsageCounter.updated_at: now})
                .execution_options(synchronize_session=False)
            )
        self.session.expire_all()

        logger.warning(f"⚠️ USAGE_OVERRIDE: {tenant_id} {feature} set to {value}")
        return value

    def get_current(self, tenant_id: str) -> UsageSnapshot:
        counter = self.session.execute(
            select(UsageCounter).where(UsageCounter.tenant_id == tenant_id)
        ).scalar_one_or_none()
        if counter is None:
            return UsageSnapshot(tenant_id=tenant_id, counters={feature: 0 for feature in FEATURE_COUNTERS})
        self.session.refresh(counter)
        return UsageSnapshot(
            tenant_id=tenant_id,
            counters={feature: getattr(counter, column) for feature, (column, _) in FEATURE_COUNTERS.items()},
            last_reset_date=counter.last_reset_date,
        )

    # ============ MONTHLY RESET ============

    def current_period_start(self, tenant_id: str, now: Optional[datetime] = None) -> datetime:
        """Start of the tenant's billing period, or of the calendar month without one"""
        now = resolve_now(now)
        profile = self.profile_lookup.get_profile(tenant_id)
        if profile is not None and profile.billing_period_ends_at is not None:
            ends_at = profile.billing_period_ends_at
            if now >= ends_at:
                return ends_at
            return ends_at - timedelta(days=Config.BILLING_PERIOD_DAYS)
        return start_of_month(now)

    def reset_monthly(self, tenant_id: str, now: Optional[datetime] = None) -> bool:
        """
        Zero the month-scoped counters once per billing period.

        Returns:
            True if this call performed the reset, False if it already happened this period
        """
        now = resolve_now(now)
        period_start = self.current_period_start(tenant_id, now)
        values = {counter_column(feature): 0 for feature in monthly_features()}
        values.update(last_reset_date=now, updated_at=now)

        with atomic_transaction(self.session):
            reset = self.session.execute(
                update(UsageCounter)
                .where(
                    UsageCounter.tenant_id == tenant_id,
                    or_(UsageCounter.last_reset_date.is_(None), UsageCounter.last_reset_date < period_start),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            ).rowcount
        self.session.expire_all()

        if reset:
            logger.info(f"🔄 USAGE_RESET: Monthly counters reset for {tenant_id} (period start {period_start.isoformat()})")
        return reset == 1

    def batch_reset_monthly(self, tenant_ids: Iterable[str], now: Optional[datetime] = None) -> int:
        now = resolve_now(now)
        count = 0
        for tenant_id in tenant_ids:
            try:
                if self.reset_monthly(tenant_id, now):
                    count += 1
            except Exception as e:
                logger.error(f"❌ USAGE_RESET_FAILED: {tenant_id}: {e}")
        logger.info(f"🔄 USAGE_RESET: Batch reset {count} tenants")
        return count

    # ============ LIMITS ============

    def get_tier(self, tenant_id: str) -> str:
        profile = self.profile_lookup.get_profile(tenant_id)
        return profile.tier if profile is not None else normalize_tier(None)

    def check_usage_limit(self, tenant_id: str, feature: str) -> LimitCheck:
        """Whether one more unit of the feature fits inside the tenant's tier"""
        self._column(feature)
        limit = get_feature_limit(self.get_tier(tenant_id), feature)
        current = self.get_current(tenant_id).get(feature)
        unlimited = is_unlimited(limit)
        return LimitCheck(
            allowed=unlimited or current < limit,
            current=current,
            limit=limit,
            percentage=usage_percentage(current, limit),
            unlimited=unlimited,
        )

    @isolate_notification_failure
    def _check_threshold(self, tenant_id: str, feature: str, current: int, now: datetime) -> None:
        if self.notification_gate is None:
            return
        limit = get_feature_limit(self.get_tier(tenant_id), feature)
        self.notification_gate.check_and_notify(tenant_id, feature, current, limit, now=now)
