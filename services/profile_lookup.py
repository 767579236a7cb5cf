"""
Tenant/contractor profile lookup
Read-only access to display name, email, tier, billing period and payout destination.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import SubscriptionProfile
from utils.subscription_tiers import normalize_tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantProfile:
    subject_id: str
    display_name: Optional[str]
    email: Optional[str]
    tier: str
    billing_period_ends_at: Optional[datetime] = None
    payout_destination: Optional[str] = None


class ProfileLookup(Protocol):
    def get_profile(self, subject_id: str) -> Optional[TenantProfile]:
        ...


class DatabaseProfileLookup:
    """Profile lookup backed by the subscription_profiles table"""

    def __init__(self, session: Session):
        self.session = session

    def get_profile(self, subject_id: str) -> Optional[TenantProfile]:
        profile = self.session.execute(
            select(SubscriptionProfile).where(SubscriptionProfile.subject_id == subject_id)
        ).scalar_one_or_none()
        if profile is None:
            logger.debug(f"PROFILE_LOOKUP: No profile for {subject_id}")
            return None
        return TenantProfile(
            subject_id=profile.subject_id,
            display_name=profile.display_name,
            email=profile.email,
            tier=normalize_tier(profile.tier),
            billing_period_ends_at=profile.billing_period_ends_at,
            payout_destination=profile.payout_destination,
        )
