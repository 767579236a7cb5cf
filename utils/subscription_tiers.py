"""
Subscription tier limits for metered tenant features.

A limit of -1 means unlimited, 0 means the feature is not available on the tier.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

logger = logging.getLogger(__name__)

UNLIMITED = -1

TIER_ORDER = ("starter", "pro", "enterprise")

# Metered feature -> (UsageCounter column, month-scoped)
FEATURE_COUNTERS: Dict[str, tuple] = {
    "active_jobs": ("active_jobs_count", False),
    "invoices": ("invoices_this_month", True),
    "customers": ("total_customers", False),
    "team_members": ("team_members_count", False),
    "inventory_items": ("inventory_count", False),
    "equipment_items": ("equipment_count", False),
    "active_leads": ("active_leads_count", False),
}

TIER_LIMITS: Dict[str, Dict[str, int]] = {
    "starter": {
        "active_jobs": 15,
        "invoices": 20,
        "customers": 50,
        "team_members": 0,
        "inventory_items": 0,
        "equipment_items": 0,
        "active_leads": 0,
    },
    "pro": {
        "active_jobs": 50,
        "invoices": UNLIMITED,
        "customers": 500,
        "team_members": 6,
        "inventory_items": 200,
        "equipment_items": 20,
        "active_leads": 100,
    },
    "enterprise": {feature: UNLIMITED for feature in FEATURE_COUNTERS},
}

# Capabilities locked below a tier (used for upgrade prompts)
FEATURE_REQUIRED_TIER: Dict[str, str] = {
    "team_management": "pro",
    "crm": "pro",
    "lead_management": "pro",
    "inventory": "pro",
    "equipment": "pro",
    "marketing": "pro",
    "advanced_analytics": "enterprise",
    "api_access": "enterprise",
}

FEATURE_DISPLAY_NAMES: Dict[str, str] = {
    "active_jobs": "Active Jobs",
    "invoices": "Monthly Invoices",
    "customers": "Customers",
    "team_members": "Team Members",
    "inventory_items": "Inventory Items",
    "equipment_items": "Equipment Items",
    "active_leads": "Active Leads",
    "team_management": "Team Management",
    "crm": "CRM Features",
    "lead_management": "Lead Management",
    "inventory": "Inventory Management",
    "equipment": "Equipment Management",
    "marketing": "Marketing Features",
    "advanced_analytics": "Advanced Analytics",
    "api_access": "API Access",
}

_LEGACY_TIER_NAMES = {
    "free": "starter",
    "basic": "starter",
    "starter": "starter",
    "growth": "pro",
    "professional": "pro",
    "pro": "pro",
    "business": "enterprise",
    "unlimited": "enterprise",
    "enterprise": "enterprise",
}


def normalize_tier(tier: Optional[str]) -> str:
    """Map current and legacy plan names onto a known tier, defaulting to starter"""
    if not tier:
        return "starter"
    normalized = _LEGACY_TIER_NAMES.get(tier.lower().strip())
    if normalized is None:
        logger.warning(f"⚠️ TIER: Unknown tier '{tier}', treating as starter")
        return "starter"
    return normalized


def is_metered_feature(feature: str) -> bool:
    return feature in FEATURE_COUNTERS


def counter_column(feature: str) -> str:
    try:
        return FEATURE_COUNTERS[feature][0]
    except KeyError:
        raise KeyError(f"Unknown metered feature '{feature}'") from None


def monthly_features() -> list:
    return [feature for feature, (_, monthly) in FEATURE_COUNTERS.items() if monthly]


def get_feature_limit(tier: Optional[str], feature: str) -> int:
    return TIER_LIMITS[normalize_tier(tier)].get(feature, 0)


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED


def usage_percentage(current: int, limit: int) -> int:
    """Usage as a whole percentage, rounded half-up; 0 for unlimited or unavailable features"""
    if limit <= 0:
        return 0
    ratio = Decimal(current) * 100 / Decimal(limit)
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def get_upgrade_tier(tier: Optional[str]) -> Optional[str]:
    index = TIER_ORDER.index(normalize_tier(tier))
    if index + 1 < len(TIER_ORDER):
        return TIER_ORDER[index + 1]
    return None


def get_feature_display_name(feature: str) -> str:
    return FEATURE_DISPLAY_NAMES.get(feature, feature)
