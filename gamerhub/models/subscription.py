"""
gamerhub/models/subscription.py

Subscription tiers and their limits.

Tiers are a closed set (free, premium, pro). Each tier maps to a fixed set of
numeric ceilings and feature flags; -1 means unlimited.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


UNLIMITED = -1


class SubscriptionTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"
    PRO = "pro"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SubscriptionTier":
        """Resolve a stored tier string; anything unknown is free."""
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.FREE


class SubscriptionLimits(BaseModel):
    """
    Per-tier ceilings.

    Numeric fields use -1 for unlimited. Storage is in gigabytes.
    """
    model_config = ConfigDict(frozen=True)

    max_posts_per_day: int
    max_storage_gb: float
    max_group_memberships: int
    max_groups_created: int
    can_create_groups: bool = True
    max_boosts_per_month: int
    can_use_advanced_features: bool = False
    can_use_custom_themes: bool = False
    has_marketplace_priority: bool = False


class SubscriptionRecord(BaseModel):
    """Stored subscription row as read from persistence."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    tier: str
    status: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


class UserSubscription(BaseModel):
    """Effective subscription after admin and status resolution."""
    model_config = ConfigDict(frozen=True)

    tier: SubscriptionTier
    status: str
    is_active: bool
    is_premium: bool
    is_pro: bool
    is_free: bool


class UsageSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    posts_today: int
    storage_used_gb: float
    group_count: int
    boosts_this_month: int
