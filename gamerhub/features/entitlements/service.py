"""
gamerhub/features/entitlements/service.py

Subscription-tier entitlement checks.

Handles:
- Tier resolution (admin allow-list, active subscription, free fallback)
- Tier -> limits mapping (injected table, -1 = unlimited)
- One named check per action kind (post, boost, group create/join, upload)

Checks are read-then-decide only. They never write usage; callers record the
action themselves after it succeeds. Denials are return values, not exceptions.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo
import logging

from gamerhub.core.config import settings
from gamerhub.features.usage.service import SqlUsageStore, UsageStore
from gamerhub.models.subscription import (
    UNLIMITED,
    SubscriptionLimits,
    SubscriptionTier,
    UsageSummary,
    UserSubscription,
)


logger = logging.getLogger(__name__)

BYTES_PER_GB = 1024 * 1024 * 1024

DEFAULT_TIER_LIMITS: Dict[SubscriptionTier, SubscriptionLimits] = {
    SubscriptionTier.FREE: SubscriptionLimits(
        max_posts_per_day=10,
        max_storage_gb=1,
        max_group_memberships=5,
        max_groups_created=2,
        can_create_groups=True,
        max_boosts_per_month=5,
    ),
    SubscriptionTier.PREMIUM: SubscriptionLimits(
        max_posts_per_day=50,
        max_storage_gb=10,
        max_group_memberships=10,
        max_groups_created=10,
        can_create_groups=True,
        max_boosts_per_month=25,
        can_use_advanced_features=True,
        can_use_custom_themes=True,
    ),
    SubscriptionTier.PRO: SubscriptionLimits(
        max_posts_per_day=UNLIMITED,
        max_storage_gb=UNLIMITED,
        max_group_memberships=UNLIMITED,
        max_groups_created=UNLIMITED,
        can_create_groups=True,
        max_boosts_per_month=UNLIMITED,
        can_use_advanced_features=True,
        can_use_custom_themes=True,
        has_marketplace_priority=True,
    ),
}

ADMIN_LIMITS = SubscriptionLimits(
    max_posts_per_day=UNLIMITED,
    max_storage_gb=UNLIMITED,
    max_group_memberships=UNLIMITED,
    max_groups_created=UNLIMITED,
    can_create_groups=True,
    max_boosts_per_month=UNLIMITED,
    can_use_advanced_features=True,
    can_use_custom_themes=True,
    has_marketplace_priority=True,
)

# Reported as pro rather than a separate tier so clients theme it the same way
ADMIN_SUBSCRIPTION = UserSubscription(
    tier=SubscriptionTier.PRO,
    status="active",
    is_active=True,
    is_premium=True,
    is_pro=True,
    is_free=False,
)


class ActionKind(str, Enum):
    POST = "post"
    BOOST = "boost"
    GROUP_CREATE = "group-create"
    GROUP_JOIN = "group-join"
    UPLOAD = "upload"


@dataclass(frozen=True)
class EntitlementDecision:
    allowed: bool
    reason: Optional[str] = None
    remaining: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"allowed": self.allowed}
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.remaining is not None:
            payload["remaining"] = self.remaining
        return payload


def _resolve_tz(name: Optional[str]) -> Optional[tzinfo]:
    """IANA zone by name; None means the host's local zone, looked up per call."""
    if name:
        return ZoneInfo(name)
    return None


def _localize(wall: datetime, tz: Optional[tzinfo]) -> datetime:
    # Naive astimezone() asks the host for the offset in effect at `wall`
    if tz is None:
        return wall.astimezone()
    return wall.replace(tzinfo=tz)


def day_window(now: datetime, tz: Optional[tzinfo]) -> Tuple[datetime, datetime]:
    """Local midnight to the next local midnight containing `now`."""
    local = now.astimezone(tz)
    start = local.replace(hour=0, minute=0, second=0, microsecond=0, tzinfo=None)
    return _localize(start, tz), _localize(start + timedelta(days=1), tz)


def month_window(now: datetime, tz: Optional[tzinfo]) -> Tuple[datetime, datetime]:
    """First instant of the local calendar month to the first of the next."""
    local = now.astimezone(tz)
    start = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0, tzinfo=None)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return _localize(start, tz), _localize(end, tz)


class EntitlementService:
    """Decide whether a user action fits the user's subscription tier."""

    def __init__(
        self,
        store: UsageStore,
        *,
        tier_limits: Optional[Mapping[SubscriptionTier, SubscriptionLimits]] = None,
        admin_emails: Iterable[str] = (),
        tz: Optional[tzinfo] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.tier_limits = dict(tier_limits if tier_limits is not None else DEFAULT_TIER_LIMITS)
        self.admin_emails = frozenset(e.strip().lower() for e in admin_emails if e and e.strip())
        self.tz = tz
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        value = self._clock()
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    # -- tier resolution -------------------------------------------------

    def is_admin(self, user_id: str) -> bool:
        if not self.admin_emails:
            return False
        email, verified = self.store.get_user_email(user_id)
        if not email or not verified:
            return False
        return email.lower() in self.admin_emails

    def get_user_subscription(self, user_id: str) -> UserSubscription:
        if self.is_admin(user_id):
            return ADMIN_SUBSCRIPTION

        record = self.store.get_subscription(user_id)
        status = record.status if record else "inactive"
        is_active = status == "active"
        # An inactive paid subscription never grants paid limits
        tier = SubscriptionTier.parse(record.tier) if (record and is_active) else SubscriptionTier.FREE

        return UserSubscription(
            tier=tier,
            status=status,
            is_active=is_active and tier != SubscriptionTier.FREE,
            is_premium=is_active and tier == SubscriptionTier.PREMIUM,
            is_pro=is_active and tier == SubscriptionTier.PRO,
            is_free=tier == SubscriptionTier.FREE,
        )

    def get_limits_for_tier(self, tier: SubscriptionTier) -> SubscriptionLimits:
        limits = self.tier_limits.get(tier)
        if limits is None:
            limits = self.tier_limits[SubscriptionTier.FREE]
        return limits

    def get_user_limits(self, user_id: str) -> SubscriptionLimits:
        if self.is_admin(user_id):
            return ADMIN_LIMITS
        return self.get_limits_for_tier(self.get_user_subscription(user_id).tier)

    # -- usage reads -----------------------------------------------------

    def get_post_count_today(self, user_id: str) -> int:
        start, end = day_window(self.now(), self.tz)
        return self.store.count_posts_between(user_id, start, end)

    def get_boost_count_this_month(self, user_id: str) -> int:
        start, end = month_window(self.now(), self.tz)
        return self.store.count_boosts_between(user_id, start, end)

    def get_group_membership_count(self, user_id: str) -> int:
        return self.store.count_group_memberships(user_id)

    def get_groups_created_count(self, user_id: str) -> int:
        return self.store.count_groups_owned(user_id)

    def get_storage_used_gb(self, user_id: str) -> float:
        return self.store.get_storage_used_bytes(user_id) / BYTES_PER_GB

    def get_usage_summary(self, user_id: str) -> UsageSummary:
        return UsageSummary(
            posts_today=self.get_post_count_today(user_id),
            storage_used_gb=self.get_storage_used_gb(user_id),
            group_count=self.get_group_membership_count(user_id),
            boosts_this_month=self.get_boost_count_this_month(user_id),
        )

    # -- checks ----------------------------------------------------------

    def _deny(self, user_id: str, action: ActionKind, reason: str, **fields) -> EntitlementDecision:
        logger.warning(
            "[entitlement] DENIED",
            extra={"user_id": user_id, "action": action.value, "reason": reason, **fields},
        )
        return EntitlementDecision(allowed=False, reason=reason)

    def can_create_post(self, user_id: str) -> EntitlementDecision:
        limits = self.get_user_limits(user_id)
        if limits.max_posts_per_day == UNLIMITED:
            return EntitlementDecision(allowed=True)

        today = self.get_post_count_today(user_id)
        if today >= limits.max_posts_per_day:
            return self._deny(
                user_id,
                ActionKind.POST,
                f"Daily post limit reached ({limits.max_posts_per_day} posts). Upgrade to premium for more posts!",
                current_usage=today,
                limit=limits.max_posts_per_day,
            )
        return EntitlementDecision(allowed=True)

    def can_boost_post(self, user_id: str) -> EntitlementDecision:
        limits = self.get_user_limits(user_id)
        if limits.max_boosts_per_month == UNLIMITED:
            return EntitlementDecision(allowed=True)

        monthly = self.get_boost_count_this_month(user_id)
        remaining = limits.max_boosts_per_month - monthly
        if remaining <= 0:
            return self._deny(
                user_id,
                ActionKind.BOOST,
                f"Monthly boost limit reached ({limits.max_boosts_per_month} boosts). "
                "Upgrade your subscription for more boosts!",
                current_usage=monthly,
                limit=limits.max_boosts_per_month,
            )
        return EntitlementDecision(allowed=True, remaining=remaining)

    def can_create_group(self, user_id: str) -> EntitlementDecision:
        limits = self.get_user_limits(user_id)
        if not limits.can_create_groups:
            return self._deny(user_id, ActionKind.GROUP_CREATE, "Group creation requires a subscription upgrade.")
        if limits.max_groups_created == UNLIMITED:
            return EntitlementDecision(allowed=True)

        created = self.get_groups_created_count(user_id)
        remaining = limits.max_groups_created - created
        if remaining <= 0:
            return self._deny(
                user_id,
                ActionKind.GROUP_CREATE,
                f"Group creation limit reached. You can create up to {limits.max_groups_created} groups. "
                "Upgrade for more!",
                current_usage=created,
                limit=limits.max_groups_created,
            )
        return EntitlementDecision(allowed=True, remaining=remaining)

    def can_join_group(self, user_id: str) -> EntitlementDecision:
        limits = self.get_user_limits(user_id)
        if limits.max_group_memberships == UNLIMITED:
            return EntitlementDecision(allowed=True)

        memberships = self.get_group_membership_count(user_id)
        remaining = limits.max_group_memberships - memberships
        if remaining <= 0:
            return self._deny(
                user_id,
                ActionKind.GROUP_JOIN,
                f"Group membership limit reached. You can join up to {limits.max_group_memberships} groups. "
                "Upgrade for more!",
                current_usage=memberships,
                limit=limits.max_group_memberships,
            )
        return EntitlementDecision(allowed=True, remaining=remaining)

    def can_upload_file(self, user_id: str, file_size_bytes: int = 0) -> EntitlementDecision:
        limits = self.get_user_limits(user_id)
        if limits.max_storage_gb == UNLIMITED:
            return EntitlementDecision(allowed=True)

        used_gb = self.get_storage_used_gb(user_id)
        file_gb = max(0, file_size_bytes) / BYTES_PER_GB
        if used_gb >= limits.max_storage_gb or used_gb + file_gb > limits.max_storage_gb:
            return self._deny(
                user_id,
                ActionKind.UPLOAD,
                f"Storage limit exceeded. Current: {used_gb:.2f}GB, Limit: {limits.max_storage_gb:g}GB. "
                "Upgrade for more storage!",
                current_usage=round(used_gb, 4),
                requested_bytes=file_size_bytes,
                limit=limits.max_storage_gb,
            )
        return EntitlementDecision(allowed=True)

    def check(self, user_id: str, action: ActionKind, *, file_size_bytes: int = 0) -> EntitlementDecision:
        """Dispatch to the named check for `action`."""
        action = ActionKind(action)
        if action is ActionKind.POST:
            return self.can_create_post(user_id)
        if action is ActionKind.BOOST:
            return self.can_boost_post(user_id)
        if action is ActionKind.GROUP_CREATE:
            return self.can_create_group(user_id)
        if action is ActionKind.GROUP_JOIN:
            return self.can_join_group(user_id)
        return self.can_upload_file(user_id, file_size_bytes)


_default_service: Optional[EntitlementService] = None


def get_entitlement_service() -> EntitlementService:
    """Service wired from settings and the SQL usage store."""
    global _default_service
    if _default_service is None:
        _default_service = EntitlementService(
            SqlUsageStore(),
            admin_emails=settings.admin_email_list(),
            tz=_resolve_tz(settings.USAGE_TIMEZONE),
        )
    return _default_service


def reset_entitlement_service() -> None:
    global _default_service
    _default_service = None


def can_user_create_post(user_id: str) -> EntitlementDecision:
    return get_entitlement_service().can_create_post(user_id)


def can_user_boost_post(user_id: str) -> EntitlementDecision:
    return get_entitlement_service().can_boost_post(user_id)


def can_user_create_group(user_id: str) -> EntitlementDecision:
    return get_entitlement_service().can_create_group(user_id)


def can_user_join_group(user_id: str) -> EntitlementDecision:
    return get_entitlement_service().can_join_group(user_id)


def can_user_upload_file(user_id: str, file_size_bytes: int = 0) -> EntitlementDecision:
    return get_entitlement_service().can_upload_file(user_id, file_size_bytes)
