"""
gamerhub/features/usage/service.py

Usage accounting.

Handles:
- Read side for entitlement checks (counts per window, storage counter)
- Write side used by callers after a successful action (posts, boosts,
  groups, memberships, storage)
- Subscription record reads/writes

The entitlement checker only ever uses the read side.
"""

from datetime import datetime, timezone, timedelta
from typing import Optional, Protocol, Tuple
from uuid import uuid4
import logging

from sqlalchemy import select, insert, update, func

from gamerhub.core.database import (
    get_db_session,
    users,
    subscriptions,
    posts,
    boosts,
    groups,
    group_members,
)
from gamerhub.models.subscription import SubscriptionRecord


logger = logging.getLogger(__name__)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UsageStore(Protocol):
    """Read-only persistence surface consumed by the entitlement checker."""

    def get_user_email(self, user_id: str) -> Tuple[Optional[str], bool]:
        """Return (email, email_verified)."""
        ...

    def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        ...

    def count_posts_between(self, user_id: str, start: datetime, end: datetime) -> int:
        ...

    def count_boosts_between(self, user_id: str, start: datetime, end: datetime) -> int:
        ...

    def count_group_memberships(self, user_id: str) -> int:
        ...

    def count_groups_owned(self, user_id: str) -> int:
        ...

    def get_storage_used_bytes(self, user_id: str) -> int:
        ...


class SqlUsageStore:
    """UsageStore backed by the SQLAlchemy tables in gamerhub.core.database."""

    def get_user_email(self, user_id: str) -> Tuple[Optional[str], bool]:
        with get_db_session() as session:
            row = session.execute(
                select(users.c.email, users.c.email_verified).where(users.c.user_id == user_id)
            ).first()
        if not row:
            return None, False
        return row.email, bool(row.email_verified)

    def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        return get_subscription(user_id)

    def count_posts_between(self, user_id: str, start: datetime, end: datetime) -> int:
        with get_db_session() as session:
            return session.execute(
                select(func.count())
                .select_from(posts)
                .where(posts.c.user_id == user_id)
                .where(posts.c.created_at >= _utc(start))
                .where(posts.c.created_at < _utc(end))
            ).scalar_one()

    def count_boosts_between(self, user_id: str, start: datetime, end: datetime) -> int:
        with get_db_session() as session:
            return session.execute(
                select(func.count())
                .select_from(boosts)
                .where(boosts.c.user_id == user_id)
                .where(boosts.c.created_at >= _utc(start))
                .where(boosts.c.created_at < _utc(end))
            ).scalar_one()

    def count_group_memberships(self, user_id: str) -> int:
        with get_db_session() as session:
            return session.execute(
                select(func.count()).select_from(group_members).where(group_members.c.user_id == user_id)
            ).scalar_one()

    def count_groups_owned(self, user_id: str) -> int:
        with get_db_session() as session:
            return session.execute(
                select(func.count()).select_from(groups).where(groups.c.owner_id == user_id)
            ).scalar_one()

    def get_storage_used_bytes(self, user_id: str) -> int:
        with get_db_session() as session:
            value = session.execute(
                select(users.c.storage_used).where(users.c.user_id == user_id)
            ).scalar_one_or_none()
        return int(value or 0)


def get_or_create_user(
    user_id: str,
    *,
    email: Optional[str] = None,
    email_verified: bool = False,
    display_name: Optional[str] = None,
) -> str:
    """Ensure an app_users row exists (idempotent). Returns the user_id."""
    with get_db_session() as session:
        existing = session.execute(
            select(users.c.user_id).where(users.c.user_id == user_id)
        ).first()
        if existing:
            return user_id
        session.execute(
            insert(users).values(
                user_id=user_id,
                email=email.lower() if email else None,
                email_verified=email_verified,
                display_name=display_name,
                storage_used=0,
                created_at=datetime.now(timezone.utc),
            )
        )
    return user_id


def get_subscription(user_id: str) -> Optional[SubscriptionRecord]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.user_id == user_id)
        ).first()
    if not row:
        return None
    return SubscriptionRecord(
        user_id=row.user_id,
        tier=row.tier,
        status=row.status,
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
        current_period_end=row.current_period_end,
        cancel_at_period_end=bool(row.cancel_at_period_end),
    )


def set_subscription(
    user_id: str,
    tier: str,
    status: str,
    *,
    stripe_customer_id: Optional[str] = None,
    stripe_subscription_id: Optional[str] = None,
    current_period_end: Optional[datetime] = None,
    cancel_at_period_end: bool = False,
) -> None:
    """Upsert the user's subscription row."""
    now = datetime.now(timezone.utc)
    values = {
        "tier": tier,
        "status": status,
        "current_period_end": current_period_end,
        "cancel_at_period_end": cancel_at_period_end,
        "updated_at": now,
    }
    if stripe_customer_id:
        values["stripe_customer_id"] = stripe_customer_id
    if stripe_subscription_id:
        values["stripe_subscription_id"] = stripe_subscription_id

    with get_db_session() as session:
        existing = session.execute(
            select(subscriptions.c.id).where(subscriptions.c.user_id == user_id)
        ).first()
        if existing:
            session.execute(
                update(subscriptions).where(subscriptions.c.user_id == user_id).values(**values)
            )
        else:
            session.execute(
                insert(subscriptions).values(user_id=user_id, created_at=now, **values)
            )
    logger.info(
        "[usage] subscription set",
        extra={"user_id": user_id, "tier": tier, "status": status},
    )


def record_post(user_id: str, content: Optional[str] = None, created_at: Optional[datetime] = None) -> None:
    with get_db_session() as session:
        session.execute(
            insert(posts).values(
                user_id=user_id,
                content=content,
                created_at=_utc(created_at or datetime.now(timezone.utc)),
            )
        )


def record_boost(
    user_id: str,
    boost_type: str = "POST_BOOST",
    *,
    target_id: Optional[str] = None,
    duration_hours: int = 24,
    created_at: Optional[datetime] = None,
) -> None:
    created = _utc(created_at or datetime.now(timezone.utc))
    with get_db_session() as session:
        session.execute(
            insert(boosts).values(
                user_id=user_id,
                type=boost_type,
                target_id=target_id,
                duration_hours=duration_hours,
                status="active",
                created_at=created,
                expires_at=created + timedelta(hours=duration_hours),
            )
        )


def create_group(owner_id: str, name: str, group_id: Optional[str] = None) -> str:
    """Create a group and add the owner as its first member."""
    gid = group_id or str(uuid4())
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        session.execute(insert(groups).values(id=gid, owner_id=owner_id, name=name, created_at=now))
        session.execute(
            insert(group_members).values(group_id=gid, user_id=owner_id, role="owner", joined_at=now)
        )
    return gid


def add_group_member(group_id: str, user_id: str) -> None:
    with get_db_session() as session:
        session.execute(
            insert(group_members).values(
                group_id=group_id,
                user_id=user_id,
                role="member",
                joined_at=datetime.now(timezone.utc),
            )
        )


def add_storage_used(user_id: str, size_bytes: int) -> None:
    with get_db_session() as session:
        session.execute(
            update(users)
            .where(users.c.user_id == user_id)
            .values(storage_used=users.c.storage_used + size_bytes)
        )
