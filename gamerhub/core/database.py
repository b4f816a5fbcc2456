"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (in-memory SQLite shares one connection)
- Table definitions for users, subscriptions, usage sources and uploads
"""
from typing import Optional
from contextlib import contextmanager
import logging
import os

from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    BigInteger,
    String,
    DateTime,
    Boolean,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func

from gamerhub.core.config import settings


logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # One shared connection, otherwise every checkout sees a fresh :memory: db
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )
    logger.info("Database engine initialized", extra={"dialect": _engine.dialect.name})

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


# Users
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(255), nullable=True, unique=True),
    Column('email_verified', Boolean, nullable=False, server_default='0'),
    Column('display_name', Text, nullable=True),
    Column('storage_used', BigInteger, nullable=False, server_default='0'),  # bytes
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Subscriptions (one row per user, maintained by Stripe webhooks)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, unique=True, index=True),
    Column('tier', String(50), nullable=False, server_default='free'),  # free, premium, pro
    Column('status', String(50), nullable=False, server_default='inactive'),  # active, canceled, past_due, ...
    Column('stripe_customer_id', String(100), nullable=True, index=True),
    Column('stripe_subscription_id', String(100), nullable=True, unique=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_subscriptions_status', 'status'),
)

# Posts (counted per day for the post limit)
posts = Table(
    'posts',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('content', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    # Composite index for the daily count: (user_id, created_at)
    Index('idx_posts_user_created', 'user_id', 'created_at'),
)

# Boosts (counted per calendar month)
boosts = Table(
    'boosts',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('type', String(50), nullable=False),  # POST_BOOST, PROFILE_BOOST, GROUP_BOOST
    Column('target_id', String(100), nullable=True),
    Column('duration_hours', Integer, nullable=False, server_default='24'),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Index('idx_boosts_user_created', 'user_id', 'created_at'),
)

# Groups
groups = Table(
    'groups',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('owner_id', String(100), ForeignKey('app_users.user_id'), nullable=False, index=True),
    Column('name', String(200), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Group memberships
group_members = Table(
    'group_members',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('group_id', String(100), ForeignKey('groups.id'), nullable=False, index=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, index=True),
    Column('role', String(50), nullable=False, server_default='member'),  # 'owner', 'member'
    Column('joined_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('group_id', 'user_id', name='uq_group_members_group_user'),
)

# Chunked upload sessions (server side of the upload protocol)
upload_sessions = Table(
    'upload_sessions',
    metadata,
    Column('upload_id', String(64), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, index=True),
    Column('file_name', String(255), nullable=False),
    Column('content_type', String(100), nullable=True),
    Column('total_size', BigInteger, nullable=False),
    Column('received_bytes', BigInteger, nullable=False, server_default='0'),
    Column('completed', Boolean, nullable=False, server_default='0'),
    Column('url', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Billing events (Stripe webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 hash for deduplication
    Column('processed', Boolean, nullable=False, server_default='0', index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
)
