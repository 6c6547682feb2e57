"""
Store access for tutorgate.

The store is the only coordination point between concurrent calls, so every
state transition in the services runs inside one get_db_session() block:
commit when the block exits cleanly, roll back and re-raise otherwise.

PostgreSQL in production (pooled, pre-pinged connections). SQLite is accepted
for tests and local runs.
"""
import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool
from sqlalchemy.sql import func

from tutorgate.core.config import settings

logger = logging.getLogger(__name__)

metadata = MetaData()

# PostgreSQL pool sizing
POOLED_ENGINE_OPTIONS: Dict[str, Any] = {
    "poolclass": QueuePool,
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 3600,
    "pool_pre_ping": True,
}

_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL (environment, then settings) wins over DATABASE_URL."""
    return os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL or settings.DATABASE_URL


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        # FastAPI runs sync routes in a threadpool
        return {"connect_args": {"check_same_thread": False}}
    return dict(POOLED_ENGINE_OPTIONS)


def init_engine(database_url: Optional[str] = None):
    """(Re)bind the module engine and session factory; disposes any previous engine."""
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(url, echo=False, **_engine_options(url))
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    return _engine


def get_engine():
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Transactional session scope.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """Create missing tables; existing ones are left alone."""
    metadata.create_all(bind=get_engine())


def drop_all_tables():
    """Drop every tutorgate table. Tests only."""
    metadata.drop_all(bind=get_engine())


def check_connection() -> bool:
    """True if a trivial query round-trips; logs and returns False otherwise."""
    try:
        with get_engine().connect() as conn:
            conn.execute(select(1))
    except Exception as e:
        logger.warning("[db] connection check failed", extra={"error": str(e)})
        return False
    return True


# Identities table: one row per resolved caller identity, never deleted
identities = Table(
    'identities',
    metadata,
    Column('identity_key', String(255), primary_key=True),
    Column('tier', String(20), nullable=False, server_default='free'),  # 'free', 'premium'
    Column('tier_status', String(20), nullable=False, server_default='active'),  # 'active', 'cancelled'
    Column('usage_count', Integer, nullable=False, server_default='0'),  # informational only
    Column('linked_code', String(20), nullable=True, index=True),
    Column('downgrade_at', DateTime(timezone=True), nullable=True),
    Column('next_billing_at', DateTime(timezone=True), nullable=True),
    Column('early_user', Boolean, nullable=False, server_default='0'),
    Column('early_user_registered_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_identities_tier', 'tier'),
)

# Usage events table: append-only, the only source of truth for quota
usage_events = Table(
    'usage_events',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('identity_key', String(255), nullable=False),
    Column('category', String(50), nullable=False),  # 'basic', 'advanced'
    Column('action', String(50), nullable=True),  # tool name
    Column('correlation_id', String(36), nullable=True, index=True),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Column('metadata', JSON, nullable=True),
    # Composite index for the rolling window count: (identity_key, occurred_at)
    Index('idx_usage_events_identity_occurred', 'identity_key', 'occurred_at'),
)

# Usage feedback (kept apart so usage events stay immutable)
usage_feedback = Table(
    'usage_feedback',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(36), nullable=False),
    Column('decision', String(10), nullable=False),  # 'yes', 'no'
    Column('reason', String(50), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('event_id', name='uq_usage_feedback_event_id'),
)

# Activation codes issued on purchase
activation_codes = Table(
    'activation_codes',
    metadata,
    Column('code', String(20), primary_key=True),
    Column('purchase_id', String(255), nullable=False),
    Column('owner_contact', String(255), nullable=True),
    Column('state', String(20), nullable=False, server_default='issued'),  # issued, claimed, linked, revoked
    Column('device_id', String(255), nullable=True),
    Column('linked_identity', String(255), nullable=True),
    Column('issued_at', DateTime(timezone=True), nullable=False),
    Column('claimed_at', DateTime(timezone=True), nullable=True),
    Column('linked_at', DateTime(timezone=True), nullable=True),
    Column('revoked_at', DateTime(timezone=True), nullable=True),
    Column('next_billing_at', DateTime(timezone=True), nullable=True),
    Index('idx_activation_codes_purchase', 'purchase_id'),
    # Heuristic linking looks for the most recent claimed, unlinked code
    Index('idx_activation_codes_state_claimed', 'state', 'claimed_at'),
)

# Short-lived pairing tokens handed out at claim time
pairing_tokens = Table(
    'pairing_tokens',
    metadata,
    Column('token', String(16), primary_key=True),
    Column('code', String(20), nullable=False, index=True),
    Column('issued_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Column('consumed_at', DateTime(timezone=True), nullable=True),
    Column('consumed_by', String(255), nullable=True),
)

# Payment events (webhook idempotency)
payment_events = Table(
    'payment_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 hash for deduplication
    Column('processed', Boolean, nullable=False, server_default='0', index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('event_id', name='uq_payment_events_event_id'),
    Index('idx_payment_events_received_at', 'received_at'),
)
