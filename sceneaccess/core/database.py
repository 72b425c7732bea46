"""
SQL persistence: engine lifecycle, sessions and table definitions.

The engine is built lazily from DATABASE_URL (TEST_DATABASE_URL wins when set)
and can be swapped at runtime with init_engine(url), which the test suite does
to point every store at a temp-file SQLite database.
"""
import logging
import os
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    inspect,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool
from sqlalchemy.sql import func

from sceneaccess.core.config import settings


logger = logging.getLogger("sceneaccess")

metadata = MetaData()

# Server databases only; SQLite keeps SQLAlchemy's default pool
SERVER_POOL_OPTIONS = {
    "poolclass": QueuePool,
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 3600,
    "pool_pre_ping": True,
}

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def _resolve_url(database_url: Optional[str]) -> str:
    url = database_url or os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL is not configured (set it in the environment or .env)")
    return url


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # SQL stores run in asyncio.to_thread workers
        return {"connect_args": {"check_same_thread": False}}
    return dict(SERVER_POOL_OPTIONS)


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)build the engine and session factory, replacing any previous engine."""
    global _engine, _session_factory

    url = _resolve_url(database_url)
    dispose_engine()
    _engine = create_engine(url, **_engine_options(url))
    _session_factory = sessionmaker(bind=_engine, autoflush=False)
    logger.info("db.engine_ready", extra={"reason": _engine.dialect.name})
    return _engine


def get_engine() -> Engine:
    return _engine if _engine is not None else init_engine()


def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


@contextmanager
def get_db_session() -> Iterator[Session]:
    """Session scope: commit on clean exit, roll back and re-raise otherwise."""
    if _session_factory is None:
        init_engine()
    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """Destructive; tests and local development only."""
    metadata.drop_all(bind=get_engine())


def ping() -> None:
    """Round-trip SELECT 1; raises the driver error when the database is unreachable."""
    with get_engine().connect() as conn:
        conn.execute(text("SELECT 1"))


def missing_tables() -> List[str]:
    inspector = inspect(get_engine())
    return sorted(name for name in metadata.tables if not inspector.has_table(name))


# Administrator overrides (managed outside this service)
admin_flags = Table(
    'admin_flags',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('is_admin', Boolean, nullable=False, server_default='0'),
    Column('granted_by', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Subscription snapshots mirrored from Stripe webhooks
billing_subscriptions = Table(
    'billing_subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('stripe_subscription_id', String(100), nullable=False, unique=True),
    Column('status', String(50), nullable=False),  # active, trialing, canceled, past_due, ...
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_billing_subscriptions_user_status', 'user_id', 'status'),
)

# Purchase and free-slot grants; rows are never updated
access_grants = Table(
    'access_grants',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('scene_id', String(100), nullable=True),
    Column('work_id', String(100), nullable=True),
    Column('access_type', String(20), nullable=False),  # purchase | free_slot
    Column('purchase_id', String(255), nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint(
        "(scene_id IS NOT NULL AND work_id IS NULL) OR (scene_id IS NULL AND work_id IS NOT NULL)",
        name='ck_access_grants_one_target',
    ),
    Index('idx_access_grants_user_scene', 'user_id', 'access_type', 'scene_id'),
    Index('idx_access_grants_user_work', 'user_id', 'access_type', 'work_id'),
)

# One free slot per user, ever (primary key)
free_slot_grants = Table(
    'free_slot_grants',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('scene_id', String(100), nullable=False),
    Column('consumed_at', DateTime(timezone=True), nullable=False),
)

# Webhook replay protection
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('processed', Boolean, nullable=False, server_default='0'),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
)

# Rehearsal sessions (written by the practice flow, read for stats)
learning_sessions = Table(
    'learning_sessions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('scene_id', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('average_score', Float, nullable=True),
    Column('score_scale', String(20), nullable=True),  # legacy_3 | ten | NULL (infer)
    Index('idx_learning_sessions_user_started', 'user_id', 'started_at'),
)
