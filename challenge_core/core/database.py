"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for in-memory SQLite,
  one connection per checkout for file-backed SQLite)
- Table definitions for the challenge task engine
- Dialect-aware INSERT ... ON CONFLICT DO NOTHING for natural-key upserts
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import event, create_engine, MetaData, Table, Column, Integer, String, DateTime, Date, Boolean, JSON, Text, Index, ForeignKey, UniqueConstraint
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func, true, false
import logging
import os

from challenge_core.core.config import settings


logger = logging.getLogger("challenge")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30  # Seconds a writer waits for the file lock

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def _begin_immediate_transactions(engine) -> None:
    """
    Take the SQLite write lock when a transaction starts.

    pysqlite's implicit BEGIN is disabled and every transaction opens with
    BEGIN IMMEDIATE, so concurrent sessions queue on the busy timeout instead
    of failing lock upgrades mid-transaction.
    """

    @event.listens_for(engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


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

    if url.startswith("sqlite") and _is_memory_sqlite(url):
        # Single shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    elif url.startswith("sqlite"):
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            echo=False,
        )
        _begin_immediate_transactions(_engine)
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def supports_concurrent_sessions() -> bool:
    """False when every session shares one DBAPI connection (in-memory SQLite)."""
    return not isinstance(get_engine().pool, StaticPool)


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

    Commits on clean exit and rolls back on any exception, so everything
    executed inside one block is a single unit of work.

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


def insert_ignore_conflicts(session: Session, table: Table, index_elements):
    """
    Build an ``INSERT ... ON CONFLICT (index_elements) DO NOTHING`` for the
    session's dialect.

    The unique constraint on ``index_elements`` decides the race: concurrent
    callers inserting the same natural key both succeed, one of them with a
    rowcount of 0.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(table)
    elif dialect == "sqlite":
        stmt = sqlite.insert(table)
    else:
        raise NotImplementedError(f"Upserts are not supported on dialect {dialect!r}")
    return stmt.on_conflict_do_nothing(index_elements=list(index_elements))


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


# Users table: the population eligible for enrollment
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Challenge configuration (singleton active row, administered elsewhere)
challenge_config = Table(
    'challenge_config',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('current_day', Integer, nullable=False, server_default='1'),
    Column('total_days', Integer, nullable=False, server_default='75'),
    Column('start_date', Date, nullable=True),
    Column('end_date', Date, nullable=True),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Task definition catalog (read-only to the engine)
task_definitions = Table(
    'task_definitions',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('name', Text, nullable=False),
    Column('category', String(100), nullable=True),
    Column('sort_order', Integer, nullable=False, server_default='0'),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('count_required', Integer, nullable=True),
    Column('outreach_type', String(50), nullable=True),
    Column('resource_id', String(100), nullable=True),
    Column('external_link', Text, nullable=True),
    Column('week_numbers', JSON, nullable=True),
    Index('idx_task_definitions_active_sort', 'is_active', 'sort_order'),
    Index('idx_task_definitions_outreach', 'outreach_type'),
)

# Per-user, per-day task instances
user_daily_tasks = Table(
    'user_daily_tasks',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('task_definition_id', String(100), ForeignKey('task_definitions.id'), nullable=False),
    Column('challenge_day', Integer, nullable=False),
    Column('completed', Boolean, nullable=False, server_default=false()),
    Column('completed_at', DateTime(timezone=True), nullable=True),
    Column('notes', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Natural key: at most one row per (user, definition, day)
    UniqueConstraint('user_id', 'task_definition_id', 'challenge_day', name='uq_user_daily_tasks_user_def_day'),
    # Composite index for the per-day task list
    Index('idx_user_daily_tasks_user_day', 'user_id', 'challenge_day'),
)

# Append-only points ledger
points_ledger = Table(
    'points_ledger',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('amount', Integer, nullable=False),
    Column('source_tag', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('challenge_day', Integer, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # At-most-once award per (user, source)
    UniqueConstraint('user_id', 'source_tag', name='uq_points_ledger_user_source'),
    Index('idx_points_ledger_user_created', 'user_id', 'created_at'),
)

# Enrollment + denormalized progress cache
user_challenge_progress = Table(
    'user_challenge_progress',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, unique=True),
    Column('total_days_completed', Integer, nullable=False, server_default='0'),
    Column('current_streak', Integer, nullable=False, server_default='0'),
    Column('longest_streak', Integer, nullable=False, server_default='0'),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('joined_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_user_challenge_progress_active', 'is_active'),
)

# Outreach activity stream (produced by other features)
outreach_activities = Table(
    'outreach_activities',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('type', String(50), nullable=False),
    Column('count', Integer, nullable=False, server_default='1'),
    Column('activity_date', Date, nullable=False),
    Column('notes', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Composite index for the reconciliation window query
    Index('idx_outreach_activities_user_date', 'user_id', 'activity_date'),
)
