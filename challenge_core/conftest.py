# challenge_core/conftest.py
import os
from datetime import datetime, time, timedelta, timezone

import pytest

# Configure before any challenge_core module instantiates settings
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("ADMIN_KEY", "test-admin-key")
os.environ.setdefault("AUDIT_MAX_WORKERS", "1")
os.environ.setdefault("STORE_RETRY_BASE_DELAY_SECONDS", "0")
os.environ.setdefault("OUTREACH_LOOKBACK_DAYS", "1")

from sqlalchemy import insert  # noqa: E402

from challenge_core.core.database import (  # noqa: E402
    challenge_config,
    create_all_tables,
    get_db_session,
    get_engine,
    init_engine,
    outreach_activities,
    reset_database,
    task_definitions,
    user_challenge_progress,
    users,
)
from challenge_core.features.challenge.config import date_for_day, load_challenge_config, utc_today  # noqa: E402

ADMIN_KEY = os.environ["ADMIN_KEY"]


@pytest.fixture(scope="session", autouse=True)
def _engine():
    """Single in-memory SQLite engine for the whole session."""
    init_engine(os.environ["TEST_DATABASE_URL"])
    yield


@pytest.fixture(autouse=True)
def _reset_db():
    """Reset database before each test."""
    reset_database()
    yield


@pytest.fixture
def file_database(tmp_path):
    """File-backed SQLite with a connection per session, for tests that use threads."""
    init_engine(f"sqlite:///{tmp_path / 'challenge.db'}")
    create_all_tables()
    yield
    get_engine().dispose()
    init_engine(os.environ["TEST_DATABASE_URL"])
    create_all_tables()


@pytest.fixture
def make_challenge():
    """Insert an active challenge whose start date makes ``current_day`` today."""

    def _make(current_day: int = 1, total_days: int = 75, is_active: bool = True, with_start_date: bool = True):
        start = utc_today() - timedelta(days=current_day - 1) if with_start_date else None
        with get_db_session() as session:
            session.execute(
                insert(challenge_config).values(
                    current_day=current_day,
                    total_days=total_days,
                    start_date=start,
                    end_date=start + timedelta(days=total_days - 1) if start else None,
                    is_active=is_active,
                )
            )
        return load_challenge_config()

    return _make


@pytest.fixture
def make_definition():
    def _make(
        definition_id: str,
        name: str = None,
        sort_order: int = 0,
        is_active: bool = True,
        outreach_type: str = None,
        count_required: int = None,
        week_numbers=None,
        category: str = "daily",
    ):
        with get_db_session() as session:
            session.execute(
                insert(task_definitions).values(
                    id=definition_id,
                    name=name or definition_id.replace("_", " ").title(),
                    category=category,
                    sort_order=sort_order,
                    is_active=is_active,
                    outreach_type=outreach_type,
                    count_required=count_required,
                    week_numbers=week_numbers,
                )
            )
        return definition_id

    return _make


@pytest.fixture
def enroll():
    """Enroll a participant, optionally as of a given challenge day."""

    def _enroll(user_id: str, joined_day: int = None, is_active: bool = True):
        joined_at = datetime.now(timezone.utc)
        if joined_day is not None:
            config = load_challenge_config()
            joined_at = datetime.combine(date_for_day(config, joined_day), time(12, 0), tzinfo=timezone.utc)
        with get_db_session() as session:
            session.execute(
                insert(user_challenge_progress).values(user_id=user_id, is_active=is_active, joined_at=joined_at)
            )
        return user_id

    return _enroll


@pytest.fixture
def make_app_user():
    def _make(user_id: str, status: str = "active"):
        with get_db_session() as session:
            session.execute(insert(users).values(user_id=user_id, display_name=user_id, status=status))
        return user_id

    return _make


@pytest.fixture
def log_outreach():
    """Record outreach activity dated to a challenge day."""

    def _log(user_id: str, outreach_type: str, count: int = 1, challenge_day: int = None):
        config = load_challenge_config()
        activity_date = date_for_day(config, challenge_day) if challenge_day else utc_today()
        with get_db_session() as session:
            session.execute(
                insert(outreach_activities).values(
                    user_id=user_id, type=outreach_type, count=count, activity_date=activity_date
                )
            )

    return _log


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}
