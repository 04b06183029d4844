"""
Challenge configuration loader and day arithmetic.

Every operation reloads the active config through ``load_challenge_config``
so an administrator advancing the day mid-run is picked up on the next call.
Day N of the challenge falls on ``start_date + (N - 1)`` (UTC dates).
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from challenge_core.core.database import challenge_config, get_db_session, task_definitions
from challenge_core.core.errors import ValidationError
from challenge_core.models.challenge import ChallengeConfig, TaskDefinition

logger = logging.getLogger("challenge")

DAYS_PER_WEEK = 7


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def _row_to_config(row) -> ChallengeConfig:
    return ChallengeConfig(
        id=row.id,
        current_day=int(row.current_day),
        total_days=int(row.total_days),
        start_date=row.start_date,
        end_date=row.end_date,
        is_active=bool(row.is_active),
    )


def load_challenge_config(session: Optional[Session] = None) -> Optional[ChallengeConfig]:
    """Return the active challenge config, or None if no challenge is running."""
    stmt = (
        select(challenge_config)
        .where(challenge_config.c.is_active.is_(True))
        .order_by(challenge_config.c.id.desc())
        .limit(1)
    )
    if session is not None:
        row = session.execute(stmt).first()
        return _row_to_config(row) if row else None
    with get_db_session() as s:
        row = s.execute(stmt).first()
        return _row_to_config(row) if row else None


def require_challenge_config(session: Optional[Session] = None) -> ChallengeConfig:
    config = load_challenge_config(session)
    if config is None:
        raise ValidationError("No active challenge", code="no_active_challenge")
    return config


def effective_current_day(config: ChallengeConfig, today: Optional[date] = None) -> int:
    """Date-derived day when start_date is known, clamped to [1, total_days]."""
    if config.start_date is None:
        return max(1, min(config.current_day, config.total_days))
    today = today or utc_today()
    elapsed = (today - config.start_date).days
    return max(1, min(elapsed + 1, config.total_days))


def date_for_day(config: ChallengeConfig, day: int, today: Optional[date] = None) -> date:
    if config.start_date is not None:
        return config.start_date + timedelta(days=day - 1)
    # No start date: anchor on the stored current day being today
    today = today or utc_today()
    return today - timedelta(days=effective_current_day(config) - day)


def day_for_date(config: ChallengeConfig, moment: date, today: Optional[date] = None) -> int:
    day_one = date_for_day(config, 1, today=today)
    return (moment - day_one).days + 1


def week_of_day(day: int) -> int:
    return (day - 1) // DAYS_PER_WEEK + 1


def days_of_week(week: int) -> range:
    first = (week - 1) * DAYS_PER_WEEK + 1
    return range(first, first + DAYS_PER_WEEK)


def applies_to_day(definition: TaskDefinition, day: int) -> bool:
    if not definition.week_numbers:
        return True
    return week_of_day(day) in definition.week_numbers


def validate_day(config: ChallengeConfig, day: int) -> int:
    if day is None or int(day) < 1 or int(day) > config.total_days:
        raise ValidationError(
            f"challenge_day must be between 1 and {config.total_days}, got {day}",
            code="invalid_day",
        )
    return int(day)


def _row_to_definition(row) -> TaskDefinition:
    return TaskDefinition(
        id=row.id,
        name=row.name,
        category=row.category,
        sort_order=int(row.sort_order or 0),
        is_active=bool(row.is_active),
        count_required=row.count_required,
        outreach_type=row.outreach_type,
        resource_id=row.resource_id,
        external_link=row.external_link,
        week_numbers=list(row.week_numbers) if row.week_numbers else None,
    )


def load_active_definitions(session: Optional[Session] = None, day: Optional[int] = None) -> List[TaskDefinition]:
    """Active definitions ordered by sort_order; filtered to ``day`` when given."""
    stmt = (
        select(task_definitions)
        .where(task_definitions.c.is_active.is_(True))
        .order_by(task_definitions.c.sort_order.asc(), task_definitions.c.id.asc())
    )
    if session is not None:
        rows = session.execute(stmt).fetchall()
    else:
        with get_db_session() as s:
            rows = s.execute(stmt).fetchall()
    definitions = [_row_to_definition(r) for r in rows]
    if day is None:
        return definitions
    return [d for d in definitions if applies_to_day(d, day)]


def sync_current_day(config: ChallengeConfig, today: Optional[date] = None) -> ChallengeConfig:
    """Persist the date-derived day into the stored current_day when they differ."""
    derived = effective_current_day(config, today=today)
    if derived == config.current_day:
        return config
    with get_db_session() as session:
        session.execute(
            update(challenge_config)
            .where(challenge_config.c.id == config.id)
            .values(current_day=derived)
        )
    logger.info(f"challenge.current_day synced {config.current_day} -> {derived}")
    return config.model_copy(update={"current_day": derived})
