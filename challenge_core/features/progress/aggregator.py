"""
Progress and streak aggregation.

``compute_progress`` is pure: it derives day completion, totals and streaks
from instance rows. ``update_progress`` loads the inputs, runs it, and writes
the denormalized cache on ``user_challenge_progress``. The enrollment row is
that same table; ``enroll_participant`` creates it.
"""
from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import select, update

from challenge_core.core.config import settings
from challenge_core.core.database import get_db_session, insert_ignore_conflicts, user_challenge_progress
from challenge_core.core.errors import NotFoundError
from challenge_core.features.challenge.config import (
    applies_to_day,
    effective_current_day,
    load_active_definitions,
    require_challenge_config,
)
from challenge_core.features.tasks.guarantor import list_user_tasks
from challenge_core.models.challenge import ChallengeConfig, ProgressSnapshot, TaskDefinition, TaskInstance

logger = logging.getLogger("challenge")


def required_completions(applicable: int, ratio: float) -> int:
    """Completed instances needed for a day to count; never less than one."""
    return max(1, math.ceil(round(ratio * applicable, 9)))


def met_days(
    instances: Iterable[TaskInstance],
    definitions: Iterable[TaskDefinition],
    current_day: int,
    completion_ratio: float,
) -> Set[int]:
    definitions = list(definitions)
    completed_by_day: Dict[int, Set[str]] = defaultdict(set)
    for inst in instances:
        if inst.completed and inst.challenge_day <= current_day:
            completed_by_day[inst.challenge_day].add(inst.task_definition_id)

    result: Set[int] = set()
    for day, completed_ids in completed_by_day.items():
        applicable = {d.id for d in definitions if applies_to_day(d, day)}
        if len(completed_ids & applicable) >= required_completions(len(applicable), completion_ratio):
            result.add(day)
    return result


def compute_progress(
    instances: Iterable[TaskInstance],
    definitions: Iterable[TaskDefinition],
    current_day: int,
    completion_ratio: Optional[float] = None,
) -> ProgressSnapshot:
    """
    Derive progress from instance rows.

    The streak is counted backward from the latest day (<= current_day) that
    has any instance. That anchor is skipped when it is today and not yet met;
    any earlier unmet day, including one with no instances, ends the run.
    """
    ratio = settings.DAY_COMPLETION_RATIO if completion_ratio is None else completion_ratio
    instances = list(instances)
    met = met_days(instances, definitions, current_day, ratio)

    days_with_data = {i.challenge_day for i in instances if i.challenge_day <= current_day}
    streak = 0
    if days_with_data:
        day = max(days_with_data)
        if day == current_day and day not in met:
            day -= 1
        while day >= 1 and day in met:
            streak += 1
            day -= 1

    longest = run = 0
    for day in range(1, current_day + 1):
        run = run + 1 if day in met else 0
        longest = max(longest, run)

    return ProgressSnapshot(
        total_days_completed=len(met),
        current_streak=streak,
        longest_streak=longest,
        met_days=sorted(met),
    )


def list_active_participants() -> List[str]:
    with get_db_session() as session:
        rows = session.execute(
            select(user_challenge_progress.c.user_id)
            .where(user_challenge_progress.c.is_active.is_(True))
            .order_by(user_challenge_progress.c.user_id.asc())
        ).fetchall()
    return [r.user_id for r in rows]


def enroll_participant(user_id: str, joined_at: Optional[datetime] = None) -> bool:
    """Create the enrollment row. Returns False if the user was already enrolled."""
    with get_db_session() as session:
        stmt = insert_ignore_conflicts(session, user_challenge_progress, ("user_id",)).values(
            user_id=user_id,
            is_active=True,
            joined_at=joined_at or datetime.now(timezone.utc),
        )
        created = session.execute(stmt).rowcount == 1
    if created:
        logger.info("challenge.enrolled", extra={"user_id": user_id})
    return created


def get_progress(user_id: str) -> dict:
    with get_db_session() as session:
        row = session.execute(
            select(user_challenge_progress).where(user_challenge_progress.c.user_id == user_id)
        ).first()
    if row is None:
        raise NotFoundError(f"User {user_id} is not enrolled in the challenge")
    return {
        "user_id": row.user_id,
        "total_days_completed": int(row.total_days_completed),
        "current_streak": int(row.current_streak),
        "longest_streak": int(row.longest_streak),
        "is_active": bool(row.is_active),
        "joined_at": row.joined_at.isoformat() if row.joined_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


def snapshot_for_user(user_id: str, config: ChallengeConfig) -> ProgressSnapshot:
    current_day = effective_current_day(config)
    return compute_progress(
        list_user_tasks(user_id, up_to_day=current_day),
        load_active_definitions(),
        current_day,
    )


def update_progress(user_id: Optional[str] = None, *, config: Optional[ChallengeConfig] = None) -> Dict[str, ProgressSnapshot]:
    """
    Rebuild the progress cache for one enrolled user, or every active
    participant when ``user_id`` is None. Users without an enrollment row
    are skipped.
    """
    config = config or require_challenge_config()
    user_ids = [user_id] if user_id is not None else list_active_participants()

    snapshots: Dict[str, ProgressSnapshot] = {}
    for uid in user_ids:
        snapshot = snapshot_for_user(uid, config)
        with get_db_session() as session:
            result = session.execute(
                update(user_challenge_progress)
                .where(user_challenge_progress.c.user_id == uid)
                .values(
                    total_days_completed=snapshot.total_days_completed,
                    current_streak=snapshot.current_streak,
                    longest_streak=snapshot.longest_streak,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            written = result.rowcount == 1
        if written:
            snapshots[uid] = snapshot
        else:
            logger.debug(f"progress.skip not enrolled user={uid}")
    return snapshots
