"""
Task existence guarantor.

Materializes one TaskInstance per (user, active definition, day) with
``INSERT ... ON CONFLICT DO NOTHING``. Safe to call any number of times,
from any number of callers: existing rows (completed or not) are never
touched, and duplicate races resolve inside the store.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from sqlalchemy import select

from challenge_core.core.database import get_db_session, insert_ignore_conflicts, user_daily_tasks
from challenge_core.core.errors import TransientError
from challenge_core.core.retry import classify_store_error
from challenge_core.features.challenge.config import load_active_definitions, require_challenge_config, validate_day
from challenge_core.models.challenge import ChallengeConfig, EnsureResult, TaskInstance

logger = logging.getLogger("challenge")


def row_to_instance(row) -> TaskInstance:
    return TaskInstance(
        id=row.id,
        user_id=row.user_id,
        task_definition_id=row.task_definition_id,
        challenge_day=int(row.challenge_day),
        completed=bool(row.completed),
        completed_at=row.completed_at,
        notes=row.notes,
    )


def _insert_instance(user_id: str, task_definition_id: str, challenge_day: int) -> bool:
    with get_db_session() as session:
        stmt = insert_ignore_conflicts(
            session, user_daily_tasks, ("user_id", "task_definition_id", "challenge_day")
        ).values(
            user_id=user_id,
            task_definition_id=task_definition_id,
            challenge_day=challenge_day,
            completed=False,
        )
        return session.execute(stmt).rowcount == 1


def ensure_daily_tasks_exist(
    user_id: str,
    challenge_day: int,
    *,
    config: Optional[ChallengeConfig] = None,
) -> EnsureResult:
    """
    Guarantee an instance exists for every active definition applying to the day.

    Best-effort per definition: a failing insert is logged and reported in
    ``failed`` while the remaining definitions are still processed. Store
    outages (TransientError) propagate so the caller can retry the whole
    call, which is idempotent.
    """
    config = config or require_challenge_config()
    day = validate_day(config, challenge_day)
    result = EnsureResult(user_id=user_id, challenge_day=day)

    for definition in load_active_definitions(day=day):
        try:
            created = _insert_instance(user_id, definition.id, day)
        except Exception as exc:
            classified = classify_store_error(exc)
            if isinstance(classified, TransientError):
                raise classified from exc
            logger.warning(
                f"guarantor.insert_failed definition={definition.id} day={day} error={exc}",
                extra={"user_id": user_id, "challenge_day": day, "error_code": getattr(classified, "code", None)},
            )
            result.failed.append(definition.id)
            continue
        (result.created if created else result.existing).append(definition.id)

    if result.created:
        logger.info(
            f"guarantor.created count={len(result.created)} day={day}",
            extra={"user_id": user_id, "challenge_day": day},
        )
    return result


def list_tasks_for_day(user_id: str, challenge_day: int) -> List[TaskInstance]:
    with get_db_session() as session:
        rows = session.execute(
            select(user_daily_tasks)
            .where(user_daily_tasks.c.user_id == user_id)
            .where(user_daily_tasks.c.challenge_day == challenge_day)
            .order_by(user_daily_tasks.c.id.asc())
        ).fetchall()
    return [row_to_instance(r) for r in rows]


def instances_by_definition(user_id: str, challenge_day: int) -> Dict[str, TaskInstance]:
    return {t.task_definition_id: t for t in list_tasks_for_day(user_id, challenge_day)}


def list_user_tasks(user_id: str, up_to_day: Optional[int] = None) -> List[TaskInstance]:
    stmt = select(user_daily_tasks).where(user_daily_tasks.c.user_id == user_id)
    if up_to_day is not None:
        stmt = stmt.where(user_daily_tasks.c.challenge_day <= up_to_day)
    with get_db_session() as session:
        rows = session.execute(
            stmt.order_by(user_daily_tasks.c.challenge_day.asc(), user_daily_tasks.c.id.asc())
        ).fetchall()
    return [row_to_instance(r) for r in rows]
