"""
Completion toggle and points grant.

The instance update and the ledger append share one transaction: either
both commit or neither does. Unchecking never retracts points, and
re-checking an instance that was already awarded is a silent no-op on the
ledger (unique ``task:<instance_id>`` tag).
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update

from challenge_core.core.config import settings
from challenge_core.core.database import get_db_session, user_daily_tasks
from challenge_core.core.errors import ValidationError
from challenge_core.features.points.ledger import append_entry, task_source_tag
from challenge_core.features.tasks.guarantor import ensure_daily_tasks_exist, row_to_instance
from challenge_core.models.challenge import LedgerEntry, ToggleResult

logger = logging.getLogger("challenge")

ADMIN_COMPLETE_NOTE = "Completed by administrator"


def _instance_query(user_id: str, task_definition_id: str, challenge_day: int):
    return (
        select(user_daily_tasks)
        .where(user_daily_tasks.c.user_id == user_id)
        .where(user_daily_tasks.c.task_definition_id == task_definition_id)
        .where(user_daily_tasks.c.challenge_day == challenge_day)
    )


def toggle_task(
    user_id: str,
    task_definition_id: str,
    challenge_day: int,
    desired: bool,
    *,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ToggleResult:
    """
    Set an existing instance's completion state.

    Raises ValidationError when the instance was never materialized; the
    toggle does not create rows. The returned task is re-read from the store
    after the write.
    """
    ts = now or datetime.now(timezone.utc)
    with get_db_session() as session:
        row = session.execute(_instance_query(user_id, task_definition_id, challenge_day)).first()
        if row is None:
            raise ValidationError(
                f"No task instance for definition {task_definition_id} on day {challenge_day}",
                code="task_instance_missing",
            )

        was_completed = bool(row.completed)
        if desired:
            completed_at = row.completed_at if was_completed and row.completed_at else ts
        else:
            completed_at = None

        values = {"completed": desired, "completed_at": completed_at}
        if notes is not None:
            values["notes"] = notes
        session.execute(update(user_daily_tasks).where(user_daily_tasks.c.id == row.id).values(**values))

        points_awarded = False
        if desired and not was_completed:
            points_awarded = append_entry(
                session,
                LedgerEntry(
                    user_id=user_id,
                    amount=settings.POINTS_PER_TASK,
                    source_tag=task_source_tag(row.id),
                    description=f"Completed task {task_definition_id}",
                    challenge_day=challenge_day,
                ),
            )

        fresh = session.execute(select(user_daily_tasks).where(user_daily_tasks.c.id == row.id)).first()
        task = row_to_instance(fresh)

    logger.info(
        f"task.toggle definition={task_definition_id} desired={desired} points_awarded={points_awarded}",
        extra={"user_id": user_id, "challenge_day": challenge_day},
    )
    return ToggleResult(points_awarded=points_awarded, task=task)


def admin_complete_task(
    user_id: str,
    task_definition_id: str,
    challenge_day: int,
    notes: Optional[str] = None,
) -> ToggleResult:
    """Operator manual completion: materialize the day if needed, then complete."""
    ensure_daily_tasks_exist(user_id, challenge_day)
    return toggle_task(user_id, task_definition_id, challenge_day, True, notes=notes or ADMIN_COMPLETE_NOTE)
