"""
Outreach reconciliation.

Outreach activity is logged by other features as dated count records.
Reconciliation sums those counts per (type, date) over a short lookback
window and forces completion of count-based tasks whose threshold is
reached. Completion is sticky: a lower recount never un-completes a task,
and a re-run over unchanged data does nothing.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, insert, select, update

from challenge_core.core.config import settings
from challenge_core.core.database import get_db_session, outreach_activities, user_daily_tasks
from challenge_core.core.errors import ValidationError
from challenge_core.features.challenge.config import (
    applies_to_day,
    date_for_day,
    effective_current_day,
    load_active_definitions,
    require_challenge_config,
    utc_today,
    validate_day,
)
from challenge_core.features.tasks.guarantor import ensure_daily_tasks_exist, instances_by_definition, row_to_instance
from challenge_core.features.tasks.toggle import toggle_task
from challenge_core.models.challenge import ChallengeConfig, ReconcileResult, TaskInstance

logger = logging.getLogger("challenge")

AUTO_COMPLETE_NOTE = "Auto-completed via outreach activity"


def _aggregate_counts(user_id: str, first: date, last: date) -> Dict[Tuple[str, date], int]:
    with get_db_session() as session:
        rows = session.execute(
            select(
                outreach_activities.c.type,
                outreach_activities.c.activity_date,
                func.sum(outreach_activities.c.count).label("total"),
            )
            .where(outreach_activities.c.user_id == user_id)
            .where(outreach_activities.c.activity_date >= first)
            .where(outreach_activities.c.activity_date <= last)
            .group_by(outreach_activities.c.type, outreach_activities.c.activity_date)
        ).fetchall()
    return {(r.type, r.activity_date): int(r.total or 0) for r in rows}


def reconcile_outreach(
    user_id: str,
    challenge_day: Optional[int] = None,
    lookback_days: Optional[int] = None,
    *,
    config: Optional[ChallengeConfig] = None,
) -> ReconcileResult:
    """
    Force-complete count-based tasks whose outreach threshold is met.

    The window covers ``lookback_days`` challenge days ending at
    ``challenge_day`` (default: the effective current day). Each day is
    materialized first. A failing toggle is logged, recorded in ``errors``
    and the remaining tasks are still processed.
    """
    config = config or require_challenge_config()
    target = challenge_day if challenge_day is not None else effective_current_day(config)
    day = validate_day(config, target)
    lookback = max(1, lookback_days if lookback_days is not None else settings.OUTREACH_LOOKBACK_DAYS)
    days = list(range(max(1, day - lookback + 1), day + 1))
    dates = {d: date_for_day(config, d) for d in days}

    result = ReconcileResult(user_id=user_id, days=days)
    counts = _aggregate_counts(user_id, dates[days[0]], dates[days[-1]])
    result.counts = {f"{t}@{d.isoformat()}": n for (t, d), n in sorted(counts.items())}

    count_based = [d for d in load_active_definitions() if d.outreach_type]
    for d in days:
        ensure_daily_tasks_exist(user_id, d, config=config)
        if not count_based:
            continue
        instances = instances_by_definition(user_id, d)
        for definition in count_based:
            if not applies_to_day(definition, d):
                continue
            required = definition.count_required or 1
            if counts.get((definition.outreach_type, dates[d]), 0) < required:
                continue
            instance = instances.get(definition.id)
            if instance is None or instance.completed:
                continue
            try:
                toggled = toggle_task(user_id, definition.id, d, True, notes=AUTO_COMPLETE_NOTE)
            except Exception as exc:
                logger.warning(
                    f"outreach.reconcile.toggle_failed definition={definition.id} error={exc}",
                    extra={"user_id": user_id, "challenge_day": d},
                )
                result.errors.append(f"day {d} {definition.id}: {exc}")
                continue
            result.completed.append(toggled.task.id)
            if toggled.points_awarded:
                result.points_awarded += settings.POINTS_PER_TASK

    if result.completed:
        logger.info(
            f"outreach.reconcile completed={len(result.completed)} days={days[0]}-{days[-1]}",
            extra={"user_id": user_id, "challenge_day": day},
        )
    return result


def record_outreach_activity(
    user_id: str,
    activity_type: str,
    count: int = 1,
    *,
    activity_date: Optional[date] = None,
    challenge_day: Optional[int] = None,
    notes: Optional[str] = None,
) -> dict:
    """Append an outreach activity record (dated by challenge day when given)."""
    if count < 1:
        raise ValidationError("count must be at least 1")
    if not activity_type or not activity_type.strip():
        raise ValidationError("type is required")
    if activity_date is None:
        if challenge_day is not None:
            config = require_challenge_config()
            activity_date = date_for_day(config, validate_day(config, challenge_day))
        else:
            activity_date = utc_today()

    with get_db_session() as session:
        result = session.execute(
            insert(outreach_activities).values(
                user_id=user_id,
                type=activity_type.strip(),
                count=count,
                activity_date=activity_date,
                notes=notes,
            )
        )
        activity_id = result.inserted_primary_key[0]

    return {
        "id": activity_id,
        "user_id": user_id,
        "type": activity_type.strip(),
        "count": count,
        "activity_date": activity_date.isoformat(),
        "notes": notes,
    }


def _append_contact(existing: Optional[str], contact_name: str) -> str:
    notes = existing or AUTO_COMPLETE_NOTE
    if contact_name in notes:
        return notes
    return f"{notes}\n• {contact_name}"


def add_contact_to_task_notes(
    user_id: str,
    outreach_type: str,
    contact_name: str,
    challenge_day: Optional[int] = None,
) -> List[TaskInstance]:
    """Append a contact name to completed tasks of ``outreach_type`` for the day."""
    contact_name = (contact_name or "").strip()
    if not contact_name:
        raise ValidationError("contact_name is required")
    config = require_challenge_config()
    day = validate_day(config, challenge_day if challenge_day is not None else effective_current_day(config))
    definition_ids = [d.id for d in load_active_definitions() if d.outreach_type == outreach_type]
    if not definition_ids:
        return []

    with get_db_session() as session:
        rows = session.execute(
            select(user_daily_tasks)
            .where(user_daily_tasks.c.user_id == user_id)
            .where(user_daily_tasks.c.challenge_day == day)
            .where(user_daily_tasks.c.task_definition_id.in_(definition_ids))
            .where(user_daily_tasks.c.completed.is_(True))
        ).fetchall()
        for row in rows:
            notes = _append_contact(row.notes, contact_name)
            if notes != row.notes:
                session.execute(update(user_daily_tasks).where(user_daily_tasks.c.id == row.id).values(notes=notes))
        refreshed = session.execute(
            select(user_daily_tasks).where(user_daily_tasks.c.id.in_([r.id for r in rows]))
        ).fetchall() if rows else []
        updated = [row_to_instance(r) for r in refreshed]
    return updated
