"""
Points ledger: append-only, at most one entry per (user_id, source_tag).

Source tags:
- task:<instance_id>          task completion
- bonus:week:<n>              all seven days of week n met
- bonus:milestone:<level>     lifetime total reached <level>

Entries are never updated or deleted. Awards go through
``append_entry`` which relies on the unique constraint instead of a
pre-check, so concurrent awards for the same tag collapse to one row.
"""
from __future__ import annotations

from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from challenge_core.core.database import get_db_session, insert_ignore_conflicts, points_ledger
from challenge_core.models.challenge import LedgerEntry


def task_source_tag(instance_id: int) -> str:
    return f"task:{instance_id}"


def weekly_source_tag(week: int) -> str:
    return f"bonus:week:{week}"


def milestone_source_tag(level: int) -> str:
    return f"bonus:milestone:{level}"


def append_entry(session: Session, entry: LedgerEntry) -> bool:
    """
    Insert ``entry`` unless its source tag was already awarded to the user.

    Runs inside the caller's session/transaction. Returns True when a row
    was written, False when the tag already existed.
    """
    stmt = insert_ignore_conflicts(session, points_ledger, ("user_id", "source_tag")).values(
        user_id=entry.user_id,
        amount=entry.amount,
        source_tag=entry.source_tag,
        description=entry.description,
        challenge_day=entry.challenge_day,
    )
    result = session.execute(stmt)
    return result.rowcount == 1


def get_total_points(user_id: str, session: Optional[Session] = None) -> int:
    stmt = select(func.coalesce(func.sum(points_ledger.c.amount), 0)).where(points_ledger.c.user_id == user_id)
    if session is not None:
        return int(session.execute(stmt).scalar() or 0)
    with get_db_session() as s:
        return int(s.execute(stmt).scalar() or 0)


def list_entries(user_id: str, limit: int = 100) -> List[LedgerEntry]:
    with get_db_session() as session:
        rows = session.execute(
            select(points_ledger)
            .where(points_ledger.c.user_id == user_id)
            .order_by(points_ledger.c.created_at.desc(), points_ledger.c.id.desc())
            .limit(limit)
        ).fetchall()
    return [
        LedgerEntry(
            id=r.id,
            user_id=r.user_id,
            amount=int(r.amount),
            source_tag=r.source_tag,
            description=r.description,
            challenge_day=r.challenge_day,
            created_at=r.created_at,
        )
        for r in rows
    ]
