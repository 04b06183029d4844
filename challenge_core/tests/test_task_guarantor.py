"""
Tests for idempotent task materialization.
"""

import logging

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from challenge_core.core.database import get_db_session, user_daily_tasks
from challenge_core.core.errors import ValidationError
from challenge_core.features.tasks import guarantor
from challenge_core.features.tasks.guarantor import ensure_daily_tasks_exist, list_tasks_for_day


def _rows(user_id):
    with get_db_session() as session:
        return session.execute(
            select(
                user_daily_tasks.c.task_definition_id,
                user_daily_tasks.c.challenge_day,
                user_daily_tasks.c.completed,
            )
            .where(user_daily_tasks.c.user_id == user_id)
            .order_by(user_daily_tasks.c.challenge_day, user_daily_tasks.c.task_definition_id)
        ).fetchall()


def test_creates_one_instance_per_active_definition(make_challenge, make_definition):
    make_challenge(current_day=1, total_days=10)
    make_definition("read", sort_order=1)
    make_definition("workout", sort_order=2)
    make_definition("retired", is_active=False)

    result = ensure_daily_tasks_exist("u1", 1)

    assert sorted(result.created) == ["read", "workout"]
    assert result.existing == []
    assert result.failed == []
    tasks = list_tasks_for_day("u1", 1)
    assert {t.task_definition_id for t in tasks} == {"read", "workout"}
    assert all(not t.completed and t.completed_at is None for t in tasks)


def test_second_call_is_a_noop(make_challenge, make_definition):
    make_challenge(current_day=2, total_days=10)
    make_definition("read")
    make_definition("workout")

    ensure_daily_tasks_exist("u1", 2)
    before = _rows("u1")
    again = ensure_daily_tasks_exist("u1", 2)

    assert again.created == []
    assert sorted(again.existing) == ["read", "workout"]
    assert _rows("u1") == before


def test_completed_rows_are_not_reset(make_challenge, make_definition):
    make_challenge(current_day=1, total_days=10)
    make_definition("read")
    ensure_daily_tasks_exist("u1", 1)
    with get_db_session() as session:
        session.execute(update(user_daily_tasks).values(completed=True, notes="done"))

    ensure_daily_tasks_exist("u1", 1)

    task = list_tasks_for_day("u1", 1)[0]
    assert task.completed is True
    assert task.notes == "done"


def test_week_scoped_definitions_only_apply_to_their_weeks(make_challenge, make_definition):
    make_challenge(current_day=8, total_days=21)
    make_definition("daily")
    make_definition("week_one_only", week_numbers=[1])
    make_definition("week_two_only", week_numbers=[2])

    day_one = ensure_daily_tasks_exist("u1", 1)
    day_eight = ensure_daily_tasks_exist("u1", 8)

    assert sorted(day_one.created) == ["daily", "week_one_only"]
    assert sorted(day_eight.created) == ["daily", "week_two_only"]


@pytest.mark.parametrize("day", [0, -1, 11])
def test_invalid_day_is_rejected(make_challenge, make_definition, day):
    make_challenge(current_day=1, total_days=10)
    make_definition("read")

    with pytest.raises(ValidationError):
        ensure_daily_tasks_exist("u1", day)
    assert _rows("u1") == []


def test_no_active_challenge_is_rejected(make_definition):
    make_definition("read")
    with pytest.raises(ValidationError):
        ensure_daily_tasks_exist("u1", 1)


def test_failing_definition_is_skipped(make_challenge, make_definition, monkeypatch):
    make_challenge(current_day=1, total_days=10)
    make_definition("read", sort_order=1)
    make_definition("broken", sort_order=2)
    make_definition("workout", sort_order=3)

    real_insert = guarantor._insert_instance

    def flaky_insert(user_id, task_definition_id, challenge_day):
        if task_definition_id == "broken":
            raise RuntimeError("constraint exploded")
        return real_insert(user_id, task_definition_id, challenge_day)

    monkeypatch.setattr(guarantor, "_insert_instance", flaky_insert)

    result = ensure_daily_tasks_exist("u1", 1)

    assert result.failed == ["broken"]
    assert sorted(result.created) == ["read", "workout"]


def test_constraint_violation_is_reported_as_conflict(make_challenge, make_definition, monkeypatch, caplog):
    make_challenge(current_day=1, total_days=10)
    make_definition("read", sort_order=1)
    make_definition("orphaned", sort_order=2)

    real_insert = guarantor._insert_instance

    def conflicting_insert(user_id, task_definition_id, challenge_day):
        if task_definition_id == "orphaned":
            raise IntegrityError("INSERT INTO user_daily_tasks", {}, Exception("foreign key violation"))
        return real_insert(user_id, task_definition_id, challenge_day)

    monkeypatch.setattr(guarantor, "_insert_instance", conflicting_insert)

    with caplog.at_level(logging.WARNING, logger="challenge"):
        result = ensure_daily_tasks_exist("u1", 1)

    assert result.failed == ["orphaned"]
    assert result.created == ["read"]
    failures = [r for r in caplog.records if r.getMessage().startswith("guarantor.insert_failed")]
    assert [r.error_code for r in failures] == ["conflict"]
