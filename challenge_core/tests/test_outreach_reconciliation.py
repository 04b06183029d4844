"""
Tests for outreach-driven task completion.
"""

import pytest
from sqlalchemy import delete

from challenge_core.core.database import get_db_session, outreach_activities
from challenge_core.core.errors import ValidationError
from challenge_core.features.outreach import reconciliation
from challenge_core.features.outreach.reconciliation import (
    AUTO_COMPLETE_NOTE,
    add_contact_to_task_notes,
    reconcile_outreach,
    record_outreach_activity,
)
from challenge_core.features.points.ledger import get_total_points
from challenge_core.features.tasks.guarantor import instances_by_definition
from challenge_core.features.tasks.toggle import toggle_task


@pytest.fixture
def outreach_catalog(make_challenge, make_definition):
    make_challenge(current_day=2, total_days=10)
    make_definition("cold_calls", outreach_type="cold", count_required=3, sort_order=1)
    make_definition("warm_intro", outreach_type="warm", count_required=None, sort_order=2)
    make_definition("journal", sort_order=3)


def test_threshold_met_completes_task(outreach_catalog, log_outreach):
    log_outreach("u1", "cold", count=2, challenge_day=2)
    log_outreach("u1", "cold", count=1, challenge_day=2)

    result = reconcile_outreach("u1")

    tasks = instances_by_definition("u1", 2)
    assert tasks["cold_calls"].completed is True
    assert tasks["cold_calls"].notes == AUTO_COMPLETE_NOTE
    assert tasks["warm_intro"].completed is False
    assert tasks["journal"].completed is False
    assert result.completed == [tasks["cold_calls"].id]
    assert result.points_awarded == 10
    assert result.days == [2]


def test_below_threshold_leaves_task_open(outreach_catalog, log_outreach):
    log_outreach("u1", "cold", count=2, challenge_day=2)

    result = reconcile_outreach("u1")

    assert result.completed == []
    assert instances_by_definition("u1", 2)["cold_calls"].completed is False


def test_null_count_required_means_one(outreach_catalog, log_outreach):
    log_outreach("u1", "warm", count=1, challenge_day=2)

    reconcile_outreach("u1")

    assert instances_by_definition("u1", 2)["warm_intro"].completed is True


def test_rerun_without_new_data_is_noop(outreach_catalog, log_outreach):
    log_outreach("u1", "cold", count=3, challenge_day=2)
    reconcile_outreach("u1")

    again = reconcile_outreach("u1")

    assert again.completed == []
    assert again.points_awarded == 0
    assert get_total_points("u1") == 10


def test_completion_is_sticky_when_counts_drop(outreach_catalog, log_outreach):
    log_outreach("u1", "cold", count=3, challenge_day=2)
    reconcile_outreach("u1")
    with get_db_session() as session:
        session.execute(delete(outreach_activities))

    reconcile_outreach("u1")

    assert instances_by_definition("u1", 2)["cold_calls"].completed is True


def test_lookback_window_covers_previous_day(outreach_catalog, log_outreach):
    log_outreach("u1", "warm", count=1, challenge_day=1)

    narrow = reconcile_outreach("u1", lookback_days=1)
    assert narrow.completed == []

    wide = reconcile_outreach("u1", lookback_days=2)
    assert wide.days == [1, 2]
    assert instances_by_definition("u1", 1)["warm_intro"].completed is True
    assert instances_by_definition("u1", 2)["warm_intro"].completed is False


def test_activity_on_other_day_does_not_count(outreach_catalog, log_outreach):
    log_outreach("u1", "cold", count=5, challenge_day=1)

    reconcile_outreach("u1", challenge_day=2)

    assert instances_by_definition("u1", 2)["cold_calls"].completed is False


def test_failing_toggle_is_recorded_and_run_continues(outreach_catalog, log_outreach, monkeypatch):
    log_outreach("u1", "cold", count=3, challenge_day=2)
    log_outreach("u1", "warm", count=1, challenge_day=2)

    def flaky_toggle(user_id, task_definition_id, challenge_day, desired, **kwargs):
        if task_definition_id == "cold_calls":
            raise RuntimeError("write failed")
        return toggle_task(user_id, task_definition_id, challenge_day, desired, **kwargs)

    monkeypatch.setattr(reconciliation, "toggle_task", flaky_toggle)

    result = reconcile_outreach("u1")

    assert len(result.errors) == 1
    assert "cold_calls" in result.errors[0]
    assert instances_by_definition("u1", 2)["warm_intro"].completed is True


def test_record_activity_then_reconcile(outreach_catalog):
    activity = record_outreach_activity("u1", "warm", 1, challenge_day=2, notes="coffee with Sam")

    assert activity["count"] == 1
    result = reconcile_outreach("u1", challenge_day=2)
    assert len(result.completed) == 1


def test_record_activity_rejects_zero_count(outreach_catalog):
    with pytest.raises(ValidationError):
        record_outreach_activity("u1", "cold", 0)


def test_contact_names_are_appended_once(outreach_catalog, log_outreach):
    log_outreach("u1", "cold", count=3, challenge_day=2)
    reconcile_outreach("u1")

    add_contact_to_task_notes("u1", "cold", "Dana Smith", challenge_day=2)
    updated = add_contact_to_task_notes("u1", "cold", "Dana Smith", challenge_day=2)

    assert len(updated) == 1
    assert updated[0].notes == f"{AUTO_COMPLETE_NOTE}\n• Dana Smith"


def test_contact_note_skips_open_tasks(outreach_catalog):
    reconcile_outreach("u1")

    updated = add_contact_to_task_notes("u1", "cold", "Dana Smith", challenge_day=2)

    assert updated == []
    assert instances_by_definition("u1", 2)["cold_calls"].notes is None
