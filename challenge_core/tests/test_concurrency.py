"""
Concurrent callers against a file-backed store: rows are created once,
points are granted once, and the threaded audit converges.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select

from challenge_core.core.admin_auth import AdminActor
from challenge_core.core.config import settings
from challenge_core.core.database import get_db_session, points_ledger, supports_concurrent_sessions, user_daily_tasks
from challenge_core.features.audit import service as audit_service
from challenge_core.features.audit.service import run_audit
from challenge_core.features.points.ledger import get_total_points
from challenge_core.features.tasks.guarantor import ensure_daily_tasks_exist
from challenge_core.features.tasks.toggle import toggle_task

OPERATOR = AdminActor(actor_type="operator_key", actor_id="key:test", actor_display="Operator Key")
DEFINITIONS = ("read", "workout", "journal", "water", "sleep", "cold_calls")


def _run_together(fn, callers):
    barrier = threading.Barrier(callers)

    def call(_):
        barrier.wait()
        return fn()

    with ThreadPoolExecutor(max_workers=callers) as pool:
        return list(pool.map(call, range(callers)))


def _count(table):
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(table)).scalar()


@pytest.fixture
def catalog(file_database, make_challenge, make_definition):
    make_challenge(current_day=3, total_days=10)
    for order, name in enumerate(DEFINITIONS[:-1]):
        make_definition(name, sort_order=order)
    make_definition("cold_calls", outreach_type="cold", count_required=1, sort_order=len(DEFINITIONS))


def test_file_database_allows_concurrent_sessions(catalog):
    assert supports_concurrent_sessions() is True


def test_concurrent_guarantor_calls_create_each_row_once(catalog):
    results = _run_together(lambda: ensure_daily_tasks_exist("u1", 3), 8)

    assert sum(len(r.created) for r in results) == len(DEFINITIONS)
    assert all(r.failed == [] for r in results)
    assert all(sorted(r.created + r.existing) == sorted(DEFINITIONS) for r in results)
    assert _count(user_daily_tasks) == len(DEFINITIONS)


def test_concurrent_toggles_award_points_once(catalog):
    ensure_daily_tasks_exist("u1", 3)

    results = _run_together(lambda: toggle_task("u1", "read", 3, True), 6)

    assert sum(1 for r in results if r.points_awarded) == 1
    assert all(r.task.completed for r in results)
    assert _count(points_ledger) == 1
    assert get_total_points("u1") == settings.POINTS_PER_TASK


def test_audit_parallel_workers(catalog, enroll, log_outreach, monkeypatch):
    monkeypatch.setattr(settings, "AUDIT_MAX_WORKERS", 4)
    participants = [f"u{i:02d}" for i in range(12)]
    for uid in participants:
        enroll(uid)
        log_outreach(uid, "cold", count=1, challenge_day=2)

    pool_sizes = []
    real_executor = audit_service.ThreadPoolExecutor

    def tracking_executor(*args, **kwargs):
        pool_sizes.append(kwargs.get("max_workers"))
        return real_executor(*args, **kwargs)

    monkeypatch.setattr(audit_service, "ThreadPoolExecutor", tracking_executor)

    first = run_audit(OPERATOR, dry_run=False).to_dict()

    assert pool_sizes == [4]
    assert first["errors"] == []
    assert first["status"] == "clean"
    assert first["activeParticipants"] == len(participants)
    assert first["tasksBackfilled"] == len(participants) * len(DEFINITIONS) * 2
    assert first["tasksCreated"] == len(participants) * len(DEFINITIONS)
    assert first["tasksCompleted"] == len(participants)
    assert _count(user_daily_tasks) == len(participants) * len(DEFINITIONS) * 3
    assert _count(points_ledger) == len(participants)
    assert all(get_total_points(uid) == settings.POINTS_PER_TASK for uid in participants)

    second = run_audit(OPERATOR, dry_run=False).to_dict()

    assert second["errors"] == []
    assert second["tasksBackfilled"] == 0
    assert second["tasksCreated"] == 0
    assert second["tasksCompleted"] == 0
    assert _count(user_daily_tasks) == len(participants) * len(DEFINITIONS) * 3
    assert _count(points_ledger) == len(participants)
