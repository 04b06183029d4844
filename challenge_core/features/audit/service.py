"""
Cohort-wide audit and backfill.

Dry run only reads and reports. Apply mode, per participant and in order:
backfill missing instances from the backfill start day through the current
day, reconcile outreach over the same range, apply bonus rules, then refresh
the progress cache. Each participant's pipeline runs under bounded retry;
failures are recorded in ``errors`` and never stop the batch. Every step is
idempotent, so re-running an apply pass converges to zero new rows.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import select

from challenge_core.core.admin_auth import AdminActor, ensure_operator
from challenge_core.core.config import settings
from challenge_core.core.database import (
    get_db_session,
    supports_concurrent_sessions,
    user_challenge_progress,
    user_daily_tasks,
    users,
)
from challenge_core.core.logging import log_event
from challenge_core.core.retry import call_with_retry
from challenge_core.features.challenge.config import (
    applies_to_day,
    day_for_date,
    effective_current_day,
    load_active_definitions,
    load_challenge_config,
    sync_current_day,
)
from challenge_core.features.outreach.reconciliation import reconcile_outreach
from challenge_core.features.points.bonuses import apply_bonus_rules
from challenge_core.features.points.ledger import get_total_points
from challenge_core.features.progress.aggregator import enroll_participant, snapshot_for_user, update_progress
from challenge_core.features.tasks.guarantor import ensure_daily_tasks_exist
from challenge_core.models.challenge import AuditReport, ChallengeConfig, TaskDefinition

logger = logging.getLogger("challenge")


@dataclass
class Participant:
    user_id: str
    joined_at: Optional[datetime] = None


@dataclass
class ParticipantOutcome:
    """Counters contributed by one participant to the batch report."""

    user_id: str
    has_any_tasks: bool = True
    has_day1: bool = True
    missing_current_day: int = 0
    would_backfill: int = 0
    zero_points: bool = False
    tasks_backfilled: int = 0
    tasks_created: int = 0
    tasks_completed: int = 0
    bonuses_awarded: int = 0
    inspected: bool = False
    errors: List[str] = field(default_factory=list)


def list_participants() -> List[Participant]:
    with get_db_session() as session:
        rows = session.execute(
            select(user_challenge_progress.c.user_id, user_challenge_progress.c.joined_at)
            .where(user_challenge_progress.c.is_active.is_(True))
            .order_by(user_challenge_progress.c.user_id.asc())
        ).fetchall()
    return [Participant(user_id=r.user_id, joined_at=r.joined_at) for r in rows]


def list_eligible_not_enrolled() -> List[str]:
    """Active app users with no enrollment row."""
    enrolled = select(user_challenge_progress.c.user_id)
    with get_db_session() as session:
        rows = session.execute(
            select(users.c.user_id)
            .where(users.c.status == "active")
            .where(users.c.user_id.not_in(enrolled))
            .order_by(users.c.user_id.asc())
        ).fetchall()
    return [r.user_id for r in rows]


def _existing_by_day(user_id: str) -> Dict[int, Set[str]]:
    with get_db_session() as session:
        rows = session.execute(
            select(user_daily_tasks.c.challenge_day, user_daily_tasks.c.task_definition_id)
            .where(user_daily_tasks.c.user_id == user_id)
        ).fetchall()
    existing: Dict[int, Set[str]] = {}
    for r in rows:
        existing.setdefault(int(r.challenge_day), set()).add(r.task_definition_id)
    return existing


def join_day(config: ChallengeConfig, participant: Participant, today: Optional[date] = None) -> int:
    if participant.joined_at is None:
        return 1
    day = day_for_date(config, participant.joined_at.date(), today=today)
    return max(1, min(day, config.total_days))


def backfill_start_day(config: ChallengeConfig, participant: Participant, today: Optional[date] = None) -> int:
    if settings.BACKFILL_FROM_JOIN_DAY:
        return join_day(config, participant, today=today)
    return 1


def _missing_for_day(definitions: List[TaskDefinition], existing: Dict[int, Set[str]], day: int) -> int:
    have = existing.get(day, set())
    return sum(1 for d in definitions if applies_to_day(d, day) and d.id not in have)


def _inspect_participant(
    outcome: ParticipantOutcome,
    definitions: List[TaskDefinition],
    start_day: int,
    current_day: int,
) -> None:
    existing = _existing_by_day(outcome.user_id)
    outcome.has_any_tasks = bool(existing)
    outcome.has_day1 = 1 in existing
    outcome.missing_current_day = _missing_for_day(definitions, existing, current_day)
    outcome.would_backfill = sum(_missing_for_day(definitions, existing, d) for d in range(start_day, current_day))


def _backfill_participant(outcome: ParticipantOutcome, config: ChallengeConfig, start_day: int, current_day: int) -> None:
    for day in range(start_day, current_day + 1):
        result = ensure_daily_tasks_exist(outcome.user_id, day, config=config)
        if day < current_day:
            outcome.tasks_backfilled += len(result.created)
        else:
            outcome.tasks_created += len(result.created)
        if result.failed:
            outcome.errors.append(
                f"{outcome.user_id}: day {day} could not create {', '.join(result.failed)}"
            )


def _reconcile_participant(outcome: ParticipantOutcome, config: ChallengeConfig, start_day: int, current_day: int) -> None:
    result = reconcile_outreach(
        outcome.user_id,
        current_day,
        lookback_days=current_day - start_day + 1,
        config=config,
    )
    outcome.tasks_completed += len(result.completed)
    outcome.errors.extend(f"{outcome.user_id}: {e}" for e in result.errors)


def _apply_bonuses(outcome: ParticipantOutcome, config: ChallengeConfig, current_day: int) -> None:
    snapshot = snapshot_for_user(outcome.user_id, config)
    outcome.bonuses_awarded += apply_bonus_rules(outcome.user_id, snapshot.met_days, current_day, config)


def _zero_points(user_id: str, config: ChallengeConfig, participant: Participant, current_day: int, today: Optional[date]) -> bool:
    if current_day - join_day(config, participant, today=today) < settings.ZERO_POINTS_GRACE_DAYS:
        return False
    return get_total_points(user_id) == 0


def process_participant(
    participant: Participant,
    config: ChallengeConfig,
    definitions: List[TaskDefinition],
    current_day: int,
    dry_run: bool,
    today: Optional[date] = None,
    outcome: Optional[ParticipantOutcome] = None,
) -> ParticipantOutcome:
    """
    Run the audit pipeline for one participant. Steps are serialized.

    Reusing ``outcome`` across retries keeps the write counters of earlier
    attempts, whose rows are already committed. The inspection snapshot is
    taken on the first attempt only; ``errors`` reflects the latest attempt.
    """
    if outcome is None:
        outcome = ParticipantOutcome(user_id=participant.user_id)
    outcome.errors = []
    start_day = backfill_start_day(config, participant, today=today)

    if not outcome.inspected:
        _inspect_participant(outcome, definitions, start_day, current_day)
        outcome.inspected = True
    if not dry_run:
        _backfill_participant(outcome, config, start_day, current_day)
        _reconcile_participant(outcome, config, start_day, current_day)
        _apply_bonuses(outcome, config, current_day)
        update_progress(participant.user_id, config=config)

    outcome.zero_points = _zero_points(participant.user_id, config, participant, current_day, today)
    return outcome


def _run_with_isolation(
    participant: Participant,
    config: ChallengeConfig,
    definitions: List[TaskDefinition],
    current_day: int,
    dry_run: bool,
    today: Optional[date],
) -> Tuple[ParticipantOutcome, Optional[str]]:
    outcome = ParticipantOutcome(user_id=participant.user_id)
    try:
        call_with_retry(
            lambda: process_participant(participant, config, definitions, current_day, dry_run, today, outcome),
            operation=f"audit.participant[{participant.user_id}]",
        )
        return outcome, None
    except Exception as exc:
        logger.error(
            f"audit.participant_failed error={exc}",
            exc_info=True,
            extra={"user_id": participant.user_id, "challenge_day": current_day},
        )
        return outcome, f"{participant.user_id}: {exc}"


def _merge(report: AuditReport, outcome: ParticipantOutcome) -> None:
    if not outcome.has_any_tasks:
        report.participants_without_any_tasks += 1
        report.participants_without_any_tasks_list.append(outcome.user_id)
    if not outcome.has_day1:
        report.participants_missing_day1 += 1
        report.participants_missing_day1_list.append(outcome.user_id)
    report.missing_daily_tasks += outcome.missing_current_day
    if report.dry_run:
        report.tasks_backfilled += outcome.would_backfill
    else:
        report.tasks_backfilled += outcome.tasks_backfilled
        report.tasks_created += outcome.tasks_created
        report.tasks_completed += outcome.tasks_completed
        report.bonuses_awarded += outcome.bonuses_awarded
    if outcome.zero_points:
        report.participants_with_zero_points += 1
    report.errors.extend(outcome.errors)


def _enroll_missing(report: AuditReport, dry_run: bool) -> None:
    try:
        eligible = list_eligible_not_enrolled()
    except Exception as exc:
        report.errors.append(f"Error fetching eligible users: {exc}")
        return
    report.eligible_not_enrolled = len(eligible)
    if dry_run:
        return
    for user_id in eligible:
        try:
            if enroll_participant(user_id):
                report.enrolled_by_audit += 1
        except Exception as exc:
            report.errors.append(f"{user_id}: enrollment failed: {exc}")


def audit_worker_count() -> int:
    """Configured worker count, or 1 when all sessions share one connection."""
    workers = max(1, settings.AUDIT_MAX_WORKERS)
    if workers > 1 and not supports_concurrent_sessions():
        logger.info(f"audit.serialized workers={workers} reason=shared_connection")
        return 1
    return workers


def run_audit(
    actor: Optional[AdminActor],
    dry_run: bool = True,
    enroll_missing: bool = False,
    *,
    today: Optional[date] = None,
) -> AuditReport:
    """
    Audit every active participant; in apply mode, repair what is found.

    Raises AuthorizationError for a non-operator before touching the store.
    A run that cannot start (no active challenge) returns success=False.
    """
    ensure_operator(actor)
    report = AuditReport(dry_run=dry_run)

    config = load_challenge_config()
    if config is None:
        report.success = False
        report.errors.append("No active challenge found")
        return report
    if not dry_run:
        config = sync_current_day(config, today=today)

    current_day = effective_current_day(config, today=today)
    report.current_day = current_day

    if enroll_missing:
        _enroll_missing(report, dry_run)

    participants = list_participants()
    report.active_participants = len(participants)
    definitions = load_active_definitions()

    workers = audit_worker_count()
    args = (config, definitions, current_day, dry_run, today)
    if workers == 1 or len(participants) <= 1:
        results = [_run_with_isolation(p, *args) for p in participants]
    else:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="audit") as pool:
            results = list(pool.map(lambda p: _run_with_isolation(p, *args), participants))

    for outcome, error in results:
        # A participant that failed after inspection still reports its findings and committed writes
        if outcome.inspected:
            _merge(report, outcome)
        if error is not None:
            report.errors.append(error)

    limit = settings.AUDIT_SAMPLE_LIMIT
    report.participants_without_any_tasks_list = report.participants_without_any_tasks_list[:limit]
    report.participants_missing_day1_list = report.participants_missing_day1_list[:limit]

    log_event(
        "info",
        "audit.complete",
        challenge_day=current_day,
        event_type="audit.complete",
        extra={
            "actor": actor.actor_id,
            "dry_run": dry_run,
            "participants": report.active_participants,
            "tasks_backfilled": report.tasks_backfilled,
            "tasks_created": report.tasks_created,
            "errors": len(report.errors),
            "status": report.status,
        },
    )
    return report
