from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict

AuditStatus = Literal["clean", "completed_with_errors"]


class ChallengeConfig(BaseModel):
    """Active challenge settings. Loaded fresh per operation, never cached."""

    model_config = ConfigDict(frozen=True)

    id: int
    current_day: int
    total_days: int
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_active: bool = True


class TaskDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: Optional[str] = None
    sort_order: int = 0
    is_active: bool = True
    count_required: Optional[int] = None
    outreach_type: Optional[str] = None
    resource_id: Optional[str] = None
    external_link: Optional[str] = None
    week_numbers: Optional[List[int]] = None


@dataclass
class TaskInstance:
    """Per-user, per-day completion state for one definition."""

    id: int
    user_id: str
    task_definition_id: str
    challenge_day: int
    completed: bool = False
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "task_definition_id": self.task_definition_id,
            "challenge_day": self.challenge_day,
            "completed": self.completed,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "notes": self.notes,
        }


@dataclass
class LedgerEntry:
    user_id: str
    amount: int
    source_tag: str
    description: Optional[str] = None
    challenge_day: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class ProgressSnapshot:
    total_days_completed: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    met_days: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_days_completed": self.total_days_completed,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "met_days": list(self.met_days),
        }


@dataclass
class EnsureResult:
    user_id: str
    challenge_day: int
    created: List[str] = field(default_factory=list)
    existing: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "challenge_day": self.challenge_day,
            "created": list(self.created),
            "existing": list(self.existing),
            "failed": list(self.failed),
        }


@dataclass
class ToggleResult:
    points_awarded: bool
    task: TaskInstance

    def to_dict(self) -> dict:
        return {"pointsAwarded": self.points_awarded, "task": self.task.to_dict()}


@dataclass
class ReconcileResult:
    user_id: str
    days: List[int] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)  # "<type>@<yyyy-mm-dd>" -> count
    completed: List[int] = field(default_factory=list)  # instance ids forced complete
    points_awarded: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "days": list(self.days),
            "counts": dict(self.counts),
            "completed": list(self.completed),
            "points_awarded": self.points_awarded,
            "errors": list(self.errors),
        }


@dataclass
class AuditReport:
    """Cohort-wide audit outcome. Serialized with camelCase keys."""

    dry_run: bool
    current_day: int = 0
    active_participants: int = 0
    missing_daily_tasks: int = 0
    participants_with_zero_points: int = 0
    participants_without_any_tasks: int = 0
    participants_without_any_tasks_list: List[str] = field(default_factory=list)
    participants_missing_day1: int = 0
    participants_missing_day1_list: List[str] = field(default_factory=list)
    tasks_backfilled: int = 0
    tasks_created: int = 0
    tasks_completed: int = 0
    bonuses_awarded: int = 0
    eligible_not_enrolled: int = 0
    enrolled_by_audit: int = 0
    errors: List[str] = field(default_factory=list)
    success: bool = True

    @property
    def status(self) -> AuditStatus:
        return "completed_with_errors" if self.errors else "clean"

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status,
            "dryRun": self.dry_run,
            "currentDay": self.current_day,
            "activeParticipants": self.active_participants,
            "missingDailyTasks": self.missing_daily_tasks,
            "participantsWithZeroPoints": self.participants_with_zero_points,
            "participantsWithoutAnyTasks": self.participants_without_any_tasks,
            "participantsWithoutAnyTasksList": list(self.participants_without_any_tasks_list),
            "participantsMissingDay1": self.participants_missing_day1,
            "participantsMissingDay1List": list(self.participants_missing_day1_list),
            "tasksBackfilled": self.tasks_backfilled,
            "tasksCreated": self.tasks_created,
            "tasksCompleted": self.tasks_completed,
            "bonusesAwarded": self.bonuses_awarded,
            "eligibleNotEnrolled": self.eligible_not_enrolled,
            "enrolledByAudit": self.enrolled_by_audit,
            "errors": list(self.errors),
        }
