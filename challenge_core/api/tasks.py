"""
Daily task endpoints: materialize, list, and toggle a user's tasks.

Mutations return the re-read task state so clients render what was stored.
"""
from typing import Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field, field_validator

from challenge_core.features.challenge.config import effective_current_day, require_challenge_config, validate_day
from challenge_core.features.tasks.guarantor import ensure_daily_tasks_exist, list_tasks_for_day
from challenge_core.features.tasks.toggle import toggle_task

router = APIRouter(prefix="/v1/challenge/tasks", tags=["challenge-tasks"])


class EnsureRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    challenge_day: Optional[int] = None

    @field_validator("user_id")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


class ToggleRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    task_definition_id: str = Field(..., min_length=1)
    challenge_day: int
    completed: bool

    @field_validator("user_id", "task_definition_id")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


def _resolve_day(challenge_day: Optional[int]) -> int:
    config = require_challenge_config()
    if challenge_day is None:
        return effective_current_day(config)
    return validate_day(config, challenge_day)


@router.post("/ensure")
def ensure_tasks(req: EnsureRequest):
    """Create any missing task instances for the day (idempotent)."""
    day = _resolve_day(req.challenge_day)
    result = ensure_daily_tasks_exist(req.user_id, day)
    return {
        **result.to_dict(),
        "tasks": [t.to_dict() for t in list_tasks_for_day(req.user_id, day)],
    }


@router.get("")
def list_tasks(
    user_id: str = Query(..., min_length=1),
    challenge_day: Optional[int] = Query(None),
):
    day = _resolve_day(challenge_day)
    return {
        "user_id": user_id,
        "challenge_day": day,
        "tasks": [t.to_dict() for t in list_tasks_for_day(user_id, day)],
    }


@router.post("/toggle")
def toggle(req: ToggleRequest):
    """Set completion for an existing instance. Returns pointsAwarded and the stored task."""
    result = toggle_task(req.user_id, req.task_definition_id, req.challenge_day, req.completed)
    return result.to_dict()
