from datetime import date
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field, field_validator

from challenge_core.features.challenge.config import day_for_date, require_challenge_config, validate_day
from challenge_core.features.outreach.reconciliation import (
    add_contact_to_task_notes,
    reconcile_outreach,
    record_outreach_activity,
)
from challenge_core.features.progress.aggregator import update_progress

router = APIRouter(prefix="/v1/challenge/outreach", tags=["challenge-outreach"])


class ReconcileRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    challenge_day: Optional[int] = None
    lookback_days: Optional[int] = Field(None, ge=1)


class LogActivityRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    count: int = Field(1, ge=1)
    challenge_day: Optional[int] = None
    activity_date: Optional[date] = None
    notes: Optional[str] = None
    reconcile: bool = True

    @field_validator("user_id", "type")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


class ContactNoteRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    outreach_type: str = Field(..., min_length=1)
    contact_name: str = Field(..., min_length=1)
    challenge_day: Optional[int] = None


@router.post("/reconcile")
def reconcile(req: ReconcileRequest):
    result = reconcile_outreach(req.user_id, req.challenge_day, req.lookback_days)
    if result.completed:
        update_progress(req.user_id)
    return result.to_dict()


@router.post("/log")
def log_activity(req: LogActivityRequest):
    """Record outreach activity and, by default, reconcile the day it is dated to."""
    target_day = req.challenge_day
    if req.reconcile and target_day is None and req.activity_date is not None:
        # Rejected before the insert when the date falls outside the challenge
        config = require_challenge_config()
        target_day = validate_day(config, day_for_date(config, req.activity_date))

    activity = record_outreach_activity(
        req.user_id,
        req.type,
        req.count,
        activity_date=req.activity_date,
        challenge_day=req.challenge_day,
        notes=req.notes,
    )
    response = {"activity": activity, "reconcile": None}
    if req.reconcile:
        result = reconcile_outreach(req.user_id, target_day)
        if result.completed:
            update_progress(req.user_id)
        response["reconcile"] = result.to_dict()
    return response


@router.post("/contact-note")
def contact_note(req: ContactNoteRequest):
    tasks = add_contact_to_task_notes(req.user_id, req.outreach_type, req.contact_name, req.challenge_day)
    return {"tasks": [t.to_dict() for t in tasks]}
