from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from challenge_core.features.points.ledger import get_total_points, list_entries
from challenge_core.features.progress.aggregator import enroll_participant, get_progress

router = APIRouter(prefix="/v1/challenge", tags=["challenge-progress"])


class EnrollRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


@router.post("/enroll")
def enroll(req: EnrollRequest):
    """Join the active challenge (idempotent)."""
    created = enroll_participant(req.user_id.strip())
    return {"enrolled": created, "progress": get_progress(req.user_id.strip())}


@router.get("/progress/{user_id}")
def read_progress(user_id: str):
    """Cached progress plus the live ledger total."""
    progress = get_progress(user_id)
    progress["total_points"] = get_total_points(user_id)
    return progress


@router.get("/points/{user_id}")
def read_points(user_id: str, limit: int = Query(100, ge=1, le=500)):
    entries = list_entries(user_id, limit=limit)
    return {
        "user_id": user_id,
        "total_points": get_total_points(user_id),
        "entries": [
            {
                "amount": e.amount,
                "source_tag": e.source_tag,
                "description": e.description,
                "challenge_day": e.challenge_day,
                "created_at": e.created_at.isoformat() if e.created_at else None,
            }
            for e in entries
        ],
    }
