"""
Operator endpoints for the challenge: audit/backfill, progress refresh and
manual task completion. All require X-Admin-Key.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from challenge_core.core.admin_auth import AdminActor, require_admin
from challenge_core.features.audit.service import run_audit
from challenge_core.features.progress.aggregator import update_progress
from challenge_core.features.tasks.toggle import admin_complete_task

router = APIRouter(prefix="/v1/admin/challenge", tags=["admin-challenge"])


class AuditRequest(BaseModel):
    dry_run: bool = True
    enroll_missing: bool = False


class AuditActionRequest(BaseModel):
    enroll_missing: bool = False


class ProgressUpdateRequest(BaseModel):
    user_id: Optional[str] = None


class AdminCompleteRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    task_definition_id: str = Field(..., min_length=1)
    challenge_day: int
    notes: Optional[str] = None


@router.post("/audit")
def audit(req: AuditRequest, actor: AdminActor = Depends(require_admin)):
    return run_audit(actor, dry_run=req.dry_run, enroll_missing=req.enroll_missing).to_dict()


@router.post("/audit/dry-run")
def audit_dry_run(req: AuditActionRequest = AuditActionRequest(), actor: AdminActor = Depends(require_admin)):
    """Dry Run (Analysis Only)."""
    return run_audit(actor, dry_run=True, enroll_missing=req.enroll_missing).to_dict()


@router.post("/audit/auto-fix")
def audit_auto_fix(req: AuditActionRequest = AuditActionRequest(), actor: AdminActor = Depends(require_admin)):
    """Auto-Fix (Backfill + Update)."""
    return run_audit(actor, dry_run=False, enroll_missing=req.enroll_missing).to_dict()


@router.post("/progress/update")
def progress_update(req: ProgressUpdateRequest, actor: AdminActor = Depends(require_admin)):
    snapshots = update_progress(req.user_id)
    return {
        "updated": len(snapshots),
        "progress": {uid: s.to_dict() for uid, s in snapshots.items()},
    }


@router.post("/tasks/complete")
def complete_task(req: AdminCompleteRequest, actor: AdminActor = Depends(require_admin)):
    result = admin_complete_task(req.user_id, req.task_definition_id, req.challenge_day, req.notes)
    return result.to_dict()
