from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.adherence.errors import ActivityNotFoundError
from app.config.settings import settings
from app.db.document_store import normalize_document
from app.db.models import Activity
from app.db.session import get_db
from app.stages.computations import STAGE_DEFINITIONS
from app.stages.runner import run_stage
from app.stages.status import StageName, stage_status_report

router = APIRouter(tags=["stages"])


class ProcessRequest(BaseModel):
    activity_id: str


@router.post("/stages/{stage}/process")
def process_stage(stage: StageName, request: ProcessRequest):
    """Run one stage for one activity. Idempotent; safe to call repeatedly.

    Returns {"skipped": true} when the same stage is already running for the
    activity, {"ok": true} on success, 500 with the error when the stage failed.
    """
    definition = STAGE_DEFINITIONS[stage]
    try:
        outcome = run_stage(definition.name, request.activity_id, definition.compute)
    except ActivityNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    if outcome.skipped or outcome.ok:
        return outcome.to_response()

    logger.debug(f"Returning 500 for failed stage {stage.value} on activity {request.activity_id}")
    return JSONResponse(status_code=500, content=outcome.to_response())


def _get_activity_or_404(db: Session, activity_id: str) -> Activity:
    activity = db.get(Activity, activity_id)
    if activity is None:
        raise HTTPException(status_code=404, detail=f"Activity {activity_id} not found")
    return activity


@router.get("/activities/{activity_id}/status")
def get_activity_status(activity_id: str, db: Session = Depends(get_db)):
    """Stage statuses, errors and stale-processing flags for one activity."""
    activity = _get_activity_or_404(db, activity_id)
    return stage_status_report(activity, settings.stuck_processing_seconds)


@router.get("/activities/{activity_id}/document")
def get_activity_document(activity_id: str, db: Session = Depends(get_db)):
    """The merged execution report as currently stored."""
    activity = _get_activity_or_404(db, activity_id)
    return {
        "activity_id": activity.id,
        "document_version": activity.document_version,
        "document": normalize_document(activity.document),
    }
