from __future__ import annotations

import asyncio

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from app.adherence.errors import ActivityNotFoundError, LinkError
from app.db.session import get_session
from app.orchestrator.service import fire_stages
from app.pairing.linker import LinkResult, link_activity, unlink_activity
from app.stages.status import ALL_STAGES

router = APIRouter(tags=["linker"])


class LinkRequest(BaseModel):
    activity_id: str
    planned_workout_id: str | None = None
    # Ingest fires the stages itself once the link is committed
    trigger_stages: bool = True


class UnlinkRequest(BaseModel):
    activity_id: str
    trigger_stages: bool = True


def _link(request: LinkRequest) -> LinkResult:
    with get_session() as session:
        return link_activity(session, request.activity_id, request.planned_workout_id)


def _unlink(request: UnlinkRequest) -> LinkResult:
    with get_session() as session:
        return unlink_activity(session, request.activity_id)


def _respond(result: LinkResult, trigger_stages: bool) -> dict:
    """Recompute every stage after a committed change of plan."""
    body = result.to_dict()
    body["fired"] = []
    if result.changed and trigger_stages:
        fire_stages(result.activity_id)
        body["fired"] = [stage.value for stage in ALL_STAGES]
    return body


@router.post("/link")
async def link(request: LinkRequest):
    """Link an activity to a plan. The link is committed before the response is sent."""
    try:
        result = await asyncio.to_thread(_link, request)
    except ActivityNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except LinkError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _respond(result, request.trigger_stages)


@router.post("/unlink")
async def unlink(request: UnlinkRequest):
    """Detach an activity from its plan and recompute what remains."""
    try:
        result = await asyncio.to_thread(_unlink, request)
    except ActivityNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return _respond(result, request.trigger_stages)
