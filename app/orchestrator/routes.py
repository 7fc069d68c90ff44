from __future__ import annotations

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from app.adherence.errors import ActivityNotFoundError
from app.orchestrator.client import LinkerUnavailableError
from app.orchestrator.service import ingest

router = APIRouter(tags=["orchestrator"])


class IngestRequest(BaseModel):
    activity_id: str
    plan_link: str | None = None


@router.post("/ingest")
async def ingest_activity(request: IngestRequest):
    """Entry point after webhook ingestion. Returns once linkage is committed and stages are fired."""
    try:
        result = await ingest(request.activity_id, request.plan_link)
    except ActivityNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except LinkerUnavailableError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    return result.to_dict()
