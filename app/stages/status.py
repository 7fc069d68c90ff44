"""Per-stage status tracking on the activity row.

Each stage moves pending -> processing -> complete | failed independently.
Only an explicit re-trigger (ingest or relink) puts a stage back to pending.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy.orm import Session

from app.adherence.errors import ActivityNotFoundError
from app.db.models import Activity


class StageName(enum.StrEnum):
    SUMMARY = "summary"
    ANALYSIS = "analysis"
    SCORE = "score"
    METRICS = "metrics"

    @property
    def lock_name(self) -> str:
        """Name used in the advisory lock key."""
        return "score-engine" if self is StageName.SCORE else self.value


class StageStatus(enum.StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


ALL_STAGES: tuple[StageName, ...] = tuple(StageName)


def _load_activity(session: Session, activity_id: str) -> Activity:
    activity = session.get(Activity, activity_id)
    if activity is None:
        raise ActivityNotFoundError(activity_id)
    return activity


def apply_stage_status(activity: Activity, stage: StageName, status: StageStatus, error: str | None = None) -> None:
    """Set status, error and timestamp columns for one stage on a loaded row."""
    setattr(activity, f"{stage.value}_status", status.value)
    setattr(activity, f"{stage.value}_error", error if status == StageStatus.FAILED else None)
    setattr(activity, f"{stage.value}_updated_at", datetime.now(timezone.utc))


def mark_stage(
    session: Session,
    activity_id: str,
    stage: StageName,
    status: StageStatus,
    error: str | None = None,
) -> None:
    """Record a stage status change. Commit is left to the caller's session scope."""
    activity = _load_activity(session, activity_id)
    apply_stage_status(activity, stage, status, error)
    session.flush()
    if status == StageStatus.FAILED:
        logger.warning(f"Stage {stage.value} failed for activity {activity_id}: {error}")
    else:
        logger.debug(f"Stage {stage.value} -> {status.value} for activity {activity_id}")


def reset_stages(activity: Activity, stages: tuple[StageName, ...] = ALL_STAGES) -> None:
    """Put stages back to pending, forcing recomputation."""
    for stage in stages:
        apply_stage_status(activity, stage, StageStatus.PENDING)
    logger.info(f"Reset stages {[stage.value for stage in stages]} to pending for activity {activity.id}")


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def stage_status_report(activity: Activity, stuck_after_seconds: int, now: datetime | None = None) -> dict:
    """Status surface for operators and the presentation layer.

    A stage is flagged stale when it has been processing longer than
    stuck_after_seconds; nothing is retried automatically.
    """
    now = now or datetime.now(timezone.utc)
    stages: dict[str, dict] = {}
    for stage in ALL_STAGES:
        status = getattr(activity, f"{stage.value}_status")
        updated_at = _as_utc(getattr(activity, f"{stage.value}_updated_at"))
        stale = (
            status == StageStatus.PROCESSING.value
            and updated_at is not None
            and (now - updated_at).total_seconds() > stuck_after_seconds
        )
        stages[stage.value] = {
            "status": status,
            "error": getattr(activity, f"{stage.value}_error"),
            "updated_at": updated_at.isoformat() if updated_at else None,
            "stale": stale,
        }
    return {
        "activity_id": activity.id,
        "planned_workout_id": activity.planned_workout_id,
        "document_version": activity.document_version,
        "stages": stages,
    }
