"""Stage runner: lock, track status, compute, merge.

One invocation of a stage for one activity:

1. take the advisory lock "{stage}:{activity_id}" in a guard transaction;
   if another instance holds it, return skipped without touching anything
2. mark the stage processing (committed, so operators can see it)
3. load the activity snapshot and compute the partial document
4. merge the partial under the row lock and mark complete in one transaction
5. any error raised while computing or merging marks the stage failed with
   the message

The guard transaction stays open for the whole run and is closed before the
HTTP response is returned, which releases the advisory lock.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.adherence.errors import ActivityNotFoundError, ExecutionReportError, TransientLockContention
from app.adherence.schemas import ActivityDocument, PlanStep, Sample, parse_plan_steps, parse_samples
from app.adherence.slicer import prepare_samples
from app.db.document_store import DocumentStore
from app.db.locks import LockManager, stage_lock_key
from app.db.models import Activity, PlannedWorkout
from app.db.session import get_session
from app.stages.status import StageName, StageStatus, mark_stage

# Expected ways for a stage computation to fail; anything else is logged as a bug
STAGE_FAILURES: tuple[type[BaseException], ...] = (
    ExecutionReportError,
    ValueError,
    TypeError,
    ArithmeticError,
    SQLAlchemyError,
)


@dataclass
class StageContext:
    """Inputs handed to a stage computation."""

    activity_id: str
    samples: list[Sample]
    steps: list[PlanStep] | None
    read_current: Callable[[], ActivityDocument]
    planned_workout_id: str | None = None


StageCompute = Callable[[StageContext], dict]


@dataclass
class StageOutcome:
    stage: StageName
    activity_id: str
    skipped: bool = False
    ok: bool = False
    error: str | None = None
    keys: list[str] = field(default_factory=list)

    def to_response(self) -> dict:
        if self.skipped:
            return {"skipped": True}
        if self.ok:
            return {"ok": True}
        return {"ok": False, "error": self.error}


def load_context(session: Session, activity_id: str) -> StageContext:
    """Load and parse the activity's samples and linked plan steps."""
    activity = session.get(Activity, activity_id)
    if activity is None:
        raise ActivityNotFoundError(activity_id)

    samples = prepare_samples(parse_samples(activity.sample_stream or []))

    steps = None
    if activity.planned_workout_id:
        planned = session.get(PlannedWorkout, activity.planned_workout_id)
        if planned is not None:
            steps = parse_plan_steps(planned.steps or [])
        else:
            logger.warning(f"Activity {activity_id} links missing plan {activity.planned_workout_id}")

    return StageContext(
        activity_id=activity_id,
        samples=samples,
        steps=steps,
        read_current=lambda: read_current_document(activity_id),
        planned_workout_id=activity.planned_workout_id,
    )


def read_current_document(activity_id: str) -> ActivityDocument:
    """Fresh read of the stored document, outside any cached snapshot."""
    with get_session() as session:
        return ActivityDocument.model_validate(DocumentStore(session).read(activity_id))


def _fail(stage: StageName, activity_id: str, exc: Exception) -> StageOutcome:
    error = f"{type(exc).__name__}: {exc}"
    with get_session() as session:
        mark_stage(session, activity_id, stage, StageStatus.FAILED, error=error)
    return StageOutcome(stage=stage, activity_id=activity_id, ok=False, error=error)


def _run_locked(stage: StageName, activity_id: str, compute: StageCompute) -> StageOutcome:
    with get_session() as session:
        mark_stage(session, activity_id, stage, StageStatus.PROCESSING)

    try:
        with get_session() as session:
            context = load_context(session, activity_id)

        partial = compute(context)

        with get_session() as session:
            DocumentStore(session).merge(activity_id, partial, stage.value)
            mark_stage(session, activity_id, stage, StageStatus.COMPLETE)
    except STAGE_FAILURES as e:
        logger.opt(exception=e).error(f"Stage {stage.value} failed for activity {activity_id}: {e}")
        return _fail(stage, activity_id, e)
    except Exception as e:
        logger.opt(exception=e).error(f"Unexpected error in stage {stage.value} for activity {activity_id}: {e}")
        return _fail(stage, activity_id, e)

    logger.info(f"Stage {stage.value} complete for activity {activity_id}: keys={sorted(partial)}")
    return StageOutcome(stage=stage, activity_id=activity_id, ok=True, keys=sorted(partial))


def run_stage(stage: StageName, activity_id: str, compute: StageCompute) -> StageOutcome:
    """Run one stage for one activity under its advisory lock.

    Raises:
        ActivityNotFoundError: If the activity does not exist
    """
    lock_key = stage_lock_key(stage.lock_name, activity_id)
    logger.info(f"Stage {stage.value} requested for activity {activity_id}")

    with get_session() as guard:
        try:
            LockManager(guard).acquire(lock_key)
        except TransientLockContention as e:
            logger.info(f"Stage {stage.value} already running for activity {activity_id}, skipping: {e}")
            return StageOutcome(stage=stage, activity_id=activity_id, skipped=True)
        return _run_locked(stage, activity_id, compute)
