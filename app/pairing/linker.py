"""Linker: binds an activity to its planned workout.

Linking is idempotent. Re-linking to a different plan is the documented
re-attach path: plan-derived results are cleared and every stage goes back to
pending so the whole report is recomputed against the new plan. Unlinking
drops the plan-derived results and returns the plan to planned.

Without an explicit plan, candidates are scored deterministically:
- same user, same sport (normalized), same calendar day, still planned
- duration within ±25% rewarded, outside penalized
- distance within tolerance (10% swim, 15% otherwise) rewarded, outside penalized
- best score must reach ATTACH_THRESHOLD
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.adherence.errors import ActivityNotFoundError, LinkError
from app.adherence.schemas import PlanStep, parse_plan_steps, parse_samples
from app.adherence.slicer import prepare_samples
from app.db.document_store import DocumentStore
from app.db.models import Activity, PlannedWorkout
from app.stages.status import reset_stages

DURATION_TOLERANCE = 0.25
DISTANCE_TOLERANCE = 0.15
SWIM_DISTANCE_TOLERANCE = 0.10
ATTACH_THRESHOLD = 0.5


@dataclass
class LinkResult:
    activity_id: str
    linked: bool
    planned_workout_id: str | None = None
    changed: bool = False
    reason: str = ""
    score: float | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def _normalize_sport(sport: str | None) -> str:
    """Normalize provider sport names (Run, VirtualRide, open_water_swim, ...)."""
    value = (sport or "").lower().strip()
    if "swim" in value:
        return "swim"
    if "ride" in value or "bike" in value or "cycl" in value:
        return "ride"
    if "run" in value or "jog" in value:
        return "run"
    if "walk" in value or "hike" in value:
        return "walk"
    return value or "run"


def _pct_diff(planned: float, actual: float) -> float:
    if planned <= 0 or actual <= 0:
        return float("inf")
    return abs(planned - actual) / planned


def _plan_totals(steps: list[PlanStep]) -> tuple[float | None, float | None]:
    seconds = sum(step.duration_s for step in steps if step.duration_s is not None)
    meters = sum(step.distance_m for step in steps if step.distance_m is not None)
    return (seconds or None, meters or None)


def score_candidate(
    steps: list[PlanStep],
    actual_seconds: float,
    actual_meters: float,
    sport: str,
) -> float:
    """Closeness of a planned workout to what was executed; higher is better."""
    planned_seconds, planned_meters = _plan_totals(steps)
    score = 0.0

    if planned_seconds and actual_seconds > 0:
        diff = _pct_diff(planned_seconds, actual_seconds)
        score += 1.3 - diff / DURATION_TOLERANCE if diff <= DURATION_TOLERANCE else -diff

    tolerance = SWIM_DISTANCE_TOLERANCE if sport == "swim" else DISTANCE_TOLERANCE
    if planned_meters and actual_meters > 0:
        diff = _pct_diff(planned_meters, actual_meters)
        score += 1.5 - diff / tolerance if diff <= tolerance else -diff

    return score


def _lock_activity(session: Session, activity_id: str) -> Activity:
    stmt = select(Activity).where(Activity.id == activity_id).with_for_update()
    activity = session.execute(stmt).scalar_one_or_none()
    if activity is None:
        raise ActivityNotFoundError(activity_id)
    return activity


def _release_plan(session: Session, activity: Activity, plan_id: str) -> None:
    """Return a plan to planned, but only if it still points at this activity."""
    plan = session.get(PlannedWorkout, plan_id)
    if plan is None:
        return
    if plan.completed_activity_id == activity.id:
        plan.status = "planned"
        plan.completed_activity_id = None
    elif plan.status == "completed" and plan.completed_activity_id is None:
        plan.status = "planned"


def _attach(session: Session, activity: Activity, plan: PlannedWorkout) -> None:
    previous_id = activity.planned_workout_id
    if previous_id and previous_id != plan.id:
        _release_plan(session, activity, previous_id)
        DocumentStore(session).reset_for_relink(activity.id)
        reset_stages(activity)
        logger.info(f"Relinking activity {activity.id}: {previous_id} -> {plan.id}")

    activity.planned_workout_id = plan.id
    plan.status = "completed"
    plan.completed_activity_id = activity.id
    session.flush()


def _find_candidate(session: Session, activity: Activity) -> tuple[PlannedWorkout | None, float | None, str]:
    sport = _normalize_sport(activity.sport)
    stmt = (
        select(PlannedWorkout)
        .where(
            PlannedWorkout.user_id == activity.user_id,
            PlannedWorkout.planned_date == activity.start_time.date(),
            PlannedWorkout.status == "planned",
        )
        .order_by(PlannedWorkout.created_at, PlannedWorkout.id)
    )
    candidates = [plan for plan in session.scalars(stmt).all() if _normalize_sport(plan.sport) == sport]
    if not candidates:
        return (None, None, "no_candidates")

    samples = prepare_samples(parse_samples(activity.sample_stream or []))
    actual_seconds = samples[-1].elapsed_s - samples[0].elapsed_s if samples else 0.0
    actual_meters = (samples[-1].distance_m or 0.0) - (samples[0].distance_m or 0.0) if samples else 0.0

    best: PlannedWorkout | None = None
    best_score = float("-inf")
    for plan in candidates:
        score = score_candidate(parse_plan_steps(plan.steps or []), actual_seconds, actual_meters, sport)
        logger.debug(f"Candidate plan {plan.id} for activity {activity.id}: score={score:.3f}")
        if score > best_score:
            best, best_score = plan, score

    if best is None or best_score < ATTACH_THRESHOLD:
        return (None, best_score, "score_too_low")
    return (best, best_score, "auto_matched")


def link_activity(session: Session, activity_id: str, planned_workout_id: str | None = None) -> LinkResult:
    """Bind an activity to a planned workout.

    Args:
        session: Database session (caller commits)
        activity_id: Activity to link
        planned_workout_id: Explicit plan; None to keep the current link or auto-attach

    Raises:
        ActivityNotFoundError: If the activity does not exist
        LinkError: If the explicit plan does not exist or belongs to another user
    """
    activity = _lock_activity(session, activity_id)

    if planned_workout_id is not None:
        plan = session.get(PlannedWorkout, planned_workout_id)
        if plan is None:
            raise LinkError(f"Planned workout {planned_workout_id} not found")
        if plan.user_id != activity.user_id:
            raise LinkError(f"Planned workout {planned_workout_id} belongs to another user")
        if activity.planned_workout_id == plan.id:
            return LinkResult(activity_id, linked=True, planned_workout_id=plan.id, reason="already_linked")
        reason = "relinked" if activity.planned_workout_id else "explicit"
        _attach(session, activity, plan)
        logger.info(f"Linked activity {activity_id} to plan {plan.id} ({reason})")
        return LinkResult(activity_id, linked=True, planned_workout_id=plan.id, changed=True, reason=reason)

    if activity.planned_workout_id:
        return LinkResult(
            activity_id, linked=True, planned_workout_id=activity.planned_workout_id, reason="already_linked"
        )

    plan, score, reason = _find_candidate(session, activity)
    if plan is None:
        logger.info(f"No plan attached to activity {activity_id}: {reason}")
        return LinkResult(activity_id, linked=False, reason=reason, score=score)

    _attach(session, activity, plan)
    logger.info(f"Auto-attached activity {activity_id} to plan {plan.id} (score={score:.3f})")
    return LinkResult(activity_id, linked=True, planned_workout_id=plan.id, changed=True, reason=reason, score=score)


def unlink_activity(session: Session, activity_id: str) -> LinkResult:
    """Detach an activity from its plan.

    The plan goes back to planned, intervals and execution are dropped and
    every stage returns to pending. Unlinking an unlinked activity is a no-op.

    Raises:
        ActivityNotFoundError: If the activity does not exist
    """
    activity = _lock_activity(session, activity_id)
    previous_id = activity.planned_workout_id
    if not previous_id:
        return LinkResult(activity_id, linked=False, reason="not_linked")

    DocumentStore(session).clear_plan_results(activity_id)
    _release_plan(session, activity, previous_id)
    activity.planned_workout_id = None
    reset_stages(activity)
    session.flush()

    logger.info(f"Unlinked activity {activity_id} from plan {previous_id}")
    return LinkResult(activity_id, linked=False, planned_workout_id=previous_id, changed=True, reason="unlinked")
