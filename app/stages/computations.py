"""Stage computations: turn a StageContext into the stage's partial document."""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from app.adherence.enricher import build_analysis, enrich_intervals
from app.adherence.errors import ComputationFailure
from app.adherence.metrics import compute_activity_metrics
from app.adherence.schemas import PlanStep, dump_intervals
from app.adherence.scoring import score_intervals
from app.adherence.slicer import slice_intervals, summarize_overall
from app.config.settings import settings
from app.stages.runner import StageCompute, StageContext
from app.stages.status import StageName


def _require_samples(context: StageContext) -> None:
    if not context.samples:
        raise ComputationFailure(f"Activity {context.activity_id} has an empty sample stream")


def _require_plan(context: StageContext) -> list[PlanStep]:
    if context.steps is None:
        raise ComputationFailure(f"Activity {context.activity_id} has no linked plan")
    if not context.steps:
        raise ComputationFailure(f"Plan {context.planned_workout_id} has no steps")
    return context.steps


def compute_summary(context: StageContext) -> dict:
    """Interval slicer: executed values per plan step plus whole-activity overall."""
    steps = _require_plan(context)
    _require_samples(context)

    intervals = slice_intervals(steps, context.samples)
    empty = sum(1 for interval in intervals if interval.executed is None)
    if empty:
        logger.info(f"Activity {context.activity_id}: {empty}/{len(intervals)} plan steps have no samples")

    return {
        "intervals": dump_intervals(intervals),
        "overall": summarize_overall(context.samples),
    }


def compute_analysis(context: StageContext) -> dict:
    """Analysis enricher: chart series, and granular metrics when a plan is linked."""
    _require_samples(context)
    partial: dict = {"analysis": build_analysis(context.samples, settings.series_max_points)}

    if context.steps:
        current = context.read_current()
        enriched = enrich_intervals(context.steps, context.samples, current.intervals)
        partial["intervals"] = dump_intervals(enriched)

    return partial


def compute_score(context: StageContext) -> dict:
    """Score engine: segment classification, penalties and the execution score."""
    steps = _require_plan(context)
    _require_samples(context)

    result = score_intervals(steps, context.samples)
    logger.info(
        f"Activity {context.activity_id}: execution_score={result.execution['execution_score']}, "
        f"total_penalty={result.execution['total_penalty']}"
    )
    return {
        "intervals": dump_intervals(result.intervals),
        "execution": result.execution,
    }


def compute_metrics(context: StageContext) -> dict:
    """Whole-activity metrics; plan-relative values only when linked."""
    _require_samples(context)
    return {"metrics": compute_activity_metrics(context.samples, context.steps)}


@dataclass(frozen=True)
class StageDefinition:
    name: StageName
    compute: StageCompute


STAGE_DEFINITIONS: dict[StageName, StageDefinition] = {
    StageName.SUMMARY: StageDefinition(StageName.SUMMARY, compute_summary),
    StageName.ANALYSIS: StageDefinition(StageName.ANALYSIS, compute_analysis),
    StageName.SCORE: StageDefinition(StageName.SCORE, compute_score),
    StageName.METRICS: StageDefinition(StageName.METRICS, compute_metrics),
}
