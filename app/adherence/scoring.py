"""Segment classification and penalty-based execution scoring.

Pure math, deterministic. Each interval's adherence deviation beyond the
segment's tolerance costs weighted points; directional rules add a fixed
penalty for missing the training stimulus (too slow on work), overreaching
(too fast on work) or walking recoveries. The session score starts at 100 and
only ever goes down, so averaging out a too-fast and a too-slow rep is not
possible.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from app.adherence.schemas import Interval, PenaltyBreakdown, PlanStep, Sample, SegmentType, StepKind
from app.adherence.slicer import compute_step_windows, summarize_window

WORK_INTERVAL_MAX_SECONDS = 8 * 60


@dataclass(frozen=True)
class SegmentRule:
    """Allowed deviation (percentage points) and contribution weight."""

    tolerance: float
    weight: float


SEGMENT_RULES: dict[SegmentType, SegmentRule] = {
    SegmentType.WARMUP: SegmentRule(tolerance=10.0, weight=0.5),
    SegmentType.COOLDOWN: SegmentRule(tolerance=10.0, weight=0.3),
    SegmentType.WORK_INTERVAL: SegmentRule(tolerance=5.0, weight=1.0),
    SegmentType.TEMPO: SegmentRule(tolerance=4.0, weight=1.0),
    SegmentType.CRUISE_INTERVAL: SegmentRule(tolerance=5.0, weight=0.9),
    SegmentType.RECOVERY_JOG: SegmentRule(tolerance=15.0, weight=0.7),
    SegmentType.EASY_RUN: SegmentRule(tolerance=8.0, weight=0.6),
}

WORK_SEGMENTS = frozenset({SegmentType.WORK_INTERVAL, SegmentType.TEMPO, SegmentType.CRUISE_INTERVAL})
RECOVERY_SEGMENTS = frozenset({SegmentType.RECOVERY_JOG})

# Directional thresholds (adherence %) and their fixed penalties
WORK_TOO_SLOW_BELOW = 95.0
WORK_TOO_SLOW_PENALTY = 5.0
WORK_TOO_FAST_ABOVE = 110.0
WORK_TOO_FAST_PENALTY = 3.0
RECOVERY_WALKED_BELOW = 85.0
RECOVERY_WALKED_PENALTY = 3.0

_ROLE_SEGMENTS: dict[StepKind, SegmentType] = {
    StepKind.WARMUP: SegmentType.WARMUP,
    StepKind.COOLDOWN: SegmentType.COOLDOWN,
    StepKind.RECOVERY: SegmentType.RECOVERY_JOG,
}


def classify_segment(step: PlanStep, executed_duration_s: float | None = None) -> SegmentType:
    """Classify a plan step; the first matching rule wins.

    1. explicit segment_type hint on the step
    2. warmup / cooldown / recovery roles map directly
    3. any other step lasting at most 8 minutes is a work_interval, longer is tempo

    Distance-only steps use the executed duration when known.
    """
    if step.segment_type is not None:
        return step.segment_type

    role_segment = _ROLE_SEGMENTS.get(step.kind)
    if role_segment is not None:
        return role_segment

    duration = step.duration_s if step.duration_s is not None else executed_duration_s
    if duration is None or duration <= WORK_INTERVAL_MAX_SECONDS:
        return SegmentType.WORK_INTERVAL
    return SegmentType.TEMPO


def directional_penalty(segment_type: SegmentType, adherence: float) -> float:
    if segment_type in WORK_SEGMENTS:
        if adherence < WORK_TOO_SLOW_BELOW:
            return WORK_TOO_SLOW_PENALTY
        if adherence > WORK_TOO_FAST_ABOVE:
            return WORK_TOO_FAST_PENALTY
    if segment_type in RECOVERY_SEGMENTS and adherence < RECOVERY_WALKED_BELOW:
        return RECOVERY_WALKED_PENALTY
    return 0.0


def interval_penalty(segment_type: SegmentType, adherence: float | None) -> PenaltyBreakdown | None:
    """Penalty for one interval, or None when adherence could not be measured."""
    if adherence is None:
        return None

    rule = SEGMENT_RULES[segment_type]
    deviation = abs(adherence - 100.0)
    if deviation <= rule.tolerance:
        base = 0.0
        directional = 0.0
    else:
        base = (deviation - rule.tolerance) * rule.weight
        directional = directional_penalty(segment_type, adherence)

    return PenaltyBreakdown(
        deviation=round(deviation, 2),
        tolerance=rule.tolerance,
        weight=rule.weight,
        base=base,
        directional=directional,
        total=base + directional,
    )


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def execution_score(penalties: list[float]) -> int:
    """Whole-activity score in [0, 100].

    100 is reserved for sessions where no interval accrued any penalty.
    """
    total = sum(penalties)
    score = max(0, _round_half_up(100.0 - total))
    if total > 0:
        score = min(score, 99)
    return score


def duration_adherence(actual_total_s: float | None, planned_total_s: float | None) -> float | None:
    """Actual over planned duration, capped at 100: going long is never better."""
    if actual_total_s is None or not planned_total_s or planned_total_s <= 0:
        return None
    return round(min(100.0, actual_total_s / planned_total_s * 100.0), 1)


def planned_total_duration(steps: list[PlanStep]) -> float | None:
    durations = [step.duration_s for step in steps if step.duration_s is not None]
    if not durations:
        return None
    return float(sum(durations))


@dataclass
class ScoreResult:
    """Per-interval score fields plus the whole-activity execution block."""

    intervals: list[Interval]
    execution: dict


def score_intervals(steps: list[PlanStep], samples: list[Sample]) -> ScoreResult:
    """Classify and penalize every plan step against the executed samples.

    Adherence is recomputed from the plan and samples with the slicer's pure
    functions so scoring does not depend on whether the slicer already ran.

    Args:
        steps: Plan steps in plan order
        samples: Prepared samples (sorted, cumulative distance filled)
    """
    windows = compute_step_windows(steps, samples)
    scored: list[Interval] = []
    penalties: list[float] = []
    measured = 0

    for step, window in zip(steps, windows):
        executed = summarize_window(step, samples, window)
        segment_type = classify_segment(step, executed.duration_s if executed else None)
        penalty = interval_penalty(segment_type, executed.adherence_percentage if executed else None)
        if penalty is not None:
            measured += 1
            penalties.append(penalty.total)

        scored.append(
            Interval(
                planned_step_id=step.id,
                step_index=window.step_index,
                segment_type=segment_type,
                penalty=penalty,
            )
        )

    actual_total = samples[-1].elapsed_s - samples[0].elapsed_s if samples else None
    planned_total = planned_total_duration(steps)
    total_penalty = round(sum(penalties), 2)

    execution = {
        "execution_score": execution_score(penalties),
        "duration_adherence": duration_adherence(actual_total, planned_total),
        "total_penalty": total_penalty,
        "scored_intervals": measured,
        "unscored_intervals": len(steps) - measured,
        "planned_duration_s": planned_total,
        "actual_duration_s": round(actual_total, 1) if actual_total is not None else None,
    }
    return ScoreResult(intervals=scored, execution=execution)
