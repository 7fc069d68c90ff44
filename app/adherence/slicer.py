"""Interval slicing: cut the sample stream into plan-step-aligned windows.

Pure functions, deterministic. Steps are walked in plan order with a cursor:
time-based steps end at the first sample at or beyond the planned duration,
distance-based steps end at the first sample whose cumulative distance
reaches the planned distance. Windows are half-open index ranges and never
overlap.
"""

from __future__ import annotations

from dataclasses import dataclass

from app.adherence.schemas import (
    ExecutedValues,
    Interval,
    PlannedTarget,
    PlanStep,
    Sample,
    SampleRange,
    TargetMetric,
)

METERS_PER_MILE = 1609.344

# Distance fill from pace: gaps longer than this are capped, slower speeds are treated as stopped
MAX_FILL_GAP_SECONDS = 60.0
STATIONARY_SPEED_MPS = 0.3


def pace_to_speed(pace_s_per_mi: float | None) -> float | None:
    """Convert pace (seconds per mile) to speed (m/s)."""
    if pace_s_per_mi is None or pace_s_per_mi <= 0:
        return None
    return METERS_PER_MILE / pace_s_per_mi


def _mean(values: list[float]) -> float | None:
    if not values:
        return None
    return sum(values) / len(values)


def prepare_samples(samples: list[Sample]) -> list[Sample]:
    """Sort samples by elapsed time and fill missing cumulative distance.

    Provider distance wins when present; otherwise distance is integrated from
    the average speed of consecutive samples, ignoring stationary samples.
    """
    ordered = sorted(samples, key=lambda s: s.elapsed_s)
    if not ordered:
        return []

    prepared: list[Sample] = []
    cumulative = ordered[0].distance_m if ordered[0].distance_m is not None else 0.0
    prepared.append(ordered[0].model_copy(update={"distance_m": cumulative}))

    for prev, cur in zip(ordered, ordered[1:]):
        if cur.distance_m is not None:
            cumulative = cur.distance_m
        else:
            dt = min(MAX_FILL_GAP_SECONDS, max(0.0, cur.elapsed_s - prev.elapsed_s))
            speeds = [
                speed
                for speed in (pace_to_speed(prev.pace), pace_to_speed(cur.pace))
                if speed is not None and speed >= STATIONARY_SPEED_MPS
            ]
            if dt and speeds:
                cumulative += _mean(speeds) * dt
        prepared.append(cur.model_copy(update={"distance_m": cumulative}))

    return prepared


@dataclass
class StepWindow:
    """Sample-index window for one plan step."""

    step_index: int
    start_index: int
    end_index: int

    @property
    def is_empty(self) -> bool:
        return self.end_index <= self.start_index

    def to_range(self) -> SampleRange:
        return SampleRange(start_index=self.start_index, end_index=self.end_index)


def compute_step_windows(steps: list[PlanStep], samples: list[Sample]) -> list[StepWindow]:
    """Compute non-overlapping [start, end) sample windows for each plan step.

    Args:
        steps: Plan steps in plan order
        samples: Prepared samples (sorted, cumulative distance filled)

    Returns:
        One StepWindow per step, in plan order
    """
    windows: list[StepWindow] = []
    total = len(samples)
    cursor = 0

    for step_index, step in enumerate(steps):
        start = cursor
        if start >= total:
            windows.append(StepWindow(step_index, total, total))
            continue

        end = start
        if step.duration_s is not None:
            goal_t = samples[start].elapsed_s + step.duration_s
            while end < total and samples[end].elapsed_s < goal_t:
                end += 1
        elif step.distance_m is not None:
            goal_d = (samples[start].distance_m or 0.0) + step.distance_m
            while end < total and (samples[end].distance_m or 0.0) < goal_d:
                end += 1
        elif step_index == len(steps) - 1:
            # Open-ended trailing step (e.g. "cool down as needed") takes the remainder
            end = total

        windows.append(StepWindow(step_index, start, end))
        cursor = end

    return windows


def _window_duration(samples: list[Sample], window: StepWindow) -> float:
    first = samples[window.start_index].elapsed_s
    if window.end_index < len(samples):
        return samples[window.end_index].elapsed_s - first
    return samples[window.end_index - 1].elapsed_s - first


def _window_distance(samples: list[Sample], window: StepWindow) -> float | None:
    start_d = samples[window.start_index].distance_m
    if window.end_index < len(samples):
        end_d = samples[window.end_index].distance_m
    else:
        end_d = samples[window.end_index - 1].distance_m
    if start_d is None or end_d is None:
        return None
    return max(0.0, end_d - start_d)


def adherence_percentage(step: PlanStep, avg_pace: float | None, avg_power: float | None) -> float | None:
    """Executed value as a percentage of the planned target midpoint.

    Pace is inverted (lower is faster) so that running slower than planned
    reads below 100 for both metrics.
    """
    target = step.target_midpoint
    if target is None or target <= 0:
        return None

    if step.target_metric == TargetMetric.POWER:
        if avg_power is None:
            return None
        ratio = avg_power / target
    else:
        if avg_pace is None or avg_pace <= 0:
            return None
        ratio = target / avg_pace

    return round(ratio * 100.0, 1)


def summarize_window(step: PlanStep, samples: list[Sample], window: StepWindow) -> ExecutedValues | None:
    """Executed averages over one window. Empty windows yield None, never zeros."""
    if window.is_empty:
        return None

    in_range = samples[window.start_index : window.end_index]
    avg_pace = _mean([s.pace for s in in_range if s.pace is not None])
    avg_power = _mean([s.power for s in in_range if s.power is not None])
    avg_hr = _mean([s.heart_rate for s in in_range if s.heart_rate is not None])
    distance = _window_distance(samples, window)

    return ExecutedValues(
        duration_s=round(_window_duration(samples, window), 1),
        distance_m=round(distance, 1) if distance is not None else None,
        avg_pace=round(avg_pace, 1) if avg_pace is not None else None,
        avg_power=round(avg_power, 1) if avg_power is not None else None,
        avg_heart_rate=round(avg_hr, 1) if avg_hr is not None else None,
        sample_count=len(in_range),
        adherence_percentage=adherence_percentage(step, avg_pace, avg_power),
    )


def planned_target(step: PlanStep) -> PlannedTarget:
    return PlannedTarget(
        duration_s=step.duration_s,
        distance_m=step.distance_m,
        target_low=step.target_low,
        target_high=step.target_high,
        target_metric=step.target_metric,
    )


def slice_intervals(steps: list[PlanStep], samples: list[Sample]) -> list[Interval]:
    """Slice prepared samples into one Interval per plan step.

    planned_step_id is copied from every step that carries an id; it is the
    join key every downstream stage and the presentation layer rely on.
    """
    windows = compute_step_windows(steps, samples)
    intervals: list[Interval] = []
    for step, window in zip(steps, windows):
        intervals.append(
            Interval(
                planned_step_id=step.id,
                step_index=window.step_index,
                kind=step.kind,
                planned=planned_target(step),
                executed=summarize_window(step, samples, window),
                sample_range=window.to_range(),
            )
        )
    return intervals


def summarize_overall(samples: list[Sample]) -> dict:
    """Whole-activity aggregates written under document.overall."""
    if not samples:
        return {
            "duration_s": None,
            "distance_m": None,
            "avg_pace": None,
            "avg_heart_rate": None,
            "avg_power": None,
            "sample_count": 0,
        }

    duration = samples[-1].elapsed_s - samples[0].elapsed_s
    distance = (samples[-1].distance_m or 0.0) - (samples[0].distance_m or 0.0)
    avg_pace = _mean([s.pace for s in samples if s.pace is not None])
    avg_hr = _mean([s.heart_rate for s in samples if s.heart_rate is not None])
    avg_power = _mean([s.power for s in samples if s.power is not None])
    return {
        "duration_s": round(duration, 1),
        "distance_m": round(max(0.0, distance), 1),
        "avg_pace": round(avg_pace, 1) if avg_pace is not None else None,
        "avg_heart_rate": round(avg_hr, 1) if avg_hr is not None else None,
        "avg_power": round(avg_power, 1) if avg_power is not None else None,
        "sample_count": len(samples),
    }
