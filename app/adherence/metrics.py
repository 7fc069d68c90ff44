"""Whole-activity metrics written under document.metrics.

Physiological and mechanical totals that do not depend on interval slicing,
plus plan-relative adherence when the activity is linked.
"""

from __future__ import annotations

import numpy as np

from app.adherence.schemas import PlanStep, Sample, StepKind, TargetMetric

NORMALIZED_POWER_WINDOW = 30
ELEVATION_NOISE_FLOOR_M = 0.5


def _round(value: float | None, digits: int = 1) -> float | None:
    return round(float(value), digits) if value is not None else None


def normalized_power(powers: list[float], window: int = NORMALIZED_POWER_WINDOW) -> float | None:
    """Fourth root of the mean of the fourth power of the rolling mean power.

    Needs at least one full rolling window of power samples.
    """
    if len(powers) < window:
        return None
    values = np.asarray(powers, dtype=float)
    rolling = np.convolve(values, np.ones(window) / window, mode="valid")
    return float(np.mean(rolling**4) ** 0.25)


def elevation_gain(elevations: list[float], noise_floor: float = ELEVATION_NOISE_FLOOR_M) -> float | None:
    """Sum of positive elevation changes, ignoring steps smaller than the noise floor."""
    if len(elevations) < 2:
        return None
    gain = 0.0
    reference = elevations[0]
    for value in elevations[1:]:
        delta = value - reference
        if delta >= noise_floor:
            gain += delta
            reference = value
        elif delta <= -noise_floor:
            reference = value
    return gain


def _plan_pace_target(steps: list[PlanStep]) -> float | None:
    """Duration-weighted pace target midpoint over work steps."""
    weighted = 0.0
    weights = 0.0
    for step in steps:
        if step.kind != StepKind.WORK or step.target_metric != TargetMetric.PACE:
            continue
        target = step.target_midpoint
        if target is None:
            continue
        weight = step.duration_s or 1.0
        weighted += target * weight
        weights += weight
    return weighted / weights if weights else None


def _plan_distance(steps: list[PlanStep]) -> float | None:
    distances = [step.distance_m for step in steps if step.distance_m is not None]
    return float(sum(distances)) if distances else None


def compute_activity_metrics(samples: list[Sample], steps: list[PlanStep] | None = None) -> dict:
    """Aggregate metrics over the whole prepared sample stream."""
    paces = [s.pace for s in samples if s.pace is not None]
    rates = [s.heart_rate for s in samples if s.heart_rate is not None]
    powers = [s.power for s in samples if s.power is not None]
    elevations = [s.elevation for s in samples if s.elevation is not None]

    duration = samples[-1].elapsed_s - samples[0].elapsed_s if samples else None
    distance = (samples[-1].distance_m or 0.0) - (samples[0].distance_m or 0.0) if samples else None

    avg_power = float(np.mean(powers)) if powers else None
    np_value = normalized_power(powers)
    variability = np_value / avg_power if np_value is not None and avg_power else None

    metrics: dict = {
        "distance_m": _round(distance),
        "duration_s": _round(duration),
        "avg_pace": _round(np.mean(paces)) if paces else None,
        "best_pace": _round(min(paces)) if paces else None,
        "avg_heart_rate": _round(np.mean(rates)) if rates else None,
        "max_heart_rate": _round(max(rates)) if rates else None,
        "avg_power": _round(avg_power),
        "max_power": _round(max(powers)) if powers else None,
        "normalized_power": _round(np_value),
        "variability_index": _round(variability, 2),
        "elevation_gain_m": _round(elevation_gain(elevations)),
        "pace_adherence_pct": None,
        "distance_adherence_pct": None,
    }

    if steps:
        target_pace = _plan_pace_target(steps)
        if target_pace and paces:
            metrics["pace_adherence_pct"] = _round(target_pace / float(np.mean(paces)) * 100.0)
        planned_distance = _plan_distance(steps)
        if planned_distance and distance is not None:
            metrics["distance_adherence_pct"] = _round(distance / planned_distance * 100.0)

    return metrics
