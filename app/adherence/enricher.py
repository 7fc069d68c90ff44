"""Analysis enrichment: granular per-interval metrics and chart series.

Works on the interval windows already stored by the slicer (sample_range),
so the enricher looks at exactly the samples the executed averages were
computed from.
"""

from __future__ import annotations

import statistics
from datetime import datetime, timezone

import numpy as np

from app.adherence.schemas import GranularMetrics, Interval, PlanStep, Sample, SampleRange, TargetMetric
from app.adherence.slicer import compute_step_windows

ANALYSIS_VERSION = "v1.0.0"


def _metric_values(samples: list[Sample], metric: TargetMetric) -> list[float]:
    if metric == TargetMetric.POWER:
        return [s.power for s in samples if s.power is not None]
    return [s.pace for s in samples if s.pace is not None]


def time_in_target_pct(step: PlanStep, samples: list[Sample]) -> float | None:
    """Share of samples whose instantaneous value lies inside the target range."""
    if step.target_low is None and step.target_high is None:
        return None
    values = _metric_values(samples, step.target_metric)
    if not values:
        return None

    low = step.target_low if step.target_low is not None else float("-inf")
    high = step.target_high if step.target_high is not None else float("inf")
    in_target = sum(1 for value in values if low <= value <= high)
    return round(in_target / len(values) * 100.0, 1)


def pace_variation_pct(samples: list[Sample]) -> float | None:
    """Coefficient of variation of pace within the slice."""
    paces = [s.pace for s in samples if s.pace is not None]
    if len(paces) < 2:
        return None
    mean = statistics.fmean(paces)
    if mean <= 0:
        return None
    return round(statistics.pstdev(paces) / mean * 100.0, 1)


def hr_drift_bpm(samples: list[Sample]) -> float | None:
    """Mean heart rate of the second half minus the first half."""
    rates = [s.heart_rate for s in samples if s.heart_rate is not None]
    if len(rates) < 2:
        return None
    half = len(rates) // 2
    first, second = rates[:half], rates[half:]
    return round(statistics.fmean(second) - statistics.fmean(first), 1)


def granular_metrics(step: PlanStep, samples: list[Sample]) -> GranularMetrics:
    return GranularMetrics(
        time_in_target_pct=time_in_target_pct(step, samples),
        pace_variation_pct=pace_variation_pct(samples),
        hr_drift_bpm=hr_drift_bpm(samples),
        samples_evaluated=len(samples),
    )


def _stored_ranges(intervals: list[Interval]) -> dict[int, SampleRange]:
    return {interval.step_index: interval.sample_range for interval in intervals if interval.sample_range is not None}


def enrich_intervals(
    steps: list[PlanStep],
    samples: list[Sample],
    current_intervals: list[Interval],
) -> list[Interval]:
    """Compute granular metrics for every plan step.

    Uses the sample ranges stored by the slicer; windows are only derived
    here for steps the slicer has not written yet.

    Returns:
        Partial intervals carrying identity fields and granular_metrics only
    """
    ranges = _stored_ranges(current_intervals)
    derived = None
    enriched: list[Interval] = []

    for step_index, step in enumerate(steps):
        sample_range = ranges.get(step_index)
        if sample_range is None:
            if derived is None:
                derived = compute_step_windows(steps, samples)
            sample_range = derived[step_index].to_range()

        window_samples = samples[sample_range.start_index : sample_range.end_index]
        enriched.append(
            Interval(
                planned_step_id=step.id,
                step_index=step_index,
                granular_metrics=granular_metrics(step, window_samples),
            )
        )

    return enriched


def downsample_indices(count: int, max_points: int) -> list[int]:
    """Evenly spaced sample indices, always keeping the first and last sample."""
    if count <= max_points:
        return list(range(count))
    return sorted({int(i) for i in np.linspace(0, count - 1, num=max_points).round()})


def build_series(samples: list[Sample], max_points: int) -> dict:
    """Time-aligned arrays for charting."""
    indices = downsample_indices(len(samples), max_points)
    picked = [samples[i] for i in indices]
    return {
        "elapsed_s": [s.elapsed_s for s in picked],
        "pace": [s.pace for s in picked],
        "heart_rate": [s.heart_rate for s in picked],
        "elevation": [s.elevation for s in picked],
    }


def build_analysis(samples: list[Sample], max_points: int) -> dict:
    """Whole-activity analysis block written under document.analysis."""
    series = build_series(samples, max_points)
    return {
        "version": ANALYSIS_VERSION,
        "computed_at": datetime.now(timezone.utc).isoformat(),
        "series": series,
        "sampling": {
            "strategy": "even_stride" if len(samples) > max_points else "full",
            "source_points": len(samples),
            "points": len(series["elapsed_s"]),
        },
    }
