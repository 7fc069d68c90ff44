"""Typed payloads crossing stage boundaries.

Plan steps and samples come from external collaborators (plan compiler,
ingestion layer) and are parsed here before any computation. The document
models describe what stages store in activities.document; unknown keys are
kept so a stage never drops data written by another one.

Units: pace is seconds per mile, power is watts, distance is meters.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class StepKind(StrEnum):
    WARMUP = "warmup"
    WORK = "work"
    RECOVERY = "recovery"
    COOLDOWN = "cooldown"


class TargetMetric(StrEnum):
    PACE = "pace"
    POWER = "power"


class SegmentType(StrEnum):
    WARMUP = "warmup"
    COOLDOWN = "cooldown"
    WORK_INTERVAL = "work_interval"
    TEMPO = "tempo"
    CRUISE_INTERVAL = "cruise_interval"
    RECOVERY_JOG = "recovery_jog"
    EASY_RUN = "easy_run"


class PlanStep(BaseModel):
    """One compiled plan step."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    kind: StepKind
    duration_s: float | None = Field(default=None, gt=0)
    distance_m: float | None = Field(default=None, gt=0)
    target_low: float | None = None
    target_high: float | None = None
    target_metric: TargetMetric = TargetMetric.PACE
    segment_type: SegmentType | None = None

    @model_validator(mode="after")
    def _check_target_range(self) -> PlanStep:
        if self.target_low is not None and self.target_high is not None and self.target_low > self.target_high:
            raise ValueError(f"target_low {self.target_low} is greater than target_high {self.target_high}")
        return self

    @property
    def target_midpoint(self) -> float | None:
        """Midpoint of the target range, or the single bound when only one is given."""
        if self.target_low is not None and self.target_high is not None:
            return (self.target_low + self.target_high) / 2.0
        if self.target_low is not None:
            return self.target_low
        return self.target_high


class Sample(BaseModel):
    """One sample of the normalized activity stream."""

    model_config = ConfigDict(extra="ignore")

    elapsed_s: float = Field(ge=0)
    pace: float | None = Field(default=None, gt=0)
    power: float | None = Field(default=None, ge=0)
    heart_rate: float | None = Field(default=None, gt=0)
    elevation: float | None = None
    distance_m: float | None = Field(default=None, ge=0)


class SampleRange(BaseModel):
    """Half-open index range [start_index, end_index) into the sample stream."""

    start_index: int = Field(ge=0)
    end_index: int = Field(ge=0)

    @property
    def is_empty(self) -> bool:
        return self.end_index <= self.start_index


class PlannedTarget(BaseModel):
    duration_s: float | None = None
    distance_m: float | None = None
    target_low: float | None = None
    target_high: float | None = None
    target_metric: TargetMetric = TargetMetric.PACE


class ExecutedValues(BaseModel):
    duration_s: float
    distance_m: float | None = None
    avg_pace: float | None = None
    avg_power: float | None = None
    avg_heart_rate: float | None = None
    sample_count: int = 0
    adherence_percentage: float | None = None


class GranularMetrics(BaseModel):
    time_in_target_pct: float | None = None
    pace_variation_pct: float | None = None
    hr_drift_bpm: float | None = None
    samples_evaluated: int = 0


class PenaltyBreakdown(BaseModel):
    deviation: float
    tolerance: float
    weight: float
    base: float
    directional: float
    total: float


class Interval(BaseModel):
    """One plan-step-aligned slice of the activity.

    Fields are filled by different stages: the slicer owns planned/executed/
    sample_range, the enricher owns granular_metrics, the score engine owns
    segment_type/penalty. A partial interval only carries the writer's fields.
    """

    model_config = ConfigDict(extra="allow")

    planned_step_id: str | None = None
    step_index: int = Field(ge=0)
    kind: StepKind | None = None
    segment_type: SegmentType | None = None
    planned: PlannedTarget | None = None
    executed: ExecutedValues | None = None
    sample_range: SampleRange | None = None
    granular_metrics: GranularMetrics | None = None
    penalty: PenaltyBreakdown | None = None

    @property
    def adherence_percentage(self) -> float | None:
        return self.executed.adherence_percentage if self.executed else None


class ActivityDocument(BaseModel):
    """The merged per-activity report."""

    model_config = ConfigDict(extra="allow")

    intervals: list[Interval] = Field(default_factory=list)
    overall: dict | None = None
    analysis: dict | None = None
    execution: dict | None = None
    metrics: dict | None = None


def parse_plan_steps(raw_steps: object) -> list[PlanStep]:
    """Parse the stored plan steps, rejecting anything that is not a list."""
    if not isinstance(raw_steps, list):
        raise TypeError(f"plan steps must be a list, got {type(raw_steps).__name__}")
    return [PlanStep.model_validate(step) for step in raw_steps]


def parse_samples(raw_samples: object) -> list[Sample]:
    """Parse the stored sample stream, rejecting anything that is not a list."""
    if not isinstance(raw_samples, list):
        raise TypeError(f"sample stream must be a list, got {type(raw_samples).__name__}")
    return [Sample.model_validate(sample) for sample in raw_samples]


def dump_intervals(intervals: list[Interval]) -> list[dict]:
    """Serialize intervals for a partial document, omitting fields the writer did not set.

    Only top-level interval fields are filtered; nested values are dumped in
    full so explicit nulls (e.g. adherence_percentage) survive.
    """
    dumped: list[dict] = []
    for interval in intervals:
        data = interval.model_dump(mode="json")
        keep = set(interval.model_fields_set) | {"step_index"}
        dumped.append({key: value for key, value in data.items() if key in keep})
    return dumped
