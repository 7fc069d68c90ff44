from __future__ import annotations

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import JSON, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite local dev and tests)
DocumentJSON = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""


class PlannedWorkout(Base):
    """Compiled training plan for one session.

    Produced by the external plan compiler; this service only reads `steps`
    and maintains the link bookkeeping (`status`, `completed_activity_id`).

    Schema:
    - id: UUID primary key
    - user_id: Owner of the plan
    - sport: Sport type (run, ride, swim)
    - planned_date: Calendar day the session is planned for
    - name: Session title
    - steps: JSON list of plan steps, each
      {id, kind, duration_s | distance_m, target_low, target_high, target_metric, segment_type}
    - status: planned | completed | cancelled
    - completed_activity_id: Activity currently linked to this plan (nullable)
    """

    __tablename__ = "planned_workouts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    sport: Mapped[str] = mapped_column(String, nullable=False, default="run")
    planned_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    steps: Mapped[list] = mapped_column(DocumentJSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String, nullable=False, default="planned")
    completed_activity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (Index("idx_planned_workouts_user_date", "user_id", "planned_date"),)


class Activity(Base):
    """One completed physical-activity recording and its execution report.

    The sample stream is written once at ingestion. `document` is the merged
    result of every computation stage and is only ever modified through
    DocumentStore.merge (row-locked). Each stage tracks its own status,
    error message and last status change.

    Schema:
    - id: UUID primary key
    - user_id: Owner of the activity
    - sport: Sport type (run, ride, swim)
    - start_time: Activity start timestamp (UTC)
    - sample_stream: JSON list of samples {elapsed_s, pace, power, heart_rate, elevation, distance_m}
    - planned_workout_id: Linked plan (nullable)
    - {summary,analysis,score,metrics}_status: pending | processing | complete | failed
    - {summary,analysis,score,metrics}_error: Last failure message (nullable)
    - {summary,analysis,score,metrics}_updated_at: Last status change (nullable)
    - document: Merged JSON report {intervals, overall, analysis, execution, metrics}
    - document_version: Incremented on every merge
    - computed_at: Timestamp of the last merge
    """

    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    sport: Mapped[str] = mapped_column(String, nullable=False, default="run")
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    sample_stream: Mapped[list] = mapped_column(DocumentJSON, nullable=False, default=list)
    planned_workout_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("planned_workouts.id"), nullable=True, index=True
    )

    summary_status: Mapped[str] = mapped_column(String, nullable=False, default="pending", index=True)
    analysis_status: Mapped[str] = mapped_column(String, nullable=False, default="pending", index=True)
    score_status: Mapped[str] = mapped_column(String, nullable=False, default="pending", index=True)
    metrics_status: Mapped[str] = mapped_column(String, nullable=False, default="pending", index=True)

    summary_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    analysis_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    score_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    metrics_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    summary_updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    analysis_updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    score_updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    metrics_updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    document: Mapped[dict] = mapped_column(DocumentJSON, nullable=False, default=dict)
    document_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    computed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (Index("idx_activities_user_start_time", "user_id", "start_time"),)
