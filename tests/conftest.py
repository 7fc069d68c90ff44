"""Root conftest for all tests.

Every test gets an isolated in-memory SQLite database. The lazy engine and
session factory in app.db.session are replaced, so production code paths
(get_session commit/rollback, DocumentStore, LockManager) run unchanged.
"""

from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import locks
from app.db.models import Activity, Base, PlannedWorkout

ACTIVITY_START = datetime(2024, 3, 12, 7, 0, 0)


@pytest.fixture(scope="function")
def test_engine(monkeypatch):
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    monkeypatch.setattr("app.db.session._engine", engine)
    monkeypatch.setattr("app.db.session._SessionLocal", factory)

    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine):
    """Session for arranging and asserting test data.

    Stage code runs in its own sessions; call db_session.expire_all() before
    reading back rows those sessions wrote.
    """
    session = sessionmaker(bind=test_engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(autouse=True)
def clear_local_locks():
    """Process-local advisory locks must not leak between tests."""
    locks._local_locks.clear()
    yield
    locks._local_locks.clear()


def _samples(segments: list[tuple[float, float | None, float | None]], step_s: float = 10.0) -> list[dict]:
    """Build a sample stream from (duration_s, pace, heart_rate) segments."""
    samples: list[dict] = []
    elapsed = 0.0
    for duration_s, pace, heart_rate in segments:
        count = int(duration_s // step_s)
        for _ in range(count):
            sample: dict = {"elapsed_s": elapsed}
            if pace is not None:
                sample["pace"] = pace
            if heart_rate is not None:
                sample["heart_rate"] = heart_rate
            samples.append(sample)
            elapsed += step_s
    return samples


@pytest.fixture
def build_samples():
    """Factory for synthetic sample streams (one sample every 10 seconds)."""
    return _samples


@pytest.fixture
def interval_plan_steps() -> list[dict]:
    """Warmup, one work rep, a recovery jog and an open-ended cooldown (paces in s/mi)."""
    return [
        {"id": "step-wu", "kind": "warmup", "duration_s": 60, "target_low": 600, "target_high": 660},
        {"id": "step-work", "kind": "work", "duration_s": 120, "target_low": 430, "target_high": 450},
        {"id": "step-rec", "kind": "recovery", "duration_s": 60, "target_low": 540, "target_high": 540},
        {"id": "step-cd", "kind": "cooldown"},
    ]


@pytest.fixture
def interval_samples(build_samples) -> list[dict]:
    """Executed stream for interval_plan_steps: on target except a walked recovery (12:00/mi)."""
    return build_samples(
        [
            (60, 630, 130),
            (120, 440, 165),
            (60, 720, 140),
            (60, 650, 135),
        ]
    )


@pytest.fixture
def make_plan(db_session):
    """Factory that persists a PlannedWorkout."""

    def _make_plan(
        steps: list[dict],
        plan_id: str | None = None,
        user_id: str = "user-1",
        sport: str = "run",
        planned_date=None,
    ) -> PlannedWorkout:
        plan = PlannedWorkout(
            user_id=user_id,
            sport=sport,
            planned_date=planned_date or ACTIVITY_START.date(),
            name="Test session",
            steps=steps,
            status="planned",
        )
        if plan_id is not None:
            plan.id = plan_id
        db_session.add(plan)
        db_session.commit()
        return plan

    return _make_plan


@pytest.fixture
def make_activity(db_session):
    """Factory that persists an Activity."""

    def _make_activity(
        samples: list[dict],
        activity_id: str | None = None,
        planned_workout_id: str | None = None,
        user_id: str = "user-1",
        sport: str = "run",
        document=None,
    ) -> Activity:
        activity = Activity(
            user_id=user_id,
            sport=sport,
            start_time=ACTIVITY_START,
            sample_stream=samples,
            planned_workout_id=planned_workout_id,
            document=document if document is not None else {},
        )
        if activity_id is not None:
            activity.id = activity_id
        db_session.add(activity)
        db_session.commit()
        return activity

    return _make_activity


@pytest.fixture
def linked_activity(make_plan, make_activity, interval_plan_steps, interval_samples) -> Activity:
    """Activity already linked to the interval plan."""
    plan = make_plan(interval_plan_steps, plan_id="plan-1")
    return make_activity(interval_samples, activity_id="activity-42", planned_workout_id=plan.id)
