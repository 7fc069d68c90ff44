"""Tests for the stage /process endpoints and status surface.

Tests cover:
- A held advisory lock makes a duplicate call return skipped without touching anything
- Each stage writes only its own part of the document
- Stage order does not change the merged intervals
- Failures are persisted on the activity row and are retryable
- Status and document read endpoints
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from app.db.locks import LockManager
from app.db.models import Activity
from app.main import app
from app.stages.runner import run_stage
from app.stages.status import ALL_STAGES, StageName, stage_status_report


@pytest.fixture
def client(test_engine):
    return TestClient(app)


def _process(client: TestClient, stage: str, activity_id: str = "activity-42"):
    return client.post(f"/stages/{stage}/process", json={"activity_id": activity_id})


def _stored(db_session, activity_id: str = "activity-42") -> Activity:
    db_session.expire_all()
    return db_session.get(Activity, activity_id)


class TestLockContention:
    """Test duplicate invocations of the same stage."""

    def test_held_score_engine_lock_skips_second_call(self, client, test_engine, db_session, linked_activity):
        holder = sessionmaker(bind=test_engine)()
        try:
            assert LockManager(holder).try_acquire("score-engine:activity-42") is True

            response = _process(client, "score")

            assert response.status_code == 200
            assert response.json() == {"skipped": True}
            stored = _stored(db_session)
            assert stored.document == {}
            assert stored.document_version == 0
            assert stored.score_status == "pending"
        finally:
            holder.close()

        # Once the holder's transaction ends the stage runs normally
        assert _process(client, "score").json() == {"ok": True}

    def test_other_stage_is_not_blocked(self, client, test_engine, linked_activity):
        holder = sessionmaker(bind=test_engine)()
        try:
            assert LockManager(holder).try_acquire("score-engine:activity-42") is True

            assert _process(client, "summary").json() == {"ok": True}
        finally:
            holder.close()

    def test_sequential_repeat_leaves_intervals_unchanged(self, client, db_session, linked_activity):
        assert _process(client, "summary").json() == {"ok": True}
        first = _stored(db_session).document["intervals"]

        assert _process(client, "summary").json() == {"ok": True}

        stored = _stored(db_session)
        assert stored.document["intervals"] == first
        assert stored.document_version == 2


class TestStageResults:
    """Test what each stage writes."""

    def test_summary(self, client, db_session, linked_activity):
        response = _process(client, "summary")

        assert response.json() == {"ok": True}
        stored = _stored(db_session)
        assert stored.summary_status == "complete"
        assert stored.summary_error is None
        assert stored.summary_updated_at is not None
        assert set(stored.document) == {"intervals", "overall"}
        work = stored.document["intervals"][1]
        assert work["planned_step_id"] == "step-work"
        assert work["executed"]["adherence_percentage"] == 100.0
        assert work["sample_range"] == {"start_index": 6, "end_index": 18}

    def test_all_stages_merge_into_one_document(self, client, db_session, linked_activity):
        for stage in ALL_STAGES:
            assert _process(client, stage.value).json() == {"ok": True}

        stored = _stored(db_session)
        document = stored.document
        assert set(document) == {"intervals", "overall", "analysis", "execution", "metrics"}
        assert stored.document_version == 4
        recovery = document["intervals"][2]
        assert recovery["executed"]["adherence_percentage"] == 75.0
        assert recovery["granular_metrics"]["time_in_target_pct"] == 0.0
        assert recovery["segment_type"] == "recovery_jog"
        assert recovery["penalty"]["total"] == pytest.approx(10.0)
        assert document["execution"]["execution_score"] == 90
        assert document["analysis"]["version"] == "v1.0.0"
        assert document["metrics"]["avg_pace"] == 576.0
        for stage in ALL_STAGES:
            assert getattr(stored, f"{stage.value}_status") == "complete"

    def test_repeated_step_ids_keep_one_interval_per_step(
        self, client, db_session, make_plan, make_activity, build_samples
    ):
        steps = [
            {"id": "wu", "kind": "warmup", "duration_s": 60, "target_low": 600, "target_high": 660},
            {"id": "rep", "kind": "work", "duration_s": 60, "target_low": 430, "target_high": 450},
            {"id": "rec", "kind": "recovery", "duration_s": 60, "target_low": 540, "target_high": 540},
            {"id": "rep", "kind": "work", "duration_s": 60, "target_low": 430, "target_high": 450},
            {"id": "cd", "kind": "cooldown"},
        ]
        samples = build_samples([(60, 630, 130), (60, 440, 165), (60, 540, 140), (60, 440, 168), (60, 650, 135)])
        make_plan(steps, plan_id="reps")
        make_activity(samples, activity_id="a1", planned_workout_id="reps")

        for stage in (StageName.SUMMARY, StageName.ANALYSIS, StageName.SCORE):
            assert _process(client, stage.value, "a1").json() == {"ok": True}

        intervals = _stored(db_session, "a1").document["intervals"]
        assert [entry["step_index"] for entry in intervals] == [0, 1, 2, 3, 4]
        reps = [entry for entry in intervals if entry["planned_step_id"] == "rep"]
        assert [entry["step_index"] for entry in reps] == [1, 3]
        for rep in reps:
            assert rep["executed"]["adherence_percentage"] == 100.0
            assert rep["granular_metrics"]["time_in_target_pct"] == 100.0
            assert rep["penalty"]["total"] == 0.0

    def test_stage_order_does_not_change_intervals(
        self, client, db_session, make_plan, make_activity, interval_plan_steps, interval_samples
    ):
        make_plan(interval_plan_steps, plan_id="plan-1")
        make_activity(interval_samples, activity_id="forward", planned_workout_id="plan-1")
        make_activity(interval_samples, activity_id="reverse", planned_workout_id="plan-1")

        for stage in ALL_STAGES:
            _process(client, stage.value, "forward")
        for stage in reversed(ALL_STAGES):
            _process(client, stage.value, "reverse")

        forward = _stored(db_session, "forward").document
        reverse = _stored(db_session, "reverse").document
        assert forward["intervals"] == reverse["intervals"]
        assert forward["execution"] == reverse["execution"]

    def test_unlinked_activity_gets_analysis_and_metrics(self, client, db_session, make_activity, interval_samples):
        make_activity(interval_samples, activity_id="free-run")

        assert _process(client, "analysis", "free-run").json() == {"ok": True}
        assert _process(client, "metrics", "free-run").json() == {"ok": True}

        document = _stored(db_session, "free-run").document
        assert "intervals" not in document
        assert document["metrics"]["pace_adherence_pct"] is None


class TestStageFailures:
    """Test failure handling."""

    def test_missing_plan_link_marks_stage_failed(self, client, db_session, make_activity, interval_samples):
        make_activity(interval_samples, activity_id="free-run")

        response = _process(client, "summary", "free-run")

        assert response.status_code == 500
        assert response.json()["ok"] is False
        assert "no linked plan" in response.json()["error"]
        stored = _stored(db_session, "free-run")
        assert stored.summary_status == "failed"
        assert stored.summary_error.startswith("ComputationFailure")
        assert stored.document == {}
        # Other stages are unaffected
        assert stored.metrics_status == "pending"

    def test_empty_sample_stream_fails(self, client, db_session, make_activity):
        make_activity([], activity_id="empty")

        response = _process(client, "metrics", "empty")

        assert response.status_code == 500
        assert _stored(db_session, "empty").metrics_status == "failed"

    def test_malformed_plan_steps_fail(self, client, db_session, make_plan, make_activity, interval_samples):
        make_plan([{"kind": "sprint", "duration_s": 60}], plan_id="bad-plan")
        make_activity(interval_samples, activity_id="a1", planned_workout_id="bad-plan")

        response = _process(client, "score", "a1")

        assert response.status_code == 500
        assert _stored(db_session, "a1").score_status == "failed"

    def test_retry_after_failure_clears_error(
        self, client, db_session, make_plan, make_activity, interval_plan_steps, interval_samples
    ):
        make_plan(interval_plan_steps, plan_id="plan-1")
        make_activity(interval_samples, activity_id="a1")
        assert _process(client, "score", "a1").status_code == 500

        activity = db_session.get(Activity, "a1")
        activity.planned_workout_id = "plan-1"
        db_session.commit()

        assert _process(client, "score", "a1").json() == {"ok": True}
        stored = _stored(db_session, "a1")
        assert stored.score_status == "complete"
        assert stored.score_error is None

    def test_unexpected_error_marks_stage_failed(self, db_session, linked_activity):
        def broken(context):
            return {"metrics": {"avg_pace": context.samples[len(context.samples)].pace}}

        outcome = run_stage(StageName.METRICS, "activity-42", broken)

        assert outcome.ok is False
        assert outcome.error.startswith("IndexError")
        stored = _stored(db_session)
        assert stored.metrics_status == "failed"
        assert stored.metrics_error == outcome.error
        assert stored.document == {}

    def test_key_error_in_computation_is_not_left_processing(self, db_session, linked_activity):
        def broken(context):
            raise KeyError("heart_rate")

        outcome = run_stage(StageName.ANALYSIS, "activity-42", broken)

        assert outcome.to_response() == {"ok": False, "error": "KeyError: 'heart_rate'"}
        assert _stored(db_session).analysis_status == "failed"

    def test_unknown_activity_is_404(self, client, test_engine):
        assert _process(client, "summary", "missing").status_code == 404

    def test_unknown_stage_is_rejected(self, client, linked_activity):
        assert _process(client, "coach").status_code == 422


class TestStatusSurface:
    """Test status and document read endpoints."""

    def test_status_endpoint(self, client, linked_activity):
        _process(client, "metrics")

        body = client.get("/activities/activity-42/status").json()

        assert body["planned_workout_id"] == "plan-1"
        assert body["stages"]["metrics"]["status"] == "complete"
        assert body["stages"]["metrics"]["stale"] is False
        assert body["stages"]["summary"]["status"] == "pending"

    def test_document_endpoint(self, client, linked_activity):
        _process(client, "metrics")

        body = client.get("/activities/activity-42/document").json()

        assert body["document_version"] == 1
        assert set(body["document"]) == {"metrics"}

    def test_unknown_activity(self, client, test_engine):
        assert client.get("/activities/missing/status").status_code == 404
        assert client.get("/activities/missing/document").status_code == 404

    def test_long_processing_is_flagged_stale(self):
        now = datetime(2024, 3, 12, 8, 0, tzinfo=timezone.utc)
        activity = Activity(id="a1", user_id="u1", document={}, document_version=0)
        for stage in ALL_STAGES:
            setattr(activity, f"{stage.value}_status", "pending")
        activity.analysis_status = "processing"
        activity.analysis_updated_at = now - timedelta(minutes=10)
        activity.score_status = "processing"
        activity.score_updated_at = now - timedelta(seconds=30)

        report = stage_status_report(activity, stuck_after_seconds=300, now=now)

        assert report["stages"][StageName.ANALYSIS.value]["stale"] is True
        assert report["stages"][StageName.SCORE.value]["stale"] is False
        assert report["stages"][StageName.SUMMARY.value]["stale"] is False
