"""Tests for the orchestrator's HTTP client."""

import json

import httpx
import pytest

from app.config.settings import settings
from app.orchestrator import client
from app.orchestrator.client import LinkerUnavailableError, call_linker, trigger_stage
from app.stages.status import StageName


@pytest.fixture
def transport_requests(monkeypatch):
    """Route the shared client through a mock transport; returns (requests, set_handler)."""
    requests: list[httpx.Request] = []
    handlers = {"handler": lambda request: httpx.Response(200, json={"ok": True})}

    def dispatch(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handlers["handler"](request)

    monkeypatch.setattr(settings, "stage_base_url", "http://stages.test")
    monkeypatch.setattr(settings, "linker_url", "http://linker.test")
    monkeypatch.setattr(client, "_client", httpx.AsyncClient(transport=httpx.MockTransport(dispatch)))

    def set_handler(handler):
        handlers["handler"] = handler

    return requests, set_handler


class TestCallLinker:
    """Test the awaited linker call."""

    @pytest.mark.asyncio
    async def test_posts_link_request(self, transport_requests):
        requests, set_handler = transport_requests
        set_handler(lambda request: httpx.Response(200, json={"linked": True, "planned_workout_id": "plan-1"}))

        body = await call_linker("activity-42", "plan-1")

        assert body == {"linked": True, "planned_workout_id": "plan-1"}
        assert str(requests[0].url) == "http://linker.test/link"
        assert json.loads(requests[0].content) == {
            "activity_id": "activity-42",
            "planned_workout_id": "plan-1",
            "trigger_stages": False,
        }

    @pytest.mark.asyncio
    async def test_error_status_raises(self, transport_requests):
        _, set_handler = transport_requests
        set_handler(lambda request: httpx.Response(409, json={"detail": "belongs to another user"}))

        with pytest.raises(LinkerUnavailableError, match="409"):
            await call_linker("activity-42", "plan-1")

    @pytest.mark.asyncio
    async def test_transport_error_raises(self, transport_requests):
        _, set_handler = transport_requests

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        set_handler(refuse)

        with pytest.raises(LinkerUnavailableError):
            await call_linker("activity-42", None)


class TestTriggerStage:
    """Test fire-and-forget stage calls."""

    @pytest.mark.asyncio
    async def test_posts_to_stage_endpoint(self, transport_requests):
        requests, _ = transport_requests

        body = await trigger_stage(StageName.SCORE, "activity-42")

        assert body == {"ok": True}
        assert str(requests[0].url) == "http://stages.test/stages/score/process"

    @pytest.mark.asyncio
    async def test_failed_stage_is_logged_not_raised(self, transport_requests):
        _, set_handler = transport_requests
        set_handler(lambda request: httpx.Response(500, json={"ok": False, "error": "ComputationFailure: boom"}))

        assert await trigger_stage(StageName.SUMMARY, "activity-42") is None

    @pytest.mark.asyncio
    async def test_unreachable_stage_is_logged_not_raised(self, transport_requests):
        _, set_handler = transport_requests

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        set_handler(refuse)

        assert await trigger_stage(StageName.METRICS, "activity-42") is None

    def test_linker_url_falls_back_to_stage_base_url(self, monkeypatch):
        monkeypatch.setattr(settings, "stage_base_url", "http://stages.test")
        monkeypatch.setattr(settings, "linker_url", "")

        assert settings.effective_linker_url == "http://stages.test"
