"""HTTP client for the linker and stage workers."""

from __future__ import annotations

import httpx
from loguru import logger

from app.config.settings import settings
from app.stages.status import StageName

_client: httpx.AsyncClient | None = None


class LinkerUnavailableError(RuntimeError):
    """The linker call failed; no stage may run before linkage is committed."""


def _get_client() -> httpx.AsyncClient:
    """Get or create the shared HTTP client, handling event loop closure."""
    global _client
    if _client is None or _client.is_closed:
        _client = httpx.AsyncClient(timeout=settings.stage_http_timeout_seconds)
    return _client


async def close_client() -> None:
    global _client
    if _client is not None and not _client.is_closed:
        await _client.aclose()
    _client = None


async def call_linker(activity_id: str, planned_workout_id: str | None) -> dict:
    """Link the activity and wait until the link is committed.

    Raises:
        LinkerUnavailableError: On transport errors or non-2xx responses
    """
    url = f"{settings.effective_linker_url}/link"
    try:
        response = await _get_client().post(
            url,
            json={
                "activity_id": activity_id,
                "planned_workout_id": planned_workout_id,
                "trigger_stages": False,
            },
            timeout=settings.linker_http_timeout_seconds,
        )
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise LinkerUnavailableError(
            f"Linker returned {e.response.status_code} for activity {activity_id}: {e.response.text}"
        ) from e
    except httpx.HTTPError as e:
        raise LinkerUnavailableError(f"Linker call failed for activity {activity_id}: {e}") from e

    return response.json()


async def trigger_stage(stage: StageName, activity_id: str) -> dict | None:
    """Fire one stage's /process call. Failures are logged, never raised."""
    url = f"{settings.stage_base_url}/stages/{stage.value}/process"
    try:
        response = await _get_client().post(url, json={"activity_id": activity_id})
    except httpx.HTTPError as e:
        logger.error(f"Stage {stage.value} call failed for activity {activity_id}: {e}")
        return None

    if response.status_code >= 400:
        logger.warning(f"Stage {stage.value} returned {response.status_code} for activity {activity_id}: {response.text}")
        return None

    body = response.json()
    if body.get("skipped"):
        logger.info(f"Stage {stage.value} skipped for activity {activity_id} (already running)")
    return body
