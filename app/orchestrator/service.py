"""Ingest orchestration.

Order of operations for one activity:
1. every stage status goes to pending
2. the linker call is awaited, so the plan link is committed before any stage
   that depends on it can start
3. summary, analysis, score and metrics are fired concurrently and not awaited

Stage failures never reach the caller: each stage records its own status.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field

from loguru import logger

from app.adherence.errors import ActivityNotFoundError
from app.db.models import Activity
from app.db.session import get_session
from app.orchestrator import client
from app.stages.status import ALL_STAGES, StageName, reset_stages

# Strong references to in-flight stage calls so they are not garbage collected
_background_tasks: set[asyncio.Task] = set()


@dataclass
class IngestResult:
    activity_id: str
    linked: bool
    planned_workout_id: str | None
    fired: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def mark_all_pending(activity_id: str) -> None:
    with get_session() as session:
        activity = session.get(Activity, activity_id)
        if activity is None:
            raise ActivityNotFoundError(activity_id)
        reset_stages(activity)


def fire_stages(activity_id: str, stages: tuple[StageName, ...] = ALL_STAGES) -> list[asyncio.Task]:
    """Schedule stage calls without awaiting them."""
    tasks = []
    for stage in stages:
        task = asyncio.create_task(client.trigger_stage(stage, activity_id), name=f"{stage.value}:{activity_id}")
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        tasks.append(task)
    return tasks


async def ingest(activity_id: str, plan_link: str | None = None) -> IngestResult:
    """Reset statuses, await the linker, then fire every stage.

    Raises:
        ActivityNotFoundError: If the activity does not exist
        LinkerUnavailableError: If linking failed (no stage is fired)
    """
    logger.info(f"Ingest requested for activity {activity_id} (plan_link={plan_link})")
    await asyncio.to_thread(mark_all_pending, activity_id)

    link = await client.call_linker(activity_id, plan_link)
    logger.info(f"Activity {activity_id} linkage committed: {link.get('reason')}")

    fire_stages(activity_id)
    return IngestResult(
        activity_id=activity_id,
        linked=bool(link.get("linked")),
        planned_workout_id=link.get("planned_workout_id"),
        fired=[stage.value for stage in ALL_STAGES],
    )
