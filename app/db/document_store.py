"""Atomic, row-locked merge of partial results into activities.document.

Every stage writes through DocumentStore.merge. The activity row is locked
with SELECT ... FOR UPDATE before the stored document is read (BEGIN IMMEDIATE
on SQLite), so two stages merging at the same time serialize on the row
instead of both writing back a copy of the pre-update document.

Merge rules:
- top level: keys the partial does not mention are carried over unchanged
- dict values: merged recursively
- intervals: merged entry by entry, keyed on (planned_step_id, step_index) so
  repeated step ids stay distinct and each stage only replaces its own fields
- a stage may only write the top-level keys and interval fields it owns
"""

from __future__ import annotations

import copy
import json
from datetime import datetime, timezone
from typing import Any

from loguru import logger
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.adherence.errors import ActivityNotFoundError, MalformedDocumentError, OwnershipViolationError
from app.adherence.schemas import ActivityDocument
from app.db.models import Activity

INTERVAL_IDENTITY_FIELDS = frozenset({"planned_step_id", "step_index"})
PLAN_DERIVED_KEYS = frozenset({"intervals", "execution"})

TOP_LEVEL_OWNERSHIP: dict[str, frozenset[str]] = {
    "summary": frozenset({"intervals", "overall"}),
    "analysis": frozenset({"intervals", "analysis"}),
    "score": frozenset({"intervals", "execution"}),
    "metrics": frozenset({"metrics"}),
}

INTERVAL_FIELD_OWNERSHIP: dict[str, frozenset[str]] = {
    "summary": frozenset({"kind", "planned", "executed", "sample_range"}),
    "analysis": frozenset({"granular_metrics"}),
    "score": frozenset({"segment_type", "penalty"}),
    "metrics": frozenset(),
}


def normalize_document(value: Any) -> dict:
    """Coerce a stored document into a mapping.

    Historically some writers double-encoded the document into a JSON string or
    wrapped it in a one-element array. Those shapes are unwrapped; anything
    else that is not an object becomes {}.
    """
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except ValueError:
            logger.warning("Stored document is a non-JSON string, resetting to {}")
            return {}
        return normalize_document(decoded) if not isinstance(decoded, str) else {}
    if isinstance(value, list):
        if len(value) == 1 and isinstance(value[0], (dict, str)):
            logger.warning("Stored document was wrapped in an array, unwrapping")
            return normalize_document(value[0])
        logger.warning(f"Stored document is an array of length {len(value)}, resetting to {{}}")
        return {}
    logger.warning(f"Stored document has unexpected type {type(value).__name__}, resetting to {{}}")
    return {}


def interval_key(interval: dict) -> tuple[Any, Any]:
    """Identity of an interval entry: plan step id plus plan position.

    Plans may repeat a step id (e.g. every rep of a set shares one id), so the
    id alone does not identify an interval.
    """
    return (interval.get("planned_step_id"), interval.get("step_index"))


def _deep_merge(existing: Any, incoming: Any) -> Any:
    if isinstance(existing, dict) and isinstance(incoming, dict):
        merged = dict(existing)
        for key, value in incoming.items():
            merged[key] = _deep_merge(existing.get(key), value) if key in existing else copy.deepcopy(value)
        return merged
    return copy.deepcopy(incoming)


def merge_intervals(existing: list, incoming: list) -> list:
    """Merge interval entries by identity, preserving fields the incoming entries do not carry."""
    merged: list[dict] = [dict(entry) for entry in existing if isinstance(entry, dict)]
    positions = {interval_key(entry): pos for pos, entry in enumerate(merged)}

    for entry in incoming:
        key = interval_key(entry)
        if key in positions:
            pos = positions[key]
            merged[pos] = _deep_merge(merged[pos], entry)
        else:
            positions[key] = len(merged)
            merged.append(copy.deepcopy(entry))

    merged.sort(key=lambda entry: (entry.get("step_index") is None, entry.get("step_index") or 0))
    return merged


def merge_documents(existing: dict, partial: dict) -> dict:
    """Pure merge of a partial document into an existing one."""
    merged = dict(existing)
    for key, value in partial.items():
        if key == "intervals" and isinstance(value, list):
            current = existing.get("intervals")
            merged[key] = merge_intervals(current if isinstance(current, list) else [], value)
        elif key in existing:
            merged[key] = _deep_merge(existing[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def check_ownership(stage: str, partial: dict) -> None:
    """Reject partial documents that touch keys the stage does not own."""
    if stage not in TOP_LEVEL_OWNERSHIP:
        raise OwnershipViolationError(f"Unknown stage '{stage}'")

    foreign_keys = set(partial) - TOP_LEVEL_OWNERSHIP[stage]
    if foreign_keys:
        raise OwnershipViolationError(f"Stage '{stage}' cannot write keys {sorted(foreign_keys)}")

    intervals = partial.get("intervals")
    if intervals is None:
        return
    if not isinstance(intervals, list):
        raise OwnershipViolationError(f"Stage '{stage}' wrote intervals as {type(intervals).__name__}")

    allowed = INTERVAL_FIELD_OWNERSHIP[stage] | INTERVAL_IDENTITY_FIELDS
    for entry in intervals:
        if not isinstance(entry, dict):
            raise OwnershipViolationError(f"Stage '{stage}' wrote a non-object interval")
        foreign_fields = set(entry) - allowed
        if foreign_fields:
            raise OwnershipViolationError(f"Stage '{stage}' cannot write interval fields {sorted(foreign_fields)}")


class DocumentStore:
    """Reads and merges the per-activity document inside the caller's transaction."""

    def __init__(self, session: Session):
        self.session = session

    def _begin_write(self) -> None:
        # SQLite ignores FOR UPDATE, so take the database write lock before reading
        connection = self.session.connection()
        if connection.dialect.name != "sqlite":
            return
        if not connection.connection.dbapi_connection.in_transaction:
            connection.exec_driver_sql("BEGIN IMMEDIATE")

    def _lock_activity(self, activity_id: str) -> Activity:
        self._begin_write()
        # populate_existing: re-read the locked row even if an older copy is in the identity map
        stmt = (
            select(Activity)
            .where(Activity.id == activity_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        activity = self.session.execute(stmt).scalar_one_or_none()
        if activity is None:
            raise ActivityNotFoundError(activity_id)
        return activity

    def read(self, activity_id: str) -> dict:
        """Return the current normalized document (no lock taken)."""
        activity = self.session.get(Activity, activity_id, populate_existing=True)
        if activity is None:
            raise ActivityNotFoundError(activity_id)
        return normalize_document(activity.document)

    def _write(self, activity: Activity, document: dict) -> None:
        try:
            ActivityDocument.model_validate(document)
        except ValidationError as e:
            raise MalformedDocumentError(f"Merged document for activity {activity.id} is invalid: {e}") from e

        activity.document = document
        activity.document_version = (activity.document_version or 0) + 1
        activity.computed_at = datetime.now(timezone.utc)
        self.session.flush()

    def merge(self, activity_id: str, partial: dict, stage: str) -> dict:
        """Merge a stage's partial result into the stored document.

        The row lock is held until the caller's transaction ends.

        Returns:
            The merged document as written.
        """
        partial = normalize_document(partial)
        check_ownership(stage, partial)

        activity = self._lock_activity(activity_id)
        existing = normalize_document(activity.document)
        merged = merge_documents(existing, partial)
        self._write(activity, merged)

        logger.info(
            f"Merged document for activity {activity_id}: stage={stage}, keys={sorted(partial)}, "
            f"version={activity.document_version}"
        )
        return merged

    def _drop_plan_results(self, activity_id: str) -> tuple[Activity, dict]:
        activity = self._lock_activity(activity_id)
        document = normalize_document(activity.document)
        return activity, {key: value for key, value in document.items() if key not in PLAN_DERIVED_KEYS}

    def reset_for_relink(self, activity_id: str) -> dict:
        """Clear plan-derived results before the activity is recomputed against a new plan."""
        activity, document = self._drop_plan_results(activity_id)
        document["intervals"] = []
        self._write(activity, document)
        logger.info(f"Cleared intervals for activity {activity_id} before relink")
        return document

    def clear_plan_results(self, activity_id: str) -> dict:
        """Remove intervals and execution entirely once the activity has no plan."""
        activity, document = self._drop_plan_results(activity_id)
        self._write(activity, document)
        logger.info(f"Cleared plan-derived results for activity {activity_id}")
        return document
