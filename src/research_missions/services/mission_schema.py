"""Strict normalization of mission drafts and patches.

Drafts and patches arrive from the HTTP adapter, the CLI and YAML templates as
plain mappings keyed by their JSON names. Unknown keys are rejected, every
field is shaped into its canonical form, and failures raise
``InvalidMissionError`` carrying the offending field path.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from research_missions.domain.errors import InvalidMissionError
from research_missions.domain.missions import (
    DEFAULT_PRIORITY,
    MAX_PRIORITY,
    MIN_PRIORITY,
    MISSION_STATUS_RUNNING,
    MISSION_STATUSES,
    MissionSchedule,
    freeze_payload,
    parse_timestamp,
)
from research_missions.services.schedule_evaluator import normalize_schedule
from research_missions.util import short_error

MAX_TAG_CHARS = 64
_TRUE_VALUES = frozenset(["1", "true", "yes", "on"])
_FALSE_VALUES = frozenset(["0", "false", "no", "off", ""])

DRAFT_FIELDS: FrozenSet[str] = frozenset(
    ["name", "description", "schedule", "priority", "tags", "payload", "enable"]
)
PATCH_FIELDS: FrozenSet[str] = DRAFT_FIELDS | frozenset(
    ["status", "lastRunError", "nextRunAt", "lastRunAt", "lastFinishedAt"]
)

# JSON name -> MissionRecord attribute for patchable fields.
PATCH_ATTRIBUTES: Dict[str, str] = {
    "name": "name",
    "description": "description",
    "schedule": "schedule",
    "priority": "priority",
    "tags": "tags",
    "payload": "payload",
    "enable": "enable",
    "status": "status",
    "lastRunError": "last_run_error",
    "nextRunAt": "next_run_at",
    "lastRunAt": "last_run_at",
    "lastFinishedAt": "last_finished_at",
}


@dataclass(frozen=True)
class MissionDraft:
    name: str
    schedule: MissionSchedule
    description: Optional[str] = None
    priority: int = DEFAULT_PRIORITY
    tags: Tuple[str, ...] = ()
    payload: Mapping[str, Any] = field(default_factory=lambda: freeze_payload({}))
    enable: bool = True


def normalize_mission_draft(draft: Any) -> MissionDraft:
    if isinstance(draft, MissionDraft):
        return draft
    if not isinstance(draft, Mapping):
        raise InvalidMissionError("Mission draft must be an object")
    _reject_unknown(draft, DRAFT_FIELDS)
    if "schedule" not in draft or draft.get("schedule") is None:
        raise InvalidMissionError("Mission schedule is required", field="schedule")
    return MissionDraft(
        name=normalize_name(draft.get("name")),
        description=normalize_description(draft.get("description")),
        schedule=normalize_schedule(draft.get("schedule")),
        priority=DEFAULT_PRIORITY if draft.get("priority") is None else normalize_priority(draft.get("priority")),
        tags=normalize_tags(draft.get("tags")),
        payload=normalize_payload(draft.get("payload")),
        enable=True if draft.get("enable") is None else normalize_enable(draft.get("enable")),
    )


def normalize_mission_patch(patch: Any) -> Dict[str, Any]:
    """Return only the present fields, keyed by their JSON names."""
    if not isinstance(patch, Mapping):
        raise InvalidMissionError("Mission patch must be an object")
    _reject_unknown(patch, PATCH_FIELDS)
    normalized: Dict[str, Any] = {}
    if "name" in patch:
        normalized["name"] = normalize_name(patch["name"])
    if "description" in patch:
        normalized["description"] = normalize_description(patch["description"])
    if "schedule" in patch:
        normalized["schedule"] = normalize_schedule(patch["schedule"])
    if "priority" in patch:
        normalized["priority"] = normalize_priority(patch["priority"])
    if "tags" in patch:
        normalized["tags"] = normalize_tags(patch["tags"])
    if "payload" in patch:
        normalized["payload"] = normalize_payload(patch["payload"])
    if "enable" in patch:
        normalized["enable"] = normalize_enable(patch["enable"])
    if "status" in patch:
        status = normalize_status(patch["status"])
        if status == MISSION_STATUS_RUNNING:
            raise InvalidMissionError("status 'running' is managed by the scheduler", field="status")
        normalized["status"] = status
    if "lastRunError" in patch:
        value = patch["lastRunError"]
        if value is not None and not isinstance(value, str):
            raise InvalidMissionError("lastRunError must be a string when provided", field="lastRunError")
        normalized["lastRunError"] = short_error(value) if value else None
    for key in ("nextRunAt", "lastRunAt", "lastFinishedAt"):
        if key in patch:
            normalized[key] = normalize_timestamp(patch[key], key)
    return normalized


def normalize_name(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidMissionError("Mission name must be a non-empty string", field="name")
    return value.strip()


def normalize_description(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidMissionError("Mission description must be a string when provided", field="description")
    return value.strip()


def normalize_priority(value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidMissionError("Mission priority must be a finite number", field="priority")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidMissionError("Mission priority must be a finite number", field="priority") from exc
    if not math.isfinite(number):
        raise InvalidMissionError("Mission priority must be a finite number", field="priority")
    rounded = int(math.floor(number + 0.5))
    return max(MIN_PRIORITY, min(MAX_PRIORITY, rounded))


def normalize_tags(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise InvalidMissionError("Mission tags must be a list when provided", field="tags")
    seen = []
    for index, tag in enumerate(value):
        if not isinstance(tag, str):
            raise InvalidMissionError("Mission tags must be strings", field=f"tags[{index}]")
        cleaned = tag.strip().lower()
        if not cleaned:
            continue
        if len(cleaned) > MAX_TAG_CHARS:
            raise InvalidMissionError(f"Mission tags must be at most {MAX_TAG_CHARS} characters", field=f"tags[{index}]")
        if cleaned not in seen:
            seen.append(cleaned)
    return tuple(seen)


def normalize_payload(value: Any) -> Mapping[str, Any]:
    if value is None:
        return freeze_payload({})
    if not isinstance(value, Mapping):
        raise InvalidMissionError("Mission payload must be an object when provided", field="payload")
    _check_json_value(value, "payload")
    return freeze_payload(value)


def normalize_enable(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
    raise InvalidMissionError("enable flag must be a boolean-like value", field="enable")


def normalize_status(value: Any) -> str:
    text = str(value or "").strip().lower()
    if text not in MISSION_STATUSES:
        raise InvalidMissionError(f"Invalid mission status '{value}'", field="status")
    return text


def normalize_timestamp(value: Any, field_name: str) -> Optional[datetime]:
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise InvalidMissionError(f"{field_name} must be a valid date or timestamp", field=field_name) from exc


def _reject_unknown(data: Mapping[str, Any], allowed: FrozenSet[str]) -> None:
    unknown = sorted(str(key) for key in data.keys() if key not in allowed)
    if unknown:
        raise InvalidMissionError(f"Unknown mission field: {unknown[0]}", field=unknown[0])


def _check_json_value(value: Any, path: str) -> None:
    if value is None or isinstance(value, (bool, int, str)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidMissionError("payload numbers must be finite", field=path)
        return
    if isinstance(value, Mapping):
        for key, item in value.items():
            if not isinstance(key, str):
                raise InvalidMissionError("payload keys must be strings", field=path)
            _check_json_value(item, f"{path}.{key}")
        return
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _check_json_value(item, f"{path}[{index}]")
        return
    raise InvalidMissionError(f"payload values must be JSON-compatible, got {type(value).__name__}", field=path)
