"""Mission lifecycle telemetry published on the in-process event bus."""
from __future__ import annotations

import logging
from dataclasses import asdict, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from research_missions.domain.missions import MissionRecord, format_timestamp, thaw_payload, utc_now
from research_missions.events.event_bus import EventBus
from research_missions.services.schedule_evaluator import summarize_schedule

logger = logging.getLogger(__name__)

TELEMETRY_MESSAGE_TYPE = "mission_event"
MAX_TELEMETRY_TAGS = 12

EVENT_SCHEDULER_STARTED = "scheduler_started"
EVENT_SCHEDULER_STOPPED = "scheduler_stopped"
EVENT_SCHEDULER_TICK = "scheduler_tick"
EVENT_SCHEDULER_TICK_COMPLETE = "scheduler_tick_complete"
EVENT_SCHEDULER_ERROR = "scheduler_error"
EVENT_SCHEDULER_STATE = "scheduler_state"
EVENT_MISSION_DUE = "mission_due"
EVENT_MISSION_STARTED = "mission_started"
EVENT_MISSION_SKIPPED = "mission_skipped"
EVENT_MISSION_COMPLETED = "mission_completed"
EVENT_MISSION_FAILED = "mission_failed"
EVENT_MISSION_ERROR = "mission_error"


def sanitize_mission(mission: Optional[MissionRecord]) -> Optional[Dict[str, Any]]:
    if mission is None:
        return None
    return {
        "id": mission.mission_id,
        "name": mission.name,
        "status": mission.status,
        "priority": mission.priority,
        "enable": mission.enable,
        "schedule": dict(mission.schedule.to_dict(), summary=summarize_schedule(mission.schedule)),
        "tags": list(mission.tags[:MAX_TELEMETRY_TAGS]),
        "nextRunAt": format_timestamp(mission.next_run_at),
        "lastRunAt": format_timestamp(mission.last_run_at),
        "lastFinishedAt": format_timestamp(mission.last_finished_at),
        "lastRunError": mission.last_run_error,
    }


def to_json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, MissionRecord):
        return sanitize_mission(value)
    if isinstance(value, Enum):
        return to_json_safe(value.value)
    if hasattr(value, "to_dict"):
        return to_json_safe(value.to_dict())
    if is_dataclass(value) and not isinstance(value, type):
        return to_json_safe(asdict(value))
    if isinstance(value, Mapping):
        return {str(k): to_json_safe(v) for k, v in thaw_payload(value).items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_safe(item) for item in value]
    return str(value)


class MissionTelemetry:
    """Builds telemetry messages and fans them out to event bus subscribers.

    Message shape::

        {"type": "mission_event", "event": "mission_started",
         "timestamp": "2025-01-01T00:05:00.000Z",
         "data": {"mission": {...sanitized...}, "forced": false}}
    """

    def __init__(self, event_bus: EventBus, enabled: bool = True, clock=None) -> None:
        self._bus = event_bus
        self._enabled = enabled
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    def emit(self, event: str, mission: Optional[MissionRecord] = None, **data: Any) -> Optional[Dict[str, Any]]:
        if not self._enabled:
            return None
        body: Dict[str, Any] = {key: to_json_safe(value) for key, value in data.items()}
        if mission is not None:
            body["mission"] = sanitize_mission(mission)
        message = {
            "type": TELEMETRY_MESSAGE_TYPE,
            "event": event,
            "timestamp": format_timestamp(self._now()),
            "data": body,
        }
        logger.debug("mission telemetry event=%s mission=%s", event, mission.mission_id if mission else "-")
        self._bus.publish(event, message)
        return message

    def _now(self) -> datetime:
        return self._clock() if self._clock is not None else utc_now()
