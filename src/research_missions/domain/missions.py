"""Mission domain records and their JSON wire form."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple


# ---------------------------------------------------------------------------
# Status and schedule constants
# ---------------------------------------------------------------------------

MISSION_STATUS_IDLE = "idle"
MISSION_STATUS_QUEUED = "queued"
MISSION_STATUS_RUNNING = "running"
MISSION_STATUS_PAUSED = "paused"
MISSION_STATUS_DISABLED = "disabled"
MISSION_STATUS_FAILED = "failed"
MISSION_STATUS_COMPLETED = "completed"

MISSION_STATUSES: FrozenSet[str] = frozenset(
    [
        MISSION_STATUS_IDLE,
        MISSION_STATUS_QUEUED,
        MISSION_STATUS_RUNNING,
        MISSION_STATUS_PAUSED,
        MISSION_STATUS_DISABLED,
        MISSION_STATUS_FAILED,
        MISSION_STATUS_COMPLETED,
    ]
)

# Statuses that keep next_run_at cleared until an operator intervenes.
PARKED_STATUSES: FrozenSet[str] = frozenset(
    [MISSION_STATUS_PAUSED, MISSION_STATUS_FAILED, MISSION_STATUS_COMPLETED]
)

SCHEDULE_KIND_INTERVAL = "interval"
SCHEDULE_KIND_CRON = "cron"
SCHEDULE_KINDS: FrozenSet[str] = frozenset([SCHEDULE_KIND_INTERVAL, SCHEDULE_KIND_CRON])

DEFAULT_TIMEZONE = "UTC"
DEFAULT_PRIORITY = 0
MIN_PRIORITY = 0
MAX_PRIORITY = 10


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime truncated to milliseconds."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utc_now() -> datetime:
    return ensure_utc(datetime.now(timezone.utc))


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    utc = ensure_utc(value)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings, datetimes or epoch milliseconds.

    Raises ValueError for anything else.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return ensure_utc(datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc))
    text = str(value).strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = _parse_loose_iso(text)
    return ensure_utc(parsed)


def _parse_loose_iso(text: str) -> datetime:
    # fromisoformat on 3.10 only accepts 3 or 6 fractional digits.
    head, sep, rest = text.partition(".")
    if not sep:
        raise ValueError(f"Invalid timestamp: {text!r}")
    digits = ""
    for ch in rest:
        if not ch.isdigit():
            break
        digits += ch
    suffix = rest[len(digits):]
    if not digits:
        raise ValueError(f"Invalid timestamp: {text!r}")
    return datetime.fromisoformat(f"{head}.{(digits + '000000')[:6]}{suffix}")


# ---------------------------------------------------------------------------
# Payload freezing
# ---------------------------------------------------------------------------


def freeze_payload(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({str(k): freeze_payload(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze_payload(item) for item in value)
    return value


def thaw_payload(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: thaw_payload(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw_payload(item) for item in value]
    return value


_EMPTY_PAYLOAD: Mapping[str, Any] = MappingProxyType({})


# ---------------------------------------------------------------------------
# Domain records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MissionSchedule:
    kind: str
    interval_minutes: Optional[int] = None
    expression: Optional[str] = None
    timezone: str = DEFAULT_TIMEZONE

    @classmethod
    def interval(cls, minutes: int, timezone: str = DEFAULT_TIMEZONE) -> "MissionSchedule":
        return cls(kind=SCHEDULE_KIND_INTERVAL, interval_minutes=int(minutes), timezone=timezone)

    @classmethod
    def cron(cls, expression: str, timezone: str = DEFAULT_TIMEZONE) -> "MissionSchedule":
        return cls(kind=SCHEDULE_KIND_CRON, expression=expression, timezone=timezone)

    def to_dict(self) -> Dict[str, Any]:
        if self.kind == SCHEDULE_KIND_INTERVAL:
            return {
                "kind": SCHEDULE_KIND_INTERVAL,
                "intervalMinutes": self.interval_minutes,
                "timezone": self.timezone,
            }
        return {"kind": SCHEDULE_KIND_CRON, "cron": self.expression, "timezone": self.timezone}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "MissionSchedule":
        """Shape a persisted schedule without re-validating it."""
        if not isinstance(raw, Mapping):
            raise ValueError("schedule must be an object")
        kind = str(raw.get("kind") or raw.get("type") or "").strip().lower()
        tz_name = str(raw.get("timezone") or DEFAULT_TIMEZONE).strip() or DEFAULT_TIMEZONE
        if not kind:
            kind = SCHEDULE_KIND_INTERVAL if raw.get("intervalMinutes") is not None else SCHEDULE_KIND_CRON
        if kind == SCHEDULE_KIND_INTERVAL:
            return cls.interval(int(raw["intervalMinutes"]), timezone=tz_name)
        if kind == SCHEDULE_KIND_CRON:
            expression = raw.get("cron", raw.get("expression"))
            return cls.cron(str(expression or "").strip(), timezone=tz_name)
        raise ValueError(f"Unknown schedule kind: {kind!r}")


@dataclass(frozen=True)
class MissionRecord:
    mission_id: str
    name: str
    schedule: MissionSchedule
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    priority: int = DEFAULT_PRIORITY
    tags: Tuple[str, ...] = ()
    payload: Mapping[str, Any] = field(default_factory=lambda: _EMPTY_PAYLOAD)
    enable: bool = True
    status: str = MISSION_STATUS_IDLE
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_run_error: Optional[str] = None

    def is_running(self) -> bool:
        return self.status == MISSION_STATUS_RUNNING

    def is_due(self, now: datetime) -> bool:
        return (
            self.next_run_at is not None
            and self.next_run_at <= now
            and self.status != MISSION_STATUS_RUNNING
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.mission_id,
            "name": self.name,
            "description": self.description,
            "schedule": self.schedule.to_dict(),
            "priority": self.priority,
            "tags": list(self.tags),
            "payload": thaw_payload(self.payload),
            "status": self.status,
            "enable": self.enable,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "nextRunAt": format_timestamp(self.next_run_at),
            "lastRunAt": format_timestamp(self.last_run_at),
            "lastFinishedAt": format_timestamp(self.last_finished_at),
            "lastRunError": self.last_run_error,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "MissionRecord":
        mission_id = str(raw.get("id") or "").strip()
        if not mission_id:
            raise ValueError("mission id is required")
        status = str(raw.get("status") or MISSION_STATUS_IDLE).strip().lower()
        if status not in MISSION_STATUSES:
            raise ValueError(f"Unknown mission status: {status!r}")
        created_at = parse_timestamp(raw.get("createdAt"))
        if created_at is None:
            raise ValueError(f"mission {mission_id} has no createdAt")
        payload = raw.get("payload") or {}
        if not isinstance(payload, Mapping):
            raise ValueError(f"mission {mission_id} payload must be an object")
        tags = raw.get("tags") or []
        if not isinstance(tags, list):
            raise ValueError(f"mission {mission_id} tags must be a list")
        return cls(
            mission_id=mission_id,
            name=str(raw.get("name") or ""),
            description=raw.get("description"),
            schedule=MissionSchedule.from_dict(raw.get("schedule") or {}),
            priority=max(MIN_PRIORITY, min(MAX_PRIORITY, int(raw.get("priority") or 0))),
            tags=tuple(str(tag) for tag in tags),
            payload=freeze_payload(payload),
            enable=bool(raw.get("enable", True)),
            status=status,
            created_at=created_at,
            updated_at=parse_timestamp(raw.get("updatedAt")) or created_at,
            next_run_at=parse_timestamp(raw.get("nextRunAt")),
            last_run_at=parse_timestamp(raw.get("lastRunAt")),
            last_finished_at=parse_timestamp(raw.get("lastFinishedAt")),
            last_run_error=raw.get("lastRunError"),
        )
