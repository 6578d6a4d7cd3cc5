"""Schedule validation and next-run computation for interval and cron missions."""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from research_missions.domain.errors import InvalidMissionError
from research_missions.domain.missions import (
    DEFAULT_TIMEZONE,
    SCHEDULE_KIND_CRON,
    SCHEDULE_KIND_INTERVAL,
    SCHEDULE_KINDS,
    MissionSchedule,
    ensure_utc,
)
from research_missions.services.cron_utils import CronParseError, cron_next_run, parse_cron, resolve_timezone

logger = logging.getLogger(__name__)

_SCHEDULE_KEYS = frozenset(["kind", "type", "intervalMinutes", "cron", "expression", "timezone"])


def normalize_schedule(raw: Any, field: str = "schedule") -> MissionSchedule:
    """Shape operator input into a validated ``MissionSchedule``.

    Accepts ``{"intervalMinutes": 60}``, ``{"cron": "0 9 * * *"}``, an explicit
    ``kind`` (or legacy ``type``) tag, and ``expression`` as an alias of ``cron``.
    """
    if isinstance(raw, MissionSchedule):
        validate_schedule(raw, field=field)
        return raw
    if not isinstance(raw, Mapping):
        raise InvalidMissionError("Mission schedule must be an object", field=field)
    unknown = sorted(str(key) for key in raw.keys() if key not in _SCHEDULE_KEYS)
    if unknown:
        raise InvalidMissionError(f"Unknown schedule field: {unknown[0]}", field=f"{field}.{unknown[0]}")

    tz_raw = raw.get("timezone")
    if tz_raw is None:
        tz_name = DEFAULT_TIMEZONE
    elif isinstance(tz_raw, str) and tz_raw.strip():
        tz_name = tz_raw.strip()
    else:
        raise InvalidMissionError("timezone must be a non-empty string", field=f"{field}.timezone")

    kind = str(raw.get("kind") or raw.get("type") or "").strip().lower()
    expression = raw.get("cron", raw.get("expression"))
    if not kind:
        if raw.get("intervalMinutes") is not None:
            kind = SCHEDULE_KIND_INTERVAL
        elif expression is not None:
            kind = SCHEDULE_KIND_CRON
        else:
            raise InvalidMissionError("Mission schedule requires either intervalMinutes or cron", field=field)
    if kind not in SCHEDULE_KINDS:
        raise InvalidMissionError(f"Unknown schedule kind '{kind}'", field=f"{field}.kind")

    if kind == SCHEDULE_KIND_INTERVAL:
        schedule = MissionSchedule.interval(
            _normalize_interval(raw.get("intervalMinutes"), f"{field}.intervalMinutes"),
            timezone=tz_name,
        )
    else:
        if expression is None or not isinstance(expression, str):
            raise InvalidMissionError("cron expression must be a string", field=f"{field}.cron")
        schedule = MissionSchedule.cron(" ".join(expression.split()), timezone=tz_name)
    validate_schedule(schedule, field=field)
    return schedule


def validate_schedule(schedule: MissionSchedule, field: str = "schedule") -> None:
    if schedule.kind == SCHEDULE_KIND_INTERVAL:
        if schedule.interval_minutes is None or schedule.interval_minutes <= 0:
            raise InvalidMissionError("intervalMinutes must be a positive number", field=f"{field}.intervalMinutes")
    elif schedule.kind == SCHEDULE_KIND_CRON:
        expression = (schedule.expression or "").strip()
        if not expression:
            raise InvalidMissionError("cron expression must be a non-empty string", field=f"{field}.cron")
        try:
            parse_cron(expression)
        except CronParseError as exc:
            raise InvalidMissionError(f"Invalid cron expression '{expression}': {exc}", field=f"{field}.cron") from exc
    else:
        raise InvalidMissionError(f"Unknown schedule kind '{schedule.kind}'", field=f"{field}.kind")
    try:
        resolve_timezone(schedule.timezone)
    except CronParseError as exc:
        raise InvalidMissionError(str(exc), field=f"{field}.timezone") from exc


def next_after(schedule: MissionSchedule, baseline: datetime) -> Optional[datetime]:
    """Return the next run strictly after ``baseline``, or None if it cannot be computed."""
    baseline = ensure_utc(baseline)
    if schedule.kind == SCHEDULE_KIND_INTERVAL:
        minutes = schedule.interval_minutes or 0
        if minutes <= 0:
            logger.warning("Ignoring non-positive interval schedule: %s", schedule)
            return None
        return baseline + timedelta(minutes=minutes)
    try:
        nxt = cron_next_run(schedule.expression or "", baseline, schedule.timezone)
    except CronParseError as exc:
        logger.warning("Failed to compute next cron run for '%s' (%s): %s", schedule.expression, schedule.timezone, exc)
        return None
    if nxt is None:
        logger.warning("Cron expression '%s' has no upcoming run", schedule.expression)
        return None
    return ensure_utc(nxt)


def summarize_schedule(schedule: MissionSchedule) -> str:
    if schedule.kind == SCHEDULE_KIND_INTERVAL:
        return f"every {schedule.interval_minutes}m ({schedule.timezone})"
    return f"cron:{schedule.expression} ({schedule.timezone})"


def _normalize_interval(value: Any, field: str) -> int:
    if isinstance(value, bool) or value is None:
        raise InvalidMissionError("intervalMinutes must be a positive number", field=field)
    try:
        minutes = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidMissionError("intervalMinutes must be a positive number", field=field) from exc
    if not math.isfinite(minutes) or minutes <= 0:
        raise InvalidMissionError("intervalMinutes must be a positive number", field=field)
    return int(math.ceil(minutes))
