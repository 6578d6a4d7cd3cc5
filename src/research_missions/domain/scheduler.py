"""Scheduler-side records: runtime snapshots, tick reports and run outcomes."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Union

from research_missions.domain.missions import MissionRecord, format_timestamp, parse_timestamp


SKIP_REASON_ALREADY_RUNNING = "already running"
SKIP_REASON_NOT_DUE = "not due"
SKIP_REASON_DISABLED = "disabled"
SKIP_REASON_MARK_RUNNING_FAILED = "markRunning failed"

PERSIST_REASON_STARTED = "started"
PERSIST_REASON_STOPPED = "stopped"
PERSIST_REASON_DESTROYED = "destroyed"
PERSIST_REASON_TICK_STARTED = "tick_started"
PERSIST_REASON_TICK_COMPLETE = "tick_complete"
PERSIST_REASON_TICK_ERROR = "tick_error"
PERSIST_REASON_RESTORED = "restored"


@dataclass(frozen=True)
class SchedulerStateSnapshot:
    running: bool = False
    interval_ms: int = 0
    destroyed: bool = False
    active_run_count: int = 0
    last_tick_started_at: Optional[datetime] = None
    last_tick_completed_at: Optional[datetime] = None
    last_tick_duration_ms: Optional[int] = None
    last_tick_error: Optional[str] = None
    last_tick_evaluated: int = 0
    last_tick_launched: int = 0
    last_tick_failed: int = 0
    last_persisted_at: Optional[datetime] = None
    last_persist_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "intervalMs": self.interval_ms,
            "destroyed": self.destroyed,
            "activeRunCount": self.active_run_count,
            "lastTickStartedAt": format_timestamp(self.last_tick_started_at),
            "lastTickCompletedAt": format_timestamp(self.last_tick_completed_at),
            "lastTickDurationMs": self.last_tick_duration_ms,
            "lastTickError": self.last_tick_error,
            "lastTickEvaluated": self.last_tick_evaluated,
            "lastTickLaunched": self.last_tick_launched,
            "lastTickFailed": self.last_tick_failed,
            "lastPersistedAt": format_timestamp(self.last_persisted_at),
            "lastPersistReason": self.last_persist_reason,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SchedulerStateSnapshot":
        duration = raw.get("lastTickDurationMs")
        return cls(
            running=bool(raw.get("running", False)),
            interval_ms=int(raw.get("intervalMs") or 0),
            destroyed=bool(raw.get("destroyed", False)),
            active_run_count=int(raw.get("activeRunCount", raw.get("activeRuns")) or 0),
            last_tick_started_at=parse_timestamp(raw.get("lastTickStartedAt")),
            last_tick_completed_at=parse_timestamp(raw.get("lastTickCompletedAt")),
            last_tick_duration_ms=int(duration) if duration is not None else None,
            last_tick_error=raw.get("lastTickError"),
            last_tick_evaluated=int(raw.get("lastTickEvaluated") or 0),
            last_tick_launched=int(raw.get("lastTickLaunched") or 0),
            last_tick_failed=int(raw.get("lastTickFailed") or 0),
            last_persisted_at=parse_timestamp(raw.get("lastPersistedAt")),
            last_persist_reason=raw.get("lastPersistReason", raw.get("reason")),
        )


@dataclass(frozen=True)
class TickReport:
    started_at: datetime
    completed_at: datetime
    duration_ms: int = 0
    evaluated: int = 0
    launched: int = 0
    failed: int = 0
    skipped: int = 0
    error: Optional[str] = None
    overlapped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startedAt": format_timestamp(self.started_at),
            "completedAt": format_timestamp(self.completed_at),
            "durationMs": self.duration_ms,
            "evaluated": self.evaluated,
            "launched": self.launched,
            "failed": self.failed,
            "skipped": self.skipped,
            "error": self.error,
            "overlapped": self.overlapped,
        }


@dataclass(frozen=True)
class ExecutorResult:
    success: bool = True
    result: Any = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Run outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunSucceeded:
    mission: MissionRecord
    result: Any = None

    success = True
    skipped = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "skipped": False,
            "result": self.result,
            "mission": self.mission.to_dict(),
        }


@dataclass(frozen=True)
class RunSkipped:
    mission: Optional[MissionRecord]
    reason: str

    success = False
    skipped = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "skipped": True,
            "reason": self.reason,
            "mission": self.mission.to_dict() if self.mission is not None else None,
        }


@dataclass(frozen=True)
class RunFailed:
    mission: MissionRecord
    error: str = field(default="Unknown error")

    success = False
    skipped = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "skipped": False,
            "error": self.error,
            "mission": self.mission.to_dict(),
        }


RunOutcome = Union[RunSucceeded, RunSkipped, RunFailed]
