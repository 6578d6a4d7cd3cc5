"""Polling mission scheduler with at-most-one active run per mission.

Responsibilities:
- Tick on a fixed interval (and on demand) and dispatch due missions in
  priority order through a pluggable executor.
- Guarantee a mission never has two overlapping runs in this process.
- Record each run's start and result through the mission service.
- Publish lifecycle telemetry and persist a runtime snapshot after every
  meaningful transition.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Set, Union

from research_missions.domain.errors import SchedulerDestroyedError
from research_missions.domain.missions import MissionRecord
from research_missions.domain.scheduler import (
    PERSIST_REASON_DESTROYED,
    PERSIST_REASON_RESTORED,
    PERSIST_REASON_STARTED,
    PERSIST_REASON_STOPPED,
    PERSIST_REASON_TICK_COMPLETE,
    PERSIST_REASON_TICK_ERROR,
    PERSIST_REASON_TICK_STARTED,
    SKIP_REASON_ALREADY_RUNNING,
    SKIP_REASON_DISABLED,
    SKIP_REASON_MARK_RUNNING_FAILED,
    SKIP_REASON_NOT_DUE,
    ExecutorResult,
    RunFailed,
    RunOutcome,
    RunSkipped,
    RunSucceeded,
    SchedulerStateSnapshot,
    TickReport,
)
from research_missions.events.event_bus import EventBus
from research_missions.observability.structured_log import log_json
from research_missions.persistence.scheduler_state_store import SchedulerStateStore
from research_missions.services.mission_service import MissionFilter, MissionService
from research_missions.services.mission_telemetry import (
    EVENT_MISSION_COMPLETED,
    EVENT_MISSION_DUE,
    EVENT_MISSION_ERROR,
    EVENT_MISSION_FAILED,
    EVENT_MISSION_SKIPPED,
    EVENT_MISSION_STARTED,
    EVENT_SCHEDULER_ERROR,
    EVENT_SCHEDULER_STARTED,
    EVENT_SCHEDULER_STATE,
    EVENT_SCHEDULER_STOPPED,
    EVENT_SCHEDULER_TICK,
    EVENT_SCHEDULER_TICK_COMPLETE,
    MissionTelemetry,
)
from research_missions.util import short_error

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 30_000
MIN_INTERVAL_MS = 10
SKIP_REASON_NOT_FOUND = "not found"

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class ExecutorContext:
    logger: logging.Logger
    telemetry: MissionTelemetry
    clock: Clock
    controller: MissionService
    # Advisory: set when the scheduler stops or is destroyed.
    cancel_event: asyncio.Event
    forced: bool = False


MissionExecutorFn = Callable[[MissionRecord, ExecutorContext], Any]


async def noop_executor(mission: MissionRecord, ctx: ExecutorContext) -> ExecutorResult:
    ctx.logger.info("mission=%s has no executor configured; recording a no-op run", mission.mission_id)
    return ExecutorResult(success=True, result={"note": "no-op executor"})


def coerce_executor_result(value: Any) -> ExecutorResult:
    if value is None:
        return ExecutorResult(success=True)
    if isinstance(value, ExecutorResult):
        return value
    if isinstance(value, bool):
        return ExecutorResult(success=value)
    if isinstance(value, Mapping):
        success = bool(value.get("success", True))
        error = value.get("error")
        return ExecutorResult(
            success=success,
            result=value.get("result"),
            error=str(error) if error is not None else None,
        )
    return ExecutorResult(success=True, result=value)


def dispatch_order(mission: MissionRecord):
    """Sort key: higher priority first, then earlier next run, then id."""
    return (-mission.priority, mission.next_run_at, mission.mission_id)


class MissionScheduler:
    """Dispatch due missions through an executor.

    Usage::

        async def executor(mission, ctx):
            ctx.logger.info("running %s", mission.name)
            return {"success": True, "result": {"items": 3}}

        scheduler = MissionScheduler(service, executor=executor, telemetry=telemetry,
                                     state_store=state_store, interval_ms=30_000)
        await scheduler.start()          # background loop
        report = await scheduler.trigger()   # immediate tick
        outcome = await scheduler.run_mission("mission-id", forced=True)
        await scheduler.destroy()
    """

    def __init__(
        self,
        service: MissionService,
        executor: Optional[MissionExecutorFn] = None,
        telemetry: Optional[MissionTelemetry] = None,
        state_store: Optional[SchedulerStateStore] = None,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        clock: Optional[Clock] = None,
    ) -> None:
        self._service = service
        self._executor: MissionExecutorFn = executor or noop_executor
        self._telemetry = telemetry or MissionTelemetry(EventBus(), enabled=False)
        self._state_store = state_store
        self._interval_ms = max(MIN_INTERVAL_MS, int(interval_ms))
        self._clock: Clock = clock or service.now

        self._active_runs: Set[str] = set()
        self._ticking = False
        self._destroyed = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._wake_event: Optional[asyncio.Event] = None
        self._cancel_event = asyncio.Event()

        self._last_tick_started_at: Optional[datetime] = None
        self._last_tick_completed_at: Optional[datetime] = None
        self._last_tick_duration_ms: Optional[int] = None
        self._last_tick_error: Optional[str] = None
        self._last_tick_evaluated = 0
        self._last_tick_launched = 0
        self._last_tick_failed = 0
        self._last_persisted_at: Optional[datetime] = None
        self._last_persist_reason: Optional[str] = None

        self._restored = state_store is None
        self._restore_task: Optional[asyncio.Task] = None
        if state_store is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                self._restore_task = loop.create_task(self.restore_state(), name="mission-scheduler-restore")

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    @property
    def interval_ms(self) -> int:
        return self._interval_ms

    @property
    def telemetry(self) -> MissionTelemetry:
        return self._telemetry

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_destroyed(self) -> bool:
        return self._destroyed

    def active_runs(self) -> List[str]:
        return sorted(self._active_runs)

    def set_executor(self, executor: Optional[MissionExecutorFn]) -> None:
        self._executor = executor or noop_executor

    async def start(self) -> bool:
        """Start the background loop. Returns False if it was already running."""
        if self._destroyed:
            raise SchedulerDestroyedError()
        if self.is_running():
            return False
        await self._ensure_restored()
        await self._service.recover_interrupted_runs(self._active_runs)
        self._stop_event = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._cancel_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="mission-scheduler-loop")
        logger.info("Mission scheduler started interval_ms=%d", self._interval_ms)
        self._emit(EVENT_SCHEDULER_STARTED, intervalMs=self._interval_ms)
        await self._publish_state(PERSIST_REASON_STARTED)
        return True

    async def stop(self) -> bool:
        """Stop the loop after any in-flight tick. Returns False if it was not running."""
        task = self._task
        if task is None:
            return False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._wake_event is not None:
            self._wake_event.set()
        self._cancel_event.set()
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        self._task = None
        logger.info("Mission scheduler stopped")
        self._emit(EVENT_SCHEDULER_STOPPED)
        await self._publish_state(PERSIST_REASON_STOPPED)
        return True

    async def destroy(self) -> None:
        if self._destroyed:
            return
        await self.stop()
        self._destroyed = True
        self._cancel_event.set()
        restore_task = self._restore_task
        if restore_task is not None and not restore_task.done():
            restore_task.cancel()
            try:
                await restore_task
            except asyncio.CancelledError:
                pass
        await self._publish_state(PERSIST_REASON_DESTROYED)

    async def trigger(self) -> TickReport:
        if self._destroyed:
            raise SchedulerDestroyedError()
        await self._ensure_restored()
        return await self._evaluate()

    async def run_mission(self, mission_or_id: Union[MissionRecord, str], forced: bool = False) -> RunOutcome:
        if self._destroyed:
            raise SchedulerDestroyedError()
        if isinstance(mission_or_id, MissionRecord):
            mission = mission_or_id
        else:
            mission = await self._service.require_mission(str(mission_or_id))
        return await self._run_mission(mission, forced=forced)

    def get_state(self) -> SchedulerStateSnapshot:
        return SchedulerStateSnapshot(
            running=self.is_running(),
            interval_ms=self._interval_ms,
            destroyed=self._destroyed,
            active_run_count=len(self._active_runs),
            last_tick_started_at=self._last_tick_started_at,
            last_tick_completed_at=self._last_tick_completed_at,
            last_tick_duration_ms=self._last_tick_duration_ms,
            last_tick_error=self._last_tick_error,
            last_tick_evaluated=self._last_tick_evaluated,
            last_tick_launched=self._last_tick_launched,
            last_tick_failed=self._last_tick_failed,
            last_persisted_at=self._last_persisted_at,
            last_persist_reason=self._last_persist_reason,
        )

    async def restore_state(self) -> Optional[SchedulerStateSnapshot]:
        """Load the last persisted snapshot into the tick metrics.

        Never marks the loop as running and never overwrites metrics from a
        tick that already happened in this process.
        """
        if self._state_store is None:
            self._restored = True
            return None
        snapshot = await self._state_store.load_state()
        self._restored = True
        if snapshot is None:
            return None
        if self._last_tick_started_at is None:
            self._last_tick_started_at = snapshot.last_tick_started_at
            self._last_tick_completed_at = snapshot.last_tick_completed_at
            self._last_tick_duration_ms = snapshot.last_tick_duration_ms
            self._last_tick_error = snapshot.last_tick_error
            self._last_tick_evaluated = snapshot.last_tick_evaluated
            self._last_tick_launched = snapshot.last_tick_launched
            self._last_tick_failed = snapshot.last_tick_failed
        if self._last_persisted_at is None:
            self._last_persisted_at = snapshot.last_persisted_at
            self._last_persist_reason = snapshot.last_persist_reason
        self._emit(EVENT_SCHEDULER_STATE, reason=PERSIST_REASON_RESTORED, state=self.get_state().to_dict())
        return snapshot

    # ------------------------------------------------------------------
    # Loop and tick
    # ------------------------------------------------------------------

    async def _ensure_restored(self) -> None:
        if self._restored:
            return
        task = self._restore_task
        if task is not None and not task.done() and task.get_loop() is asyncio.get_running_loop():
            await task
            return
        await self.restore_state()

    async def _run_loop(self) -> None:
        assert self._stop_event is not None and self._wake_event is not None
        while not self._stop_event.is_set():
            try:
                await self._evaluate()
            except Exception:
                logger.exception("Mission scheduler tick crashed")
            if self._stop_event.is_set():
                break
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=self._interval_ms / 1000.0)
            except asyncio.TimeoutError:
                pass
            self._wake_event.clear()

    async def _evaluate(self) -> TickReport:
        started = self._clock()
        if self._ticking:
            logger.debug("Mission scheduler tick already in progress; skipping")
            return TickReport(started_at=started, completed_at=started, overlapped=True)
        self._ticking = True
        try:
            self._last_tick_started_at = started
            self._last_tick_error = None
            self._emit(EVENT_SCHEDULER_TICK, startedAt=started)
            await self._publish_state(PERSIST_REASON_TICK_STARTED)

            evaluated = launched = failed = skipped = 0
            errors: List[str] = []
            fatal: Optional[str] = None
            try:
                missions = await self._service.list_missions(MissionFilter())
                evaluated = len(missions)
                due = sorted(
                    (mission for mission in missions if mission.enable and mission.is_due(started)),
                    key=dispatch_order,
                )
                for mission in due:
                    self._emit(EVENT_MISSION_DUE, mission=mission)
                    try:
                        outcome = await self._run_mission(mission, forced=False)
                    except Exception as exc:
                        failed += 1
                        errors.append(f"{mission.mission_id}: {short_error(exc) or exc.__class__.__name__}")
                        continue
                    if isinstance(outcome, RunSkipped):
                        skipped += 1
                        continue
                    launched += 1
                    if isinstance(outcome, RunFailed):
                        failed += 1
            except Exception as exc:
                fatal = short_error(exc) or exc.__class__.__name__
                logger.exception("Mission scheduler tick failed")
                self._emit(EVENT_SCHEDULER_ERROR, error=fatal)

            completed = self._clock()
            duration_ms = max(0, int((completed - started).total_seconds() * 1000))
            error = fatal or ("; ".join(errors) if errors else None)
            self._last_tick_completed_at = completed
            self._last_tick_duration_ms = duration_ms
            self._last_tick_error = error
            self._last_tick_evaluated = evaluated
            self._last_tick_launched = launched
            self._last_tick_failed = failed
            report = TickReport(
                started_at=started,
                completed_at=completed,
                duration_ms=duration_ms,
                evaluated=evaluated,
                launched=launched,
                failed=failed,
                skipped=skipped,
                error=error,
            )
            self._emit(EVENT_SCHEDULER_TICK_COMPLETE, **report.to_dict())
            log_json(
                logger,
                "mission_scheduler.tick",
                level=logging.INFO if launched or error else logging.DEBUG,
                evaluated=evaluated,
                launched=launched,
                failed=failed,
                skipped=skipped,
                duration_ms=duration_ms,
                error=error,
            )
            await self._publish_state(PERSIST_REASON_TICK_ERROR if error else PERSIST_REASON_TICK_COMPLETE)
            return report
        finally:
            self._ticking = False

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _run_mission(self, mission: MissionRecord, forced: bool) -> RunOutcome:
        mission_id = mission.mission_id
        if mission_id in self._active_runs:
            return self._skip(mission, SKIP_REASON_ALREADY_RUNNING, forced)
        # Claimed before the first await so concurrent callers see it.
        self._active_runs.add(mission_id)
        try:
            current = await self._service.get_mission(mission_id)
            if current is None:
                return self._skip(mission, SKIP_REASON_NOT_FOUND, forced)
            if not forced and not current.enable:
                return self._skip(current, SKIP_REASON_DISABLED, forced)
            if not forced and not current.is_due(self._clock()):
                return self._skip(current, SKIP_REASON_NOT_DUE, forced)

            try:
                running = await self._service.record_run_start(mission_id, self._clock())
            except Exception as exc:
                logger.warning("mission=%s could not be marked running: %s", mission_id, exc)
                return self._skip(current, SKIP_REASON_MARK_RUNNING_FAILED, forced, error=short_error(exc))

            self._emit(EVENT_MISSION_STARTED, mission=running, forced=forced)
            result = await self._invoke_executor(running, forced)
            finished = self._clock()
            try:
                final = await self._service.record_run_result(
                    mission_id,
                    finished,
                    success=result.success,
                    error=result.error,
                )
            except Exception as exc:
                logger.exception("mission=%s failed to record run result", mission_id)
                self._emit(EVENT_MISSION_ERROR, mission=running, forced=forced, error=short_error(exc))
                raise

            duration_ms = 0
            if final.last_run_at is not None and final.last_finished_at is not None:
                duration_ms = int((final.last_finished_at - final.last_run_at).total_seconds() * 1000)
            if result.success:
                logger.info("mission=%s completed duration_ms=%d", mission_id, duration_ms)
                self._emit(
                    EVENT_MISSION_COMPLETED,
                    mission=final,
                    forced=forced,
                    durationMs=duration_ms,
                    result=result.result,
                )
                return RunSucceeded(mission=final, result=result.result)
            error = final.last_run_error or short_error(result.error or "Unknown error")
            logger.warning("mission=%s failed: %s", mission_id, error)
            self._emit(EVENT_MISSION_FAILED, mission=final, forced=forced, durationMs=duration_ms, error=error)
            return RunFailed(mission=final, error=error)
        finally:
            self._active_runs.discard(mission_id)

    async def _invoke_executor(self, mission: MissionRecord, forced: bool) -> ExecutorResult:
        ctx = ExecutorContext(
            logger=logging.getLogger(f"{__name__}.executor"),
            telemetry=self._telemetry,
            clock=self._clock,
            controller=self._service,
            cancel_event=self._cancel_event,
            forced=forced,
        )
        try:
            value = self._executor(mission, ctx)
            if inspect.isawaitable(value):
                value = await value
        except Exception as exc:
            logger.warning("mission=%s executor raised %s: %s", mission.mission_id, exc.__class__.__name__, exc)
            return ExecutorResult(success=False, error=short_error(exc) or exc.__class__.__name__)
        return coerce_executor_result(value)

    def _skip(self, mission: MissionRecord, reason: str, forced: bool, error: Optional[str] = None) -> RunSkipped:
        logger.debug("mission=%s skipped: %s", mission.mission_id, reason)
        extra = {"error": error} if error else {}
        self._emit(EVENT_MISSION_SKIPPED, mission=mission, reason=reason, forced=forced, **extra)
        return RunSkipped(mission=mission, reason=reason)

    # ------------------------------------------------------------------
    # Telemetry and state
    # ------------------------------------------------------------------

    def _emit(self, event: str, mission: Optional[MissionRecord] = None, **data: Any) -> None:
        try:
            self._telemetry.emit(event, mission=mission, **data)
        except Exception:
            logger.exception("Failed to emit mission telemetry event=%s", event)

    async def _publish_state(self, reason: str) -> None:
        self._last_persisted_at = self._clock()
        self._last_persist_reason = reason
        snapshot = self.get_state()
        if self._state_store is not None:
            try:
                await self._state_store.save_state(snapshot, reason)
            except Exception as exc:
                logger.warning("Failed to persist scheduler state (%s): %s", reason, exc)
        self._emit(EVENT_SCHEDULER_STATE, reason=reason, state=snapshot.to_dict())
