import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from research_missions.config import EXECUTOR_COMMAND, MissionsConfig, load_missions_config
from research_missions.domain.errors import FeatureDisabledError
from research_missions.events.event_bus import EventBus
from research_missions.persistence.mission_store import JsonMissionStore
from research_missions.persistence.scheduler_state_store import SchedulerStateStore
from research_missions.services.command_executor import CommandMissionExecutor
from research_missions.services.mission_scheduler import MissionExecutorFn, MissionScheduler
from research_missions.services.mission_service import Clock, MissionService
from research_missions.services.mission_telemetry import MissionTelemetry
from research_missions.services.mission_templates import MissionTemplatesRepository


logger = logging.getLogger(__name__)


@dataclass
class MissionRuntime:
    """Everything one process needs to serve missions, wired once at startup."""

    config: MissionsConfig
    event_bus: EventBus
    telemetry: MissionTelemetry
    store: JsonMissionStore
    state_store: SchedulerStateStore
    service: MissionService
    scheduler: MissionScheduler
    templates: MissionTemplatesRepository

    def require_enabled(self) -> None:
        if not self.config.enabled:
            raise FeatureDisabledError("Missions feature is disabled.")

    def require_scheduler_enabled(self) -> None:
        self.require_enabled()
        if not self.config.scheduler_enabled:
            raise FeatureDisabledError("Mission scheduler is disabled.")

    async def close(self) -> None:
        await self.scheduler.destroy()
        await self.store.close()


def build_mission_runtime(
    config: Optional[MissionsConfig] = None,
    executor: Optional[MissionExecutorFn] = None,
    clock: Optional[Clock] = None,
    id_factory: Optional[Callable[[], str]] = None,
) -> MissionRuntime:
    cfg = config or load_missions_config()
    data_dir = Path(cfg.data_dir)
    event_bus = EventBus()
    telemetry = MissionTelemetry(event_bus, enabled=cfg.telemetry_enabled, clock=clock)
    store = JsonMissionStore(data_dir=data_dir)
    state_store = SchedulerStateStore(data_dir=data_dir)
    service = MissionService(store, clock=clock, id_factory=id_factory)
    scheduler = MissionScheduler(
        service,
        executor=executor or _build_executor(cfg),
        telemetry=telemetry,
        state_store=state_store,
        interval_ms=cfg.polling_interval_ms,
        clock=clock,
    )
    logger.info(
        "Mission runtime ready data_dir=%s scheduler_enabled=%s telemetry_enabled=%s interval_ms=%d",
        data_dir,
        cfg.scheduler_enabled,
        cfg.telemetry_enabled,
        cfg.polling_interval_ms,
    )
    return MissionRuntime(
        config=cfg,
        event_bus=event_bus,
        telemetry=telemetry,
        store=store,
        state_store=state_store,
        service=service,
        scheduler=scheduler,
        templates=MissionTemplatesRepository(cfg.templates_dir),
    )


def _build_executor(config: MissionsConfig) -> Optional[MissionExecutorFn]:
    if config.executor == EXECUTOR_COMMAND:
        return CommandMissionExecutor(timeout_sec=config.command_timeout_sec)
    return None
