"""Mission CRUD and run bookkeeping on top of the mission store.

Every read-modify-write goes through ``JsonMissionStore.mutate`` so concurrent
callers observe the same result as some serial order of their calls.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, FrozenSet, Iterable, List, Mapping, Optional, Union

from research_missions.domain.errors import InvalidMissionError, MissionNotFoundError
from research_missions.domain.missions import (
    MISSION_STATUS_DISABLED,
    MISSION_STATUS_FAILED,
    MISSION_STATUS_IDLE,
    MISSION_STATUS_RUNNING,
    MISSION_STATUSES,
    PARKED_STATUSES,
    MissionRecord,
    ensure_utc,
    utc_now,
)
from research_missions.persistence.mission_store import JsonMissionStore
from research_missions.services.mission_schema import (
    PATCH_ATTRIBUTES,
    normalize_mission_draft,
    normalize_mission_patch,
)
from research_missions.services.schedule_evaluator import next_after
from research_missions.util import short_error

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
INTERRUPTED_RUN_ERROR = "Run interrupted before completion"
_RECOMPUTE_TRIGGERS = ("schedule", "enable", "status", "lastRunAt", "lastFinishedAt")


@dataclass(frozen=True)
class MissionFilter:
    statuses: Optional[FrozenSet[str]] = None
    tag: Optional[str] = None
    include_disabled: bool = False

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "MissionFilter":
        """Build a filter from query-style input.

        ``status`` may be a single status, a list, or a comma separated string.
        """
        if not raw:
            return cls()
        statuses = _parse_statuses(raw.get("status", raw.get("statuses")))
        tag = str(raw.get("tag") or "").strip().lower() or None
        include = raw.get("include_disabled", raw.get("includeDisabled", False))
        if isinstance(include, str):
            include = include.strip().lower() in {"1", "true", "yes", "on"}
        return cls(statuses=statuses, tag=tag, include_disabled=bool(include))

    def matches(self, mission: MissionRecord) -> bool:
        if self.statuses is not None and mission.status not in self.statuses:
            return False
        if self.tag and self.tag not in mission.tags:
            return False
        if mission.status == MISSION_STATUS_DISABLED or not mission.enable:
            # Naming "disabled" in the status filter counts as asking for them.
            asked = self.statuses is not None and MISSION_STATUS_DISABLED in self.statuses
            return self.include_disabled or asked
        return True


def _parse_statuses(raw: Any) -> Optional[FrozenSet[str]]:
    if raw is None or raw == "" or raw == []:
        return None
    if isinstance(raw, str):
        items: Iterable[Any] = raw.split(",")
    elif isinstance(raw, (list, tuple, set, frozenset)):
        items = raw
    else:
        raise InvalidMissionError("status filter must be a string or a list", field="status")
    statuses = set()
    for item in items:
        value = str(item or "").strip().lower()
        if not value:
            continue
        if value not in MISSION_STATUSES:
            raise InvalidMissionError(f"Invalid mission status '{item}'", field="status")
        statuses.add(value)
    return frozenset(statuses) or None


class MissionService:
    def __init__(
        self,
        store: JsonMissionStore,
        clock: Optional[Clock] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._store = store
        self._clock = clock or utc_now
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))

    @property
    def store(self) -> JsonMissionStore:
        return self._store

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_missions(
        self,
        mission_filter: Union[MissionFilter, Mapping[str, Any], None] = None,
    ) -> List[MissionRecord]:
        if not isinstance(mission_filter, MissionFilter):
            mission_filter = MissionFilter.from_mapping(mission_filter)
        missions = await self._store.list_missions()
        return [mission for mission in missions if mission_filter.matches(mission)]

    async def get_mission(self, mission_id: str) -> Optional[MissionRecord]:
        return await self._store.get_mission(mission_id)

    async def require_mission(self, mission_id: str) -> MissionRecord:
        mission = await self._store.get_mission(mission_id)
        if mission is None:
            raise MissionNotFoundError(mission_id)
        return mission

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_mission(self, draft: Any, mission_id: Optional[str] = None) -> MissionRecord:
        normalized = normalize_mission_draft(draft)
        new_id = str(mission_id or "").strip() or self._id_factory()
        now = self.now()
        status = MISSION_STATUS_IDLE if normalized.enable else MISSION_STATUS_DISABLED
        mission = MissionRecord(
            mission_id=new_id,
            name=normalized.name,
            description=normalized.description,
            schedule=normalized.schedule,
            priority=normalized.priority,
            tags=normalized.tags,
            payload=normalized.payload,
            enable=normalized.enable,
            status=status,
            created_at=now,
            updated_at=now,
            next_run_at=next_after(normalized.schedule, now) if normalized.enable else None,
        )

        def insert(existing: Optional[MissionRecord]) -> MissionRecord:
            if existing is not None:
                raise InvalidMissionError(f"Mission already exists: {new_id}", field="id")
            return mission

        created = await self._store.mutate(new_id, insert)
        logger.info("mission=%s created name=%r status=%s", created.mission_id, created.name, created.status)
        return created

    async def update_mission(self, mission_id: str, patch: Any) -> MissionRecord:
        normalized = normalize_mission_patch(patch)

        def apply(existing: Optional[MissionRecord]) -> MissionRecord:
            if existing is None:
                raise MissionNotFoundError(mission_id)
            return self._apply_patch(existing, normalized, self.now())

        updated = await self._store.mutate(mission_id, apply)
        logger.info("mission=%s updated fields=%s", mission_id, ",".join(sorted(normalized)) or "-")
        return updated

    async def delete_mission(self, mission_id: str) -> MissionRecord:
        removed = await self._store.remove_mission(mission_id)
        if removed is None:
            raise MissionNotFoundError(mission_id)
        logger.info("mission=%s deleted", mission_id)
        return removed

    async def record_run_start(self, mission_id: str, started_at: Optional[datetime] = None) -> MissionRecord:
        started = ensure_utc(started_at) if started_at is not None else self.now()

        def apply(existing: Optional[MissionRecord]) -> MissionRecord:
            if existing is None:
                raise MissionNotFoundError(mission_id)
            at = started
            if existing.last_finished_at is not None and at < existing.last_finished_at:
                at = existing.last_finished_at
            return replace(
                existing,
                status=MISSION_STATUS_RUNNING,
                last_run_at=at,
                last_run_error=None,
                updated_at=at,
            )

        return await self._store.mutate(mission_id, apply)

    async def record_run_result(
        self,
        mission_id: str,
        finished_at: Optional[datetime] = None,
        success: bool = True,
        error: Optional[str] = None,
    ) -> MissionRecord:
        finished = ensure_utc(finished_at) if finished_at is not None else self.now()

        def apply(existing: Optional[MissionRecord]) -> MissionRecord:
            if existing is None:
                raise MissionNotFoundError(mission_id)
            at = finished
            if existing.last_run_at is not None and at < existing.last_run_at:
                at = existing.last_run_at
            if success:
                return replace(
                    existing,
                    status=MISSION_STATUS_IDLE if existing.enable else MISSION_STATUS_DISABLED,
                    last_finished_at=at,
                    last_run_error=None,
                    next_run_at=next_after(existing.schedule, at) if existing.enable else None,
                    updated_at=at,
                )
            return replace(
                existing,
                status=MISSION_STATUS_FAILED if existing.enable else MISSION_STATUS_DISABLED,
                last_finished_at=at,
                last_run_error=short_error(error or "Unknown error"),
                next_run_at=None,
                updated_at=at,
            )

        return await self._store.mutate(mission_id, apply)

    async def recover_interrupted_runs(self, active_ids: Iterable[str] = ()) -> List[MissionRecord]:
        """Return missions left ``running`` by a previous process to the queue.

        Recovered missions become idle and due immediately; ``last_run_error``
        notes the interruption.
        """
        skip = set(active_ids)
        recovered: List[MissionRecord] = []
        for mission in await self._store.list_missions():
            if mission.status != MISSION_STATUS_RUNNING or mission.mission_id in skip:
                continue
            now = self.now()

            def apply(existing: Optional[MissionRecord]) -> MissionRecord:
                if existing is None or existing.status != MISSION_STATUS_RUNNING:
                    return existing  # type: ignore[return-value]
                enabled = existing.enable
                return replace(
                    existing,
                    status=MISSION_STATUS_IDLE if enabled else MISSION_STATUS_DISABLED,
                    last_run_error=INTERRUPTED_RUN_ERROR,
                    next_run_at=now if enabled else None,
                    updated_at=now,
                )

            updated = await self._store.mutate(mission.mission_id, apply)
            if updated is not None and updated.status != MISSION_STATUS_RUNNING:
                logger.warning("mission=%s was left running by a previous process; requeued", mission.mission_id)
                recovered.append(updated)
        return recovered

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply_patch(self, existing: MissionRecord, patch: Mapping[str, Any], now: datetime) -> MissionRecord:
        changes = {PATCH_ATTRIBUTES[key]: value for key, value in patch.items()}
        enable = patch.get("enable", existing.enable)
        status = patch.get("status")
        if "enable" in patch:
            if status is None:
                status = MISSION_STATUS_IDLE if enable else MISSION_STATUS_DISABLED
            elif (status == MISSION_STATUS_DISABLED) == enable:
                raise InvalidMissionError("status conflicts with enable flag", field="status")
        elif status is not None:
            if status == MISSION_STATUS_DISABLED:
                enable = False
            elif not existing.enable:
                raise InvalidMissionError("Disabled missions must be re-enabled with 'enable'", field="status")
        else:
            status = existing.status
        changes["enable"] = enable
        changes["status"] = status
        changes["updated_at"] = now

        updated = replace(existing, **changes)
        if not enable or status in PARKED_STATUSES:
            next_run_at = None
        elif patch.get("nextRunAt") is not None:
            next_run_at = patch["nextRunAt"]
        elif any(key in patch for key in _RECOMPUTE_TRIGGERS) or "nextRunAt" in patch or existing.next_run_at is None:
            next_run_at = next_after(updated.schedule, patch.get("lastRunAt") or now)
        else:
            next_run_at = existing.next_run_at
        return replace(updated, next_run_at=next_run_at)
