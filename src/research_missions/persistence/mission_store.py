"""File-backed mission store with a single writer task.

All mutations are queued to one writer coroutine that owns ``missions.json``.
Each mutation rewrites the whole file through a temp file and ``os.replace``;
the in-memory view is swapped only after the write succeeds.

Usage::

    store = JsonMissionStore(data_dir=Path(".data/missions"))
    await store.upsert_mission(record)
    missions = await store.list_missions()
    await store.close()
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from research_missions.domain.errors import StoreCorruptError, StoreIOError
from research_missions.domain.missions import MissionRecord
from research_missions.persistence.json_files import atomic_write_text, dump_pretty_json, read_text_or_none

logger = logging.getLogger(__name__)

MISSIONS_FILE_NAME = "missions.json"

MissionMap = Dict[str, MissionRecord]
# A queued mutation maps the current missions to (new missions or None, result).
_Mutation = Callable[[MissionMap], Tuple[Optional[MissionMap], Any]]
MissionMutator = Callable[[Optional[MissionRecord]], MissionRecord]


class JsonMissionStore:
    def __init__(self, data_dir: Path, file_name: str = MISSIONS_FILE_NAME) -> None:
        self._path = Path(data_dir) / file_name
        self._missions: Optional[MissionMap] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._load_lock: Optional[asyncio.Lock] = None
        self._queue: Optional[asyncio.Queue] = None
        self._writer: Optional[asyncio.Task] = None

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_missions(self) -> List[MissionRecord]:
        missions = await self._ensure_loaded()
        return list(missions.values())

    async def get_mission(self, mission_id: str) -> Optional[MissionRecord]:
        missions = await self._ensure_loaded()
        return missions.get(mission_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert_mission(self, mission: MissionRecord) -> MissionRecord:
        def apply(current: MissionMap) -> Tuple[Optional[MissionMap], Any]:
            updated = dict(current)
            updated[mission.mission_id] = mission
            return updated, mission

        return await self._submit(apply)

    async def remove_mission(self, mission_id: str) -> Optional[MissionRecord]:
        def apply(current: MissionMap) -> Tuple[Optional[MissionMap], Any]:
            if mission_id not in current:
                return None, None
            updated = dict(current)
            removed = updated.pop(mission_id)
            return updated, removed

        return await self._submit(apply)

    async def replace_all(self, missions: Iterable[MissionRecord]) -> List[MissionRecord]:
        snapshot = list(missions)

        def apply(current: MissionMap) -> Tuple[Optional[MissionMap], Any]:
            updated = {mission.mission_id: mission for mission in snapshot}
            return updated, list(updated.values())

        return await self._submit(apply)

    async def mutate(self, mission_id: str, mutator: MissionMutator) -> MissionRecord:
        """Apply ``mutator(existing)`` inside the writer and persist its result.

        The mutator sees the latest committed record (or None) and may raise to
        abort; returning the same object skips the write.
        """

        def apply(current: MissionMap) -> Tuple[Optional[MissionMap], Any]:
            existing = current.get(mission_id)
            replacement = mutator(existing)
            if replacement is existing:
                return None, existing
            updated = dict(current)
            updated[replacement.mission_id] = replacement
            return updated, replacement

        return await self._submit(apply)

    async def close(self) -> None:
        writer = self._writer
        if writer is None or writer.done() or self._queue is None:
            return
        try:
            current_loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._loop is not current_loop:
            self._writer = None
            return
        await self._queue.put(None)
        await writer
        self._writer = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _bind_loop(self) -> asyncio.AbstractEventLoop:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            # asyncio primitives belong to one loop; each new loop gets its own.
            self._loop = loop
            self._load_lock = asyncio.Lock()
            self._queue = asyncio.Queue()
            self._writer = None
        return loop

    async def _ensure_loaded(self) -> MissionMap:
        self._bind_loop()
        if self._missions is not None:
            return self._missions
        assert self._load_lock is not None
        async with self._load_lock:
            if self._missions is None:
                self._missions = await asyncio.to_thread(self._read_file)
                logger.info("Loaded %d mission(s) from %s", len(self._missions), self._path)
        return self._missions

    def _read_file(self) -> MissionMap:
        try:
            text = read_text_or_none(self._path)
        except OSError as exc:
            raise StoreIOError(f"Failed to read {self._path}: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise StoreCorruptError(f"{self._path} is not valid UTF-8: {exc}") from exc
        if text is None or not text.strip():
            return {}
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StoreCorruptError(f"{self._path} is not valid JSON: {exc}") from exc
        if not isinstance(raw, list):
            raise StoreCorruptError(f"{self._path} must contain a JSON array of missions")
        missions: MissionMap = {}
        for index, entry in enumerate(raw):
            if not isinstance(entry, dict) or not entry.get("id"):
                logger.warning("Skipping mission entry %d without an id in %s", index, self._path)
                continue
            try:
                record = MissionRecord.from_dict(entry)
            except (KeyError, TypeError, ValueError, OverflowError, OSError) as exc:
                raise StoreCorruptError(f"Invalid mission entry {index} in {self._path}: {exc}") from exc
            missions[record.mission_id] = record
        return missions

    async def _submit(self, apply: _Mutation) -> Any:
        await self._ensure_loaded()
        loop = self._bind_loop()
        if self._writer is None or self._writer.done():
            self._writer = loop.create_task(self._writer_loop(self._queue), name="mission-store-writer")
        future = loop.create_future()
        assert self._queue is not None
        await self._queue.put((apply, future))
        return await future

    async def _writer_loop(self, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            try:
                if item is None:
                    return
                apply, future = item
                try:
                    result = await self._apply(apply)
                except Exception as exc:
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(result)
            finally:
                queue.task_done()

    async def _apply(self, apply: _Mutation) -> Any:
        current = await self._ensure_loaded()
        updated, result = apply(current)
        if updated is None:
            return result
        text = dump_pretty_json([mission.to_dict() for mission in updated.values()])
        try:
            await asyncio.to_thread(atomic_write_text, self._path, text)
        except OSError as exc:
            raise StoreIOError(f"Failed to write {self._path}: {exc}") from exc
        self._missions = updated
        return result
