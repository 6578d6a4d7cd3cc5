from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

from research_missions.domain.scheduler import SchedulerStateSnapshot
from research_missions.persistence.json_files import atomic_write_text, dump_pretty_json, read_text_or_none

logger = logging.getLogger(__name__)

SCHEDULER_STATE_FILE_NAME = "scheduler-state.json"


class SchedulerStateStore:
    """Best-effort persistence of the scheduler's runtime snapshot.

    Reads never raise: a missing, empty or malformed file reads as None.
    Writes are serialized and atomic; failures are logged and reported as False.
    """

    def __init__(self, data_dir: Path, file_name: str = SCHEDULER_STATE_FILE_NAME) -> None:
        self._path = Path(data_dir) / file_name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock: Optional[asyncio.Lock] = None

    @property
    def path(self) -> Path:
        return self._path

    async def load_state(self) -> Optional[SchedulerStateSnapshot]:
        try:
            text = await asyncio.to_thread(read_text_or_none, self._path)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to read scheduler state %s: %s", self._path, exc)
            return None
        if text is None or not text.strip():
            return None
        try:
            raw = json.loads(text)
            if not isinstance(raw, dict):
                raise ValueError("scheduler state must be a JSON object")
            return SchedulerStateSnapshot.from_dict(raw)
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            logger.warning("Ignoring malformed scheduler state %s: %s", self._path, exc)
            return None

    async def save_state(self, snapshot: SchedulerStateSnapshot, reason: str = "", **extra: Any) -> bool:
        data = snapshot.to_dict()
        if reason:
            data["lastPersistReason"] = reason
        data.update(extra)
        text = dump_pretty_json(data)
        async with self._bound_lock():
            try:
                await asyncio.to_thread(atomic_write_text, self._path, text)
            except OSError as exc:
                logger.warning("Failed to persist scheduler state %s: %s", self._path, exc)
                return False
        return True

    def _bound_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._loop is not loop or self._lock is None:
            self._loop = loop
            self._lock = asyncio.Lock()
        return self._lock
