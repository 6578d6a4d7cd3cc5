"""Error taxonomy shared by the mission store, service, scheduler and adapters."""
from __future__ import annotations

from typing import Any, Dict


ERROR_KIND_INVALID = "invalid"
ERROR_KIND_NOT_FOUND = "not_found"
ERROR_KIND_FEATURE_DISABLED = "feature_disabled"
ERROR_KIND_STORE_CORRUPT = "store_corrupt"
ERROR_KIND_STORE_IO = "store_io"
ERROR_KIND_DESTROYED = "destroyed"
ERROR_KIND_INTERNAL = "internal"

HTTP_STATUS_BY_KIND: Dict[str, int] = {
    ERROR_KIND_INVALID: 400,
    ERROR_KIND_NOT_FOUND: 404,
    ERROR_KIND_FEATURE_DISABLED: 403,
}


class MissionError(Exception):
    kind = ERROR_KIND_INTERNAL

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.__class__.__name__

    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND.get(self.kind, 500)

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message}


class InvalidMissionError(MissionError, ValueError):
    """Input failed validation. ``field`` is a dotted path such as ``schedule.cron``."""

    kind = ERROR_KIND_INVALID

    def __init__(self, message: str, field: str = "") -> None:
        super().__init__(message)
        self.field = field

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        if self.field:
            payload["field"] = self.field
        return payload


class MissionNotFoundError(MissionError, LookupError):
    kind = ERROR_KIND_NOT_FOUND

    def __init__(self, mission_id: str, message: str = "") -> None:
        super().__init__(message or f"Mission not found: {mission_id}")
        self.mission_id = mission_id


class FeatureDisabledError(MissionError):
    kind = ERROR_KIND_FEATURE_DISABLED


class StoreCorruptError(MissionError):
    kind = ERROR_KIND_STORE_CORRUPT


class StoreIOError(MissionError):
    kind = ERROR_KIND_STORE_IO


class SchedulerDestroyedError(MissionError, RuntimeError):
    kind = ERROR_KIND_DESTROYED

    def __init__(self, message: str = "Mission scheduler has been destroyed.") -> None:
        super().__init__(message)


class TemplateNotFoundError(MissionError, LookupError):
    kind = ERROR_KIND_NOT_FOUND

    def __init__(self, slug: str) -> None:
        super().__init__(f"Mission template not found: {slug}")
        self.slug = slug
