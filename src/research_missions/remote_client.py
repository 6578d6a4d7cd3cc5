"""Thin async client for a running ``/api/missions`` server.

Used by the CLI's ``--remote`` mode so operators can drive a scheduler hosted
by ``research-missions serve`` without touching its data directory.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from research_missions.domain.errors import (
    FeatureDisabledError,
    InvalidMissionError,
    MissionError,
    MissionNotFoundError,
)

API_PREFIX = "/api/missions"


def _raise_for_error(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = str(body.get("error") or body.get("detail") or f"HTTP {resp.status_code}")
    if resp.status_code == 400:
        raise InvalidMissionError(message, field=str(body.get("field") or ""))
    if resp.status_code == 403:
        raise FeatureDisabledError(message)
    if resp.status_code == 404:
        raise MissionNotFoundError("", message=message)
    raise MissionError(message)


class RemoteMissionsClient:
    """Usage::

        async with RemoteMissionsClient("http://127.0.0.1:8765") as client:
            missions = await client.list_missions(status="idle")
            result = await client.run_mission(missions[0]["id"])
    """

    def __init__(
        self,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_sec: float = 30.0,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            transport=transport,
            timeout=httpx.Timeout(timeout_sec, connect=5.0),
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "RemoteMissionsClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            resp = await self._client.request(method, f"{API_PREFIX}{path}", **kwargs)
        except httpx.HTTPError as exc:
            raise MissionError(f"Cannot reach missions server: {exc}") from exc
        _raise_for_error(resp)
        data = resp.json()
        return data if isinstance(data, dict) else {}

    # ------------------------------------------------------------------
    # Missions
    # ------------------------------------------------------------------

    async def list_missions(
        self,
        status: Optional[str] = None,
        tag: Optional[str] = None,
        include_disabled: bool = False,
    ) -> list:
        params: Dict[str, str] = {}
        if status:
            params["status"] = status
        if tag:
            params["tag"] = tag
        if include_disabled:
            params["include-disabled"] = "true"
        data = await self._request("GET", "", params=params)
        return list(data.get("missions") or [])

    async def get_mission(self, mission_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/{mission_id}")
        return data["mission"]

    async def create_mission(self, draft: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request("POST", "", json=draft)
        return data["mission"]

    async def update_mission(self, mission_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request("PATCH", f"/{mission_id}", json=patch)
        return data["mission"]

    async def delete_mission(self, mission_id: str) -> Dict[str, Any]:
        data = await self._request("DELETE", f"/{mission_id}")
        return data["mission"]

    async def run_mission(self, mission_id: str, forced: bool = True) -> Dict[str, Any]:
        data = await self._request("POST", "/run", json={"missionId": mission_id, "forced": forced})
        return data["result"]

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    async def get_state(self) -> Dict[str, Any]:
        return await self._request("GET", "/state")

    async def tick(self) -> Dict[str, Any]:
        data = await self._request("POST", "/tick")
        return data.get("tick") or {}

    async def start(self) -> Dict[str, Any]:
        return await self._request("POST", "/start")

    async def stop(self) -> Dict[str, Any]:
        return await self._request("POST", "/stop")

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    async def list_templates(self) -> list:
        data = await self._request("GET", "/templates")
        return list(data.get("templates") or [])

    async def get_template(self, slug: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/templates/{slug}")
        return data["template"]

    async def save_template(self, slug: str, definition: Dict[str, Any]) -> Dict[str, Any]:
        body = {key: value for key, value in definition.items() if key not in ("slug", "sourcePath")}
        data = await self._request("PUT", f"/templates/{slug}", json=body)
        return data["template"]

    async def delete_template(self, slug: str) -> bool:
        data = await self._request("DELETE", f"/templates/{slug}")
        return bool(data.get("success"))
