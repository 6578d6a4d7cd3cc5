import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from research_missions.app_container import MissionRuntime
from research_missions.domain.errors import InvalidMissionError, MissionError, TemplateNotFoundError
from research_missions.events.event_bus import MissionEvent
from research_missions.observability.structured_log import log_json
from research_missions.services.mission_service import MissionFilter
from research_missions.services.mission_telemetry import to_json_safe
from research_missions.util import short_error

logger = logging.getLogger(__name__)

API_PREFIX = "/api/missions"
WS_QUEUE_SIZE = 256


class ScheduleRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Optional[str] = None
    type: Optional[str] = None
    intervalMinutes: Optional[float] = None
    cron: Optional[str] = None
    expression: Optional[str] = None
    timezone: Optional[str] = None


class MissionCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    schedule: ScheduleRequest
    priority: Optional[float] = None
    tags: Optional[List[str]] = None
    payload: Optional[Dict[str, Any]] = None
    enable: Optional[bool] = None


class MissionUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    description: Optional[str] = None
    schedule: Optional[ScheduleRequest] = None
    priority: Optional[float] = None
    tags: Optional[List[str]] = None
    payload: Optional[Dict[str, Any]] = None
    enable: Optional[bool] = None
    status: Optional[str] = None
    lastRunError: Optional[str] = None
    nextRunAt: Optional[str] = None
    lastRunAt: Optional[str] = None
    lastFinishedAt: Optional[str] = None


class MissionRunRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    missionId: str
    forced: bool = True


class MissionTemplateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    description: Optional[str] = None
    schedule: ScheduleRequest
    priority: Optional[float] = None
    tags: Optional[List[str]] = None
    payload: Optional[Dict[str, Any]] = None
    enable: Optional[bool] = None


def _draft_from_request(body: BaseModel) -> Dict[str, Any]:
    data = body.model_dump(exclude_none=True)
    data.pop("id", None)
    return data


def _state_payload(runtime: MissionRuntime) -> Dict[str, Any]:
    cfg = runtime.config
    return {
        "featureEnabled": cfg.enabled,
        "schedulerEnabled": cfg.scheduler_enabled,
        "telemetryEnabled": cfg.telemetry_enabled,
        "httpEnabled": cfg.http_enabled,
        "state": runtime.scheduler.get_state().to_dict(),
        "activeRuns": runtime.scheduler.active_runs(),
    }


def create_app(runtime: MissionRuntime) -> FastAPI:
    app = FastAPI(title="Research Missions", version="0.1.0")
    app.state.runtime = runtime

    @app.exception_handler(MissionError)
    async def _mission_error_handler(request: Request, exc: MissionError) -> JSONResponse:
        status = exc.http_status()
        if status >= 500:
            logger.error("Mission request %s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
        content: Dict[str, Any] = {"error": str(first.get("msg") or "Invalid request")}
        if field:
            content["field"] = field
        return JSONResponse(status_code=400, content=content)

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled error on %s %s: %s", request.method, request.url.path, short_error(exc) or exc.__class__.__name__
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.on_event("startup")
    async def _startup_mission_scheduler() -> None:
        cfg = runtime.config
        if cfg.enabled and cfg.scheduler_enabled and cfg.scheduler_autostart:
            await runtime.scheduler.start()
        log_json(logger, "control_center.startup", autostart=cfg.scheduler_autostart, http_enabled=cfg.http_enabled)

    @app.on_event("shutdown")
    async def _shutdown_mission_scheduler() -> None:
        await runtime.close()
        log_json(logger, "control_center.shutdown")

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "missionsEnabled": runtime.config.enabled,
            "schedulerRunning": runtime.scheduler.is_running(),
        }

    if runtime.config.http_enabled:
        _register_mission_routes(app, runtime)
    return app


def _register_mission_routes(app: FastAPI, runtime: MissionRuntime) -> None:
    service = runtime.service
    scheduler = runtime.scheduler

    @app.get(API_PREFIX)
    async def list_missions(
        status: Optional[str] = None,
        tag: Optional[str] = None,
        include_disabled: Optional[str] = Query(default=None, alias="include-disabled"),
    ) -> Dict[str, Any]:
        runtime.require_enabled()
        mission_filter = MissionFilter.from_mapping(
            {"status": status, "tag": tag, "include_disabled": include_disabled or False}
        )
        missions = await service.list_missions(mission_filter)
        return {"missions": [mission.to_dict() for mission in missions]}

    @app.post(API_PREFIX, status_code=201)
    async def create_mission(body: MissionCreateRequest) -> Dict[str, Any]:
        runtime.require_enabled()
        mission = await service.create_mission(_draft_from_request(body), mission_id=body.id)
        return {"mission": mission.to_dict()}

    @app.get(f"{API_PREFIX}/state")
    async def mission_state() -> Dict[str, Any]:
        runtime.require_enabled()
        return _state_payload(runtime)

    @app.post(f"{API_PREFIX}/run")
    async def run_mission(body: MissionRunRequest) -> Dict[str, Any]:
        runtime.require_enabled()
        outcome = await scheduler.run_mission(body.missionId, forced=body.forced)
        return {"result": to_json_safe(outcome.to_dict())}

    @app.post(f"{API_PREFIX}/tick")
    async def tick() -> Dict[str, Any]:
        runtime.require_scheduler_enabled()
        report = await scheduler.trigger()
        return {"success": True, "tick": report.to_dict()}

    @app.post(f"{API_PREFIX}/start")
    async def start() -> Dict[str, Any]:
        runtime.require_scheduler_enabled()
        started = await scheduler.start()
        return {"success": True, "started": started, "state": scheduler.get_state().to_dict()}

    @app.post(f"{API_PREFIX}/stop")
    async def stop() -> Dict[str, Any]:
        runtime.require_scheduler_enabled()
        stopped = await scheduler.stop()
        return {"success": True, "stopped": stopped, "state": scheduler.get_state().to_dict()}

    @app.get(f"{API_PREFIX}/templates")
    async def list_templates() -> Dict[str, Any]:
        runtime.require_enabled()
        return {"templates": [template.to_dict() for template in runtime.templates.list_templates()]}

    @app.get(f"{API_PREFIX}/templates/{{slug}}")
    async def get_template(slug: str) -> Dict[str, Any]:
        runtime.require_enabled()
        template = runtime.templates.get_template(slug)
        if template is None:
            raise TemplateNotFoundError(slug)
        return {"template": template.to_dict()}

    @app.put(f"{API_PREFIX}/templates/{{slug}}")
    async def save_template(slug: str, body: MissionTemplateRequest) -> JSONResponse:
        runtime.require_enabled()
        existing = runtime.templates.get_template(slug)
        definition = body.model_dump(exclude_none=True)
        definition["slug"] = slug
        template = runtime.templates.save_template(definition)
        return JSONResponse(status_code=200 if existing else 201, content={"template": template.to_dict()})

    @app.delete(f"{API_PREFIX}/templates/{{slug}}")
    async def delete_template(slug: str) -> Dict[str, Any]:
        runtime.require_enabled()
        if not runtime.templates.delete_template(slug):
            raise TemplateNotFoundError(slug)
        return {"success": True}

    @app.websocket(f"{API_PREFIX}/ws")
    async def missions_ws(websocket: WebSocket) -> None:
        if not runtime.config.enabled:
            await websocket.close(code=1008)
            return
        await websocket.accept()
        queue: asyncio.Queue = asyncio.Queue(maxsize=WS_QUEUE_SIZE)

        def _offer(event: MissionEvent) -> None:
            if queue.full():
                # Drop the oldest event when the client falls behind.
                queue.get_nowait()
            queue.put_nowait(event.payload)

        async def _pump() -> None:
            while True:
                message = await queue.get()
                await websocket.send_json(message)

        unsubscribe = runtime.event_bus.subscribe(_offer)
        await websocket.send_json({"type": "scheduler_state", "data": _state_payload(runtime)})
        pump = asyncio.create_task(_pump(), name="missions-ws-pump")
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    inbound = json.loads(raw)
                except json.JSONDecodeError:
                    await websocket.send_json({"type": "error", "detail": "Invalid payload."})
                    continue
                msg_type = str((inbound or {}).get("type") or "").strip().lower() if isinstance(inbound, dict) else ""
                if msg_type == "ping":
                    await websocket.send_json({"type": "pong"})
                elif msg_type == "state":
                    await websocket.send_json({"type": "scheduler_state", "data": _state_payload(runtime)})
                else:
                    await websocket.send_json({"type": "error", "detail": "Unsupported message type."})
        except WebSocketDisconnect:
            pass
        finally:
            unsubscribe()
            pump.cancel()
            try:
                await pump
            except (asyncio.CancelledError, Exception):
                pass

    @app.get(f"{API_PREFIX}/{{mission_id}}")
    async def get_mission(mission_id: str) -> Dict[str, Any]:
        runtime.require_enabled()
        mission = await service.require_mission(mission_id)
        return {"mission": mission.to_dict()}

    @app.patch(f"{API_PREFIX}/{{mission_id}}")
    async def update_mission(mission_id: str, body: MissionUpdateRequest) -> Dict[str, Any]:
        runtime.require_enabled()
        patch = body.model_dump(exclude_unset=True)
        if not patch:
            raise InvalidMissionError("Mission patch must include at least one field")
        mission = await service.update_mission(mission_id, patch)
        return {"mission": mission.to_dict()}

    @app.delete(f"{API_PREFIX}/{{mission_id}}")
    async def delete_mission(mission_id: str) -> Dict[str, Any]:
        runtime.require_enabled()
        mission = await service.delete_mission(mission_id)
        return {"mission": mission.to_dict()}

    @app.post(f"{API_PREFIX}/{{mission_id}}/run")
    async def run_mission_by_id(mission_id: str, forced: bool = True) -> Dict[str, Any]:
        runtime.require_enabled()
        outcome = await scheduler.run_mission(mission_id, forced=forced)
        return {"result": to_json_safe(outcome.to_dict())}

