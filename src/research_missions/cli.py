import argparse
import asyncio
import dataclasses
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from research_missions.app_container import MissionRuntime, build_mission_runtime
from research_missions.config import (
    DEFAULT_CONFIG_DIR,
    apply_env_defaults,
    load_env_with_fallback,
    load_missions_config,
)
from research_missions.domain.errors import InvalidMissionError, MissionError, TemplateNotFoundError
from research_missions.observability.structured_log import log_json
from research_missions.remote_client import RemoteMissionsClient
from research_missions.services.mission_service import MissionFilter
from research_missions.services.mission_telemetry import to_json_safe
from research_missions.services.mission_templates import apply_draft_overrides

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _configure_logging(level: str) -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ----------------------------------------------------------------------
# Local backend
# ----------------------------------------------------------------------


class LocalMissionsClient:
    """Same surface as ``RemoteMissionsClient``, served from an in-process runtime."""

    def __init__(self, runtime: MissionRuntime) -> None:
        self._runtime = runtime

    async def list_missions(self, status=None, tag=None, include_disabled=False) -> List[Dict[str, Any]]:
        mission_filter = MissionFilter.from_mapping(
            {"status": status, "tag": tag, "include_disabled": include_disabled}
        )
        return [mission.to_dict() for mission in await self._runtime.service.list_missions(mission_filter)]

    async def get_mission(self, mission_id: str) -> Dict[str, Any]:
        return (await self._runtime.service.require_mission(mission_id)).to_dict()

    async def create_mission(self, draft: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(draft)
        mission_id = body.pop("id", None)
        return (await self._runtime.service.create_mission(body, mission_id=mission_id)).to_dict()

    async def update_mission(self, mission_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return (await self._runtime.service.update_mission(mission_id, patch)).to_dict()

    async def delete_mission(self, mission_id: str) -> Dict[str, Any]:
        return (await self._runtime.service.delete_mission(mission_id)).to_dict()

    async def run_mission(self, mission_id: str, forced: bool = True) -> Dict[str, Any]:
        outcome = await self._runtime.scheduler.run_mission(mission_id, forced=forced)
        return to_json_safe(outcome.to_dict())

    async def get_state(self) -> Dict[str, Any]:
        cfg = self._runtime.config
        scheduler = self._runtime.scheduler
        if not scheduler.is_running():
            await scheduler.restore_state()
        return {
            "featureEnabled": cfg.enabled,
            "schedulerEnabled": cfg.scheduler_enabled,
            "telemetryEnabled": cfg.telemetry_enabled,
            "httpEnabled": cfg.http_enabled,
            "state": scheduler.get_state().to_dict(),
            "activeRuns": scheduler.active_runs(),
        }

    async def tick(self) -> Dict[str, Any]:
        self._runtime.require_scheduler_enabled()
        return (await self._runtime.scheduler.trigger()).to_dict()

    async def start(self) -> Dict[str, Any]:
        self._runtime.require_scheduler_enabled()
        started = await self._runtime.scheduler.start()
        return {"success": True, "started": started, "state": self._runtime.scheduler.get_state().to_dict()}

    async def stop(self) -> Dict[str, Any]:
        self._runtime.require_scheduler_enabled()
        stopped = await self._runtime.scheduler.stop()
        return {"success": True, "stopped": stopped, "state": self._runtime.scheduler.get_state().to_dict()}

    async def list_templates(self) -> List[Dict[str, Any]]:
        return [template.to_dict() for template in self._runtime.templates.list_templates()]

    async def get_template(self, slug: str) -> Dict[str, Any]:
        template = self._runtime.templates.get_template(slug)
        if template is None:
            raise TemplateNotFoundError(slug)
        return template.to_dict()

    async def save_template(self, slug: str, definition: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(definition)
        body["slug"] = slug
        return self._runtime.templates.save_template(body).to_dict()

    async def delete_template(self, slug: str) -> bool:
        if not self._runtime.templates.delete_template(slug):
            raise TemplateNotFoundError(slug)
        return True

    async def aclose(self) -> None:
        scheduler = self._runtime.scheduler
        if scheduler.is_running():
            await scheduler.stop()
        await self._runtime.store.close()


# ----------------------------------------------------------------------
# Flag parsing
# ----------------------------------------------------------------------


def _parse_bool_flag(value: Optional[str], flag: str) -> Optional[bool]:
    if value is None:
        return None
    text = value.strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise InvalidMissionError(f"{flag} must be a boolean-like value.", field="enable")


def _parse_tags(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [tag.strip() for tag in value.split(",") if tag.strip()]


def _parse_payload(value: Optional[str]) -> Any:
    if value is None:
        return None
    text = value.strip()
    if not text:
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidMissionError("--payload must be valid JSON.", field="payload") from exc


def _schedule_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    interval = getattr(args, "interval_minutes", None)
    cron = getattr(args, "cron", None)
    timezone = getattr(args, "timezone", None)
    if interval is not None and cron is not None:
        raise InvalidMissionError("Provide either --interval-minutes or --cron, not both.", field="schedule")
    if interval is not None:
        if interval <= 0:
            raise InvalidMissionError("--interval-minutes must be a positive number.", field="schedule.intervalMinutes")
        overrides["intervalMinutes"] = interval
    if cron is not None:
        if not cron.strip():
            raise InvalidMissionError("--cron must be a non-empty string.", field="schedule.cron")
        overrides["cron"] = cron.strip()
    if timezone is not None:
        overrides["timezone"] = timezone.strip()
    return overrides


def _merge_schedule_flags(base: Optional[Dict[str, Any]], overrides: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if "intervalMinutes" in overrides or "cron" in overrides:
        return dict(overrides)
    if "timezone" in overrides:
        if not base:
            raise InvalidMissionError("Provide --interval-minutes or --cron before setting --timezone.", field="schedule")
        merged = dict(base)
        merged["timezone"] = overrides["timezone"]
        return merged
    return dict(base) if base else None


def _load_definition_file(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    source = Path(path).expanduser().resolve()
    try:
        parsed = yaml.safe_load(source.read_text(encoding="utf-8"))
    except OSError as exc:
        raise InvalidMissionError(f"Failed to read definition file {source}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise InvalidMissionError(f"Definition file {source} must be valid YAML or JSON.") from exc
    if not isinstance(parsed, dict):
        raise InvalidMissionError(f"Definition file {source} must contain an object definition.")
    return dict(parsed)


def _definition_fields(args: argparse.Namespace) -> Dict[str, Any]:
    """Collect the mission fields given as flags, skipping the ones left unset."""
    fields: Dict[str, Any] = {}
    if args.name is not None:
        fields["name"] = args.name
    if args.description is not None:
        fields["description"] = args.description
    if args.priority is not None:
        fields["priority"] = args.priority
    tags = _parse_tags(args.tags)
    if tags is not None:
        fields["tags"] = tags
    enable = _parse_bool_flag(args.enable, "--enable")
    if enable is not None:
        fields["enable"] = enable
    if args.payload is not None:
        fields["payload"] = _parse_payload(args.payload)
    return fields


def _build_create_draft(args: argparse.Namespace) -> Dict[str, Any]:
    draft = _load_definition_file(args.from_file)
    draft.update(_definition_fields(args))
    schedule = _merge_schedule_flags(draft.get("schedule"), _schedule_overrides(args))
    if schedule is None:
        raise InvalidMissionError("Provide --interval-minutes or --cron, or include a schedule in the file.", field="schedule")
    draft["schedule"] = schedule
    if args.id:
        draft["id"] = args.id
    return draft


async def _build_patch(client: Any, args: argparse.Namespace) -> Dict[str, Any]:
    patch = _definition_fields(args)
    overrides = _schedule_overrides(args)
    if overrides:
        base = None
        if "intervalMinutes" not in overrides and "cron" not in overrides:
            base = (await client.get_mission(args.mission_id)).get("schedule")
        patch["schedule"] = _merge_schedule_flags(base, overrides)
    if args.status is not None:
        patch["status"] = args.status
    if not patch:
        raise InvalidMissionError("Nothing to update; pass at least one field flag.")
    return patch


async def _build_template_definition(client: Any, args: argparse.Namespace) -> Dict[str, Any]:
    definition = _load_definition_file(args.from_file)
    try:
        existing: Optional[Dict[str, Any]] = await client.get_template(args.slug)
    except MissionError as exc:
        if exc.http_status() != 404:
            raise
        existing = None
    base = {key: value for key, value in (existing or {}).items() if key not in ("slug", "sourcePath")}
    base.update(definition)
    base.update(_definition_fields(args))
    schedule = _merge_schedule_flags(base.get("schedule"), _schedule_overrides(args))
    if schedule is None:
        raise InvalidMissionError(
            "Template save requires a schedule. Provide --interval-minutes or --cron, or include one in the file.",
            field="schedule",
        )
    base["schedule"] = schedule
    if not base.get("name"):
        raise InvalidMissionError("Template save requires --name or a name defined in the file.", field="name")
    return base


# ----------------------------------------------------------------------
# Output
# ----------------------------------------------------------------------


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _describe_schedule(schedule: Optional[Dict[str, Any]]) -> str:
    if not schedule:
        return "n/a"
    timezone = schedule.get("timezone")
    suffix = f"@{timezone}" if timezone else ""
    if schedule.get("intervalMinutes"):
        return f"{schedule['intervalMinutes']}m{suffix}"
    if schedule.get("cron"):
        return f"cron({schedule['cron']}){suffix}"
    return "n/a"


def _format_mission_line(mission: Dict[str, Any]) -> str:
    return " | ".join(
        [
            f"{mission['id']} :: {mission['name']}",
            f"status={mission['status']}",
            f"priority={mission.get('priority', 0)}",
            f"next={mission.get('nextRunAt') or 'n/a'}",
        ]
    )


def _print_mission(mission: Dict[str, Any]) -> None:
    print(f"Mission: {mission['name']} ({mission['id']})")
    print(f"  Status: {mission['status']}")
    print(f"  Priority: {mission.get('priority', 0)}")
    print(f"  Enabled: {mission.get('enable', True)}")
    print(f"  Tags: {', '.join(mission.get('tags') or []) or 'none'}")
    print(f"  Schedule: {_describe_schedule(mission.get('schedule'))}")
    print(f"  Next Run: {mission.get('nextRunAt') or 'n/a'}")
    print(f"  Last Run: {mission.get('lastRunAt') or 'n/a'}")
    print(f"  Last Finished: {mission.get('lastFinishedAt') or 'n/a'}")
    if mission.get("lastRunError"):
        print(f"  Last Error: {mission['lastRunError']}")


def _print_template(template: Dict[str, Any]) -> None:
    print(f"{template['slug']} :: {template['name']}")
    if template.get("description"):
        print(f"  Description: {template['description']}")
    print(f"  Schedule: {_describe_schedule(template.get('schedule'))}")
    print(f"  Priority: {template.get('priority', 0)}")
    print(f"  Tags: {', '.join(template.get('tags') or []) or 'none'}")
    print(f"  Enabled: {template.get('enable', True)}")
    if template.get("payload"):
        print(f"  Payload: {json.dumps(template['payload'])}")


def _print_status(payload: Dict[str, Any]) -> None:
    state = payload.get("state") or {}
    print(f"Scheduler feature: {'enabled' if payload.get('schedulerEnabled') else 'disabled'}")
    print(f"Scheduler running: {'yes' if state.get('running') else 'no'}")
    for key, label in (
        ("lastTickStartedAt", "Last tick started"),
        ("lastTickCompletedAt", "Last tick completed"),
    ):
        if state.get(key):
            print(f"{label}: {state[key]}")
    if state.get("lastTickDurationMs") is not None:
        print(f"Last tick duration: {state['lastTickDurationMs']}ms")
    print(f"Missions evaluated last tick: {state.get('lastTickEvaluated', 0)}")
    print(f"Missions launched last tick: {state.get('lastTickLaunched', 0)}")
    if state.get("lastTickError"):
        print(f"Last tick error: {state['lastTickError']}")
    if state.get("lastPersistedAt"):
        reason = f" (reason={state['lastPersistReason']})" if state.get("lastPersistReason") else ""
        print(f"Last state persisted: {state['lastPersistedAt']}{reason}")


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


async def _run_command(client: Any, args: argparse.Namespace) -> int:
    command = args.command
    as_json = args.json

    if command == "list":
        missions = await client.list_missions(
            status=args.status, tag=args.tag, include_disabled=args.include_disabled
        )
        if as_json:
            _print_json(missions)
        elif not missions:
            print("No missions found.")
        else:
            for mission in missions:
                print(_format_mission_line(mission))
        return 0

    if command == "inspect":
        mission = await client.get_mission(args.mission_id)
        if as_json:
            _print_json(mission)
        else:
            _print_mission(mission)
        return 0

    if command == "run":
        result = await client.run_mission(args.mission_id, forced=not args.unforced)
        if as_json:
            _print_json(result)
        elif result.get("skipped"):
            print(f"Mission {args.mission_id} skipped: {result.get('reason')}")
        elif result.get("success"):
            print(f"Mission {args.mission_id} completed successfully.")
        else:
            print(f"Mission {args.mission_id} failed: {result.get('error') or 'Unknown error'}")
        return 0 if result.get("success") and not result.get("skipped") else 1

    if command == "tick":
        report = await client.tick()
        if as_json:
            _print_json(report)
        else:
            print(
                "Mission scheduler tick executed: evaluated=%s launched=%s failed=%s skipped=%s"
                % (report.get("evaluated"), report.get("launched"), report.get("failed"), report.get("skipped"))
            )
        return 0

    if command == "status":
        payload = await client.get_state()
        if as_json:
            _print_json(payload)
        else:
            _print_status(payload)
        return 0

    if command == "start":
        payload = await client.start()
        if as_json:
            _print_json(payload)
        elif payload.get("started"):
            print("Mission scheduler started.")
        else:
            print("Mission scheduler already running.")
        return 0

    if command == "stop":
        payload = await client.stop()
        if as_json:
            _print_json(payload)
        elif payload.get("stopped"):
            print("Mission scheduler stopped.")
        else:
            print("Mission scheduler was not running.")
        return 0

    if command == "create":
        mission = await client.create_mission(_build_create_draft(args))
        if as_json:
            _print_json(mission)
        else:
            print(f"Created mission {mission['id']} ({mission['name']}).")
        return 0

    if command == "update":
        mission = await client.update_mission(args.mission_id, await _build_patch(client, args))
        if as_json:
            _print_json(mission)
        else:
            print(f"Updated mission {mission['id']}: status={mission['status']}.")
        return 0

    if command == "delete":
        mission = await client.delete_mission(args.mission_id)
        if as_json:
            _print_json(mission)
        else:
            print(f"Deleted mission {mission['id']}.")
        return 0

    if command == "templates":
        return await _run_templates_command(client, args)

    if command == "scaffold":
        return await _run_scaffold(client, args)

    raise InvalidMissionError(f"Unknown command: {command}")


async def _run_templates_command(client: Any, args: argparse.Namespace) -> int:
    action = args.templates_action or "list"
    as_json = args.json
    if action == "list":
        templates = await client.list_templates()
        if as_json:
            _print_json(templates)
        elif not templates:
            print("No mission templates available.")
        else:
            for template in templates:
                tags = ", ".join(template.get("tags") or []) or "none"
                print(f"{template['slug']} :: {template['name']} | every={_describe_schedule(template.get('schedule'))} | tags={tags}")
        return 0
    if action == "show":
        template = await client.get_template(args.slug)
        if as_json:
            _print_json(template)
        else:
            _print_template(template)
        return 0
    if action == "save":
        saved = await client.save_template(args.slug, await _build_template_definition(client, args))
        if as_json:
            _print_json(saved)
        else:
            print(f"Template '{saved['slug']}' saved ({_describe_schedule(saved.get('schedule'))}).")
        return 0
    if action == "delete":
        await client.delete_template(args.slug)
        if as_json:
            _print_json({"success": True, "slug": args.slug})
        else:
            print(f"Template '{args.slug}' deleted.")
        return 0
    raise InvalidMissionError(f"Unknown missions templates action: {action}.")


async def _run_scaffold(client: Any, args: argparse.Namespace) -> int:
    template = await client.get_template(args.slug)
    overrides = _definition_fields(args)
    schedule = _schedule_overrides(args)
    if schedule:
        overrides["schedule"] = schedule
    draft = apply_draft_overrides(template, overrides)
    if args.dry_run:
        if args.json:
            _print_json(draft)
        else:
            print(f"Draft ready from template '{args.slug}':")
            print(f"  Name: {draft['name']}")
            print(f"  Priority: {draft['priority']}")
            print(f"  Tags: {', '.join(draft['tags']) or 'none'}")
            print(f"  Schedule: {_describe_schedule(draft['schedule'])}")
            if draft.get("description"):
                print(f"  Description: {draft['description']}")
        return 0
    mission = await client.create_mission(draft)
    if args.json:
        _print_json(mission)
    else:
        print(f"Created mission {mission['id']} from template '{args.slug}'.")
    return 0


async def _run_foreground_scheduler(runtime: MissionRuntime, as_json: bool) -> int:
    runtime.require_scheduler_enabled()
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass
    await runtime.scheduler.start()
    log_json(logger, "cli.scheduler_started", interval_ms=runtime.scheduler.interval_ms)
    if as_json:
        _print_json({"success": True, "state": runtime.scheduler.get_state().to_dict()})
    else:
        print(f"Mission scheduler started (interval {runtime.scheduler.interval_ms}ms). Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await runtime.close()
        log_json(logger, "cli.scheduler_stopped")
    if not as_json:
        print("Mission scheduler stopped.")
    return 0


async def _dispatch(args: argparse.Namespace, runtime: Optional[MissionRuntime]) -> int:
    if args.remote:
        client: Any = RemoteMissionsClient(args.remote)
    else:
        assert runtime is not None
        if args.command == "start":
            return await _run_foreground_scheduler(runtime, args.json)
        client = LocalMissionsClient(runtime)
    try:
        return await _run_command(client, args)
    finally:
        await client.aclose()


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------


def _add_definition_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name")
    parser.add_argument("--description")
    parser.add_argument("--interval-minutes", type=float)
    parser.add_argument("--cron")
    parser.add_argument("--timezone")
    parser.add_argument("--priority", type=float)
    parser.add_argument("--tags", help="Comma separated tags")
    parser.add_argument("--enable", help="true/false")
    parser.add_argument("--payload", help="JSON object passed to the executor")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="research-missions", description="Scheduled research missions")
    parser.add_argument(
        "--config-dir",
        default=str(DEFAULT_CONFIG_DIR),
        help="Directory holding the .env config (default: ~/.config/research-missions)",
    )
    parser.add_argument("--data-dir", help="Override MISSIONS_DATA_DIR")
    parser.add_argument("--templates-dir", help="Override MISSIONS_TEMPLATES_DIR")
    parser.add_argument("--log-level", default=None)
    parser.add_argument("--json", action="store_true", help="Print machine readable JSON")
    parser.add_argument("--remote", metavar="URL", help="Send commands to a running missions server")
    sub = parser.add_subparsers(dest="command", required=True)

    p_list = sub.add_parser("list", help="List missions")
    p_list.add_argument("--status", help="Status or comma separated statuses")
    p_list.add_argument("--tag")
    p_list.add_argument("--include-disabled", action="store_true")

    for name, help_text in (("inspect", "Show one mission"), ("delete", "Delete a mission")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("mission_id")

    p_run = sub.add_parser("run", help="Run a mission now")
    p_run.add_argument("mission_id")
    p_run.add_argument("--unforced", action="store_true", help="Respect enable flag and due time")

    sub.add_parser("tick", help="Evaluate due missions once")
    sub.add_parser("status", help="Show scheduler state")
    sub.add_parser("start", help="Start the scheduler loop")
    sub.add_parser("stop", help="Stop the scheduler loop")

    p_create = sub.add_parser("create", help="Create a mission")
    p_create.add_argument("--id")
    p_create.add_argument("--from-file", help="YAML or JSON mission definition")
    _add_definition_flags(p_create)

    p_update = sub.add_parser("update", help="Update a mission")
    p_update.add_argument("mission_id")
    p_update.add_argument("--status")
    _add_definition_flags(p_update)

    p_templates = sub.add_parser("templates", help="Manage mission templates")
    t_sub = p_templates.add_subparsers(dest="templates_action")
    t_sub.add_parser("list")
    for name in ("show", "delete"):
        t_sub.add_parser(name).add_argument("slug")
    t_save = t_sub.add_parser("save")
    t_save.add_argument("slug")
    t_save.add_argument("--from-file", help="YAML or JSON template definition")
    _add_definition_flags(t_save)

    p_scaffold = sub.add_parser("scaffold", help="Create a mission from a template")
    p_scaffold.add_argument("slug")
    p_scaffold.add_argument("--dry-run", action="store_true")
    _add_definition_flags(p_scaffold)

    p_serve = sub.add_parser("serve", help="Run the HTTP/WebSocket control surface")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8765)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    config_dir = Path(args.config_dir).expanduser().resolve()
    apply_env_defaults(load_env_with_fallback(config_dir))

    log_level = args.log_level or os.environ.get("LOG_LEVEL", "INFO")
    _configure_logging(log_level)

    runtime: Optional[MissionRuntime] = None
    if not args.remote:
        config = load_missions_config()
        if args.data_dir:
            config = dataclasses.replace(config, data_dir=Path(args.data_dir).expanduser().resolve())
        if args.templates_dir:
            config = dataclasses.replace(config, templates_dir=Path(args.templates_dir).expanduser().resolve())
        if not config.enabled:
            print("Mission controls are disabled via feature flag.", file=sys.stderr)
            return 1
        runtime = build_mission_runtime(config=config)

    if args.command == "serve":
        if runtime is None:
            print("serve cannot be combined with --remote.", file=sys.stderr)
            return 1
        from research_missions.control_center.app import create_app
        import uvicorn

        log_json(logger, "cli.serve", host=args.host, port=args.port, data_dir=str(runtime.config.data_dir))
        uvicorn.run(create_app(runtime), host=args.host, port=args.port, log_level=log_level.lower())
        return 0

    try:
        return asyncio.run(_dispatch(args, runtime))
    except KeyboardInterrupt:
        return 0
    except MissionError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
