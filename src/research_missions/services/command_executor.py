import asyncio
import logging
import os
import shlex
from pathlib import Path
from typing import Any, List, Mapping, Optional

from research_missions.domain.missions import MissionRecord, thaw_payload
from research_missions.domain.scheduler import ExecutorResult
from research_missions.util import redact

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_SEC = 60
_OUTPUT_TAIL_CHARS = 300


def _log_output(label: str, mission_id: str, text: str) -> None:
    if text:
        logger.info("mission=%s %s:\n%s", mission_id, label, redact(text))


def _command_argv(payload: Mapping[str, Any]) -> List[str]:
    command = payload.get("command")
    if isinstance(command, str):
        return shlex.split(command)
    if isinstance(command, (list, tuple)):
        return [str(part) for part in command]
    return []


class CommandMissionExecutor:
    """Run ``payload["command"]`` as a subprocess.

    Payload keys: ``command`` (argv list or shell-quoted string, required),
    ``stdin`` (text fed to the process), ``timeoutSec`` and ``cwd`` (relative
    to the workspace root).
    """

    def __init__(self, timeout_sec: int = DEFAULT_COMMAND_TIMEOUT_SEC, workspace_root: Optional[Path] = None) -> None:
        self._timeout_sec = max(1, int(timeout_sec))
        self._workspace_root = (workspace_root or Path.cwd()).expanduser().resolve()

    async def __call__(self, mission: MissionRecord, ctx: Any = None) -> ExecutorResult:
        payload = thaw_payload(mission.payload)
        argv = _command_argv(payload)
        if not argv:
            return ExecutorResult(success=False, error="payload.command is required")
        timeout = self._timeout(payload)
        cwd = self._resolve_cwd(payload.get("cwd"))
        stdin_text = str(payload.get("stdin") or "")
        logger.info("mission=%s running: %s", mission.mission_id, redact(" ".join(shlex.quote(a) for a in argv)))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=dict(os.environ),
            )
        except FileNotFoundError:
            return ExecutorResult(success=False, error=f"command not found: {argv[0]}")
        except OSError as exc:
            return ExecutorResult(success=False, error=redact(f"failed to start command: {exc}"))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(stdin_text.encode()), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.communicate()
            return ExecutorResult(success=False, error=f"Execution timeout after {timeout}s.")

        out = stdout.decode(errors="replace") if stdout else ""
        err = stderr.decode(errors="replace") if stderr else ""
        _log_output("stdout", mission.mission_id, out)
        _log_output("stderr", mission.mission_id, err)
        if proc.returncode != 0:
            msg = f"command exited with code {proc.returncode}."
            tail = (err.strip() or out.strip())[-_OUTPUT_TAIL_CHARS:]
            if tail:
                msg += f" {tail}"
            return ExecutorResult(success=False, error=redact(msg))
        return ExecutorResult(
            success=True,
            result={"exitCode": proc.returncode, "output": redact(out.strip())[-_OUTPUT_TAIL_CHARS:]},
        )

    def _timeout(self, payload: Mapping[str, Any]) -> int:
        raw = payload.get("timeoutSec")
        if raw is None:
            return self._timeout_sec
        try:
            return max(1, int(raw))
        except (TypeError, ValueError):
            return self._timeout_sec

    def _resolve_cwd(self, raw: Any) -> Path:
        if not raw:
            return self._workspace_root
        candidate = (self._workspace_root / str(raw)).resolve()
        if candidate != self._workspace_root and self._workspace_root not in candidate.parents:
            logger.warning("Ignoring cwd outside workspace root: %s", raw)
            return self._workspace_root
        return candidate
