import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

ENABLED_KEY = "MISSIONS_ENABLED"
SCHEDULER_ENABLED_KEY = "MISSIONS_SCHEDULER_ENABLED"
HTTP_ENABLED_KEY = "MISSIONS_HTTP_ENABLED"
TELEMETRY_ENABLED_KEY = "MISSIONS_TELEMETRY_ENABLED"
POLL_INTERVAL_KEY = "MISSIONS_POLL_INTERVAL_MS"
DATA_DIR_KEY = "MISSIONS_DATA_DIR"
TEMPLATES_DIR_KEY = "MISSIONS_TEMPLATES_DIR"
EXECUTOR_KEY = "MISSIONS_EXECUTOR"
AUTOSTART_KEY = "MISSIONS_SCHEDULER_AUTOSTART"
COMMAND_TIMEOUT_KEY = "MISSIONS_COMMAND_TIMEOUT_SEC"

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "research-missions"
DEFAULT_POLL_INTERVAL_MS = 30_000
MIN_POLL_INTERVAL_MS = 1_000
EXECUTOR_NOOP = "noop"
EXECUTOR_COMMAND = "command"
EXECUTOR_CHOICES = (EXECUTOR_NOOP, EXECUTOR_COMMAND)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class MissionsConfig:
    enabled: bool = True
    scheduler_enabled: bool = True
    http_enabled: bool = True
    telemetry_enabled: bool = True
    polling_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    data_dir: Path = field(default_factory=lambda: Path.cwd() / ".data" / "missions")
    templates_dir: Path = field(default_factory=lambda: Path.cwd() / "missions" / "templates")
    executor: str = EXECUTOR_NOOP
    scheduler_autostart: bool = False
    command_timeout_sec: int = 60


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip().strip('"').strip("'")
    except Exception as exc:
        print(f"Failed to read .env: {exc}", file=sys.stderr)
    return data


def get_env_path(config_dir: Path) -> Path:
    return config_dir / ".env"


def load_env_with_fallback(config_dir: Path) -> Dict[str, str]:
    data = load_env_file(get_env_path(config_dir))
    if data:
        return data
    return load_env_file(Path.cwd() / ".env")


def apply_env_defaults(env_file: Mapping[str, str], target_env: Optional[Dict[str, str]] = None) -> int:
    """Populate missing process env vars from .env-style mapping.

    Existing environment values are never overwritten.
    Returns the number of keys applied.
    """
    target = target_env if target_env is not None else os.environ  # type: ignore[assignment]
    applied = 0
    for raw_key, raw_value in (env_file or {}).items():
        key = str(raw_key or "").strip()
        if not key:
            continue
        if key in target and str(target.get(key) or "").strip():
            continue
        target[key] = str(raw_value or "")
        applied += 1
    return applied


def _env_flag(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = (env.get(key) or "").strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    return default


def _read_int_env(env: Mapping[str, str], key: str, default: int) -> int:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _read_path_env(env: Mapping[str, str], key: str, default: Path) -> Path:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    return Path(raw).expanduser().resolve()


def load_missions_config(env: Optional[Mapping[str, str]] = None) -> MissionsConfig:
    source = os.environ if env is None else env
    cwd = Path.cwd()
    enabled = _env_flag(source, ENABLED_KEY, True)
    executor = (source.get(EXECUTOR_KEY) or EXECUTOR_NOOP).strip().lower()
    if executor not in EXECUTOR_CHOICES:
        print(f"Unknown {EXECUTOR_KEY}={executor!r}; using '{EXECUTOR_NOOP}'.", file=sys.stderr)
        executor = EXECUTOR_NOOP
    return MissionsConfig(
        enabled=enabled,
        scheduler_enabled=_env_flag(source, SCHEDULER_ENABLED_KEY, enabled),
        http_enabled=_env_flag(source, HTTP_ENABLED_KEY, enabled),
        telemetry_enabled=_env_flag(source, TELEMETRY_ENABLED_KEY, enabled),
        polling_interval_ms=max(
            MIN_POLL_INTERVAL_MS,
            _read_int_env(source, POLL_INTERVAL_KEY, DEFAULT_POLL_INTERVAL_MS),
        ),
        data_dir=_read_path_env(source, DATA_DIR_KEY, cwd / ".data" / "missions"),
        templates_dir=_read_path_env(source, TEMPLATES_DIR_KEY, cwd / "missions" / "templates"),
        executor=executor,
        scheduler_autostart=_env_flag(source, AUTOSTART_KEY, False),
        command_timeout_sec=max(1, _read_int_env(source, COMMAND_TIMEOUT_KEY, 60)),
    )
