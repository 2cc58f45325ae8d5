"""Runtime settings for the sandbox subsystem.

Merge order: built-in defaults, then the optional YAML file named by
``SWE_SANDBOX_CONFIG`` (a ``sandbox:`` mapping using the field names below),
then environment variables. Values that fail to parse fall back to whatever
the previous layer supplied.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

DEFAULT_IMAGE = "openswe-sandbox:latest"
DEFAULT_MEMORY_LIMIT_BYTES = 2 * 1024 * 1024 * 1024
DEFAULT_CPU_COUNT = 2.0
DEFAULT_PIDS_LIMIT = 512
DEFAULT_COMMAND_TIMEOUT_SEC = 900
# Common dev server ports: React/Next.js, Vite, Django, generic, Phoenix/Gatsby, Flask
DEFAULT_EXPOSED_PORTS = (3000, 5173, 8000, 8080, 4000, 5000)
DEFAULT_COMMIT_AUTHOR_NAME = "Open SWE"
DEFAULT_COMMIT_AUTHOR_EMAIL = "opensource@langchain.dev"

_NETWORK_OFF_VALUES = {"none", "false", "off", "disable", "disabled"}
_TRUE_VALUES = {"true", "1", "yes", "y"}
_FALSE_VALUES = {"false", "0", "no", "n"}


@dataclass(frozen=True)
class SandboxSettings:
    image: str = DEFAULT_IMAGE
    provider: str = "local"
    local_working_directory: str = "."
    memory_bytes: int = DEFAULT_MEMORY_LIMIT_BYTES
    cpu_count: float = DEFAULT_CPU_COUNT
    pids_limit: int = DEFAULT_PIDS_LIMIT
    network_mode: Optional[str] = None
    command_timeout_sec: int = DEFAULT_COMMAND_TIMEOUT_SEC
    exposed_ports: tuple[int, ...] = DEFAULT_EXPOSED_PORTS
    git_author_name: str = DEFAULT_COMMIT_AUTHOR_NAME
    git_author_email: str = DEFAULT_COMMIT_AUTHOR_EMAIL
    git_committer_name: Optional[str] = None
    git_committer_email: Optional[str] = None
    skip_ci: bool = True
    dev_server_startup_timeout_sec: float = 15.0
    dev_server_poll_interval_sec: float = 1.0
    dev_server_log_file: str = "/tmp/dev-server.log"
    dev_server_pid_file: str = "/tmp/dev-server.pid"
    log_level: str = "INFO"

    @property
    def network_enabled(self) -> bool:
        return bool(self.network_mode)

    @property
    def committer_name(self) -> str:
        return self.git_committer_name or self.git_author_name

    @property
    def committer_email(self) -> str:
        return self.git_committer_email or self.git_author_email


def parse_positive_int(value: Any, fallback: int) -> int:
    if value is None or value == "":
        return fallback
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


def parse_positive_float(value: Any, fallback: float) -> float:
    if value is None or value == "":
        return fallback
    try:
        parsed = float(str(value).strip())
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


def parse_bool(value: Any, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None or value == "":
        return fallback
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return fallback


def parse_network_mode(value: Any) -> Optional[str]:
    if value is None:
        return None
    raw = str(value).strip()
    if not raw or raw.lower() in _NETWORK_OFF_VALUES:
        return None
    return raw


def parse_ports(value: Any, fallback: tuple[int, ...]) -> tuple[int, ...]:
    if value is None or value == "":
        return fallback
    items = value if isinstance(value, (list, tuple)) else str(value).split(",")
    ports: list[int] = []
    for item in items:
        try:
            port = int(str(item).strip())
        except ValueError:
            continue
        if 0 < port < 65536 and port not in ports:
            ports.append(port)
    return tuple(ports) if ports else fallback


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


def _apply(settings: SandboxSettings, raw: Mapping[str, Any]) -> SandboxSettings:
    known = {item.name for item in fields(SandboxSettings)}
    updates: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known or value is None:
            continue
        current = getattr(settings, key)
        if key == "network_mode":
            updates[key] = parse_network_mode(value)
        elif key == "exposed_ports":
            updates[key] = parse_ports(value, current)
        elif key == "skip_ci":
            updates[key] = parse_bool(value, current)
        elif key in ("memory_bytes", "pids_limit", "command_timeout_sec"):
            updates[key] = parse_positive_int(value, current)
        elif key in (
            "cpu_count",
            "dev_server_startup_timeout_sec",
            "dev_server_poll_interval_sec",
        ):
            updates[key] = parse_positive_float(value, current)
        else:
            cleaned = _clean(value)
            if cleaned is not None:
                updates[key] = cleaned
    return replace(settings, **updates)


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    section = data.get("sandbox", data) if isinstance(data, dict) else {}
    return section if isinstance(section, dict) else {}


_ENV_KEYS = {
    "SANDBOX_DOCKER_IMAGE": "image",
    "SWE_SANDBOX_PROVIDER": "provider",
    "SWE_SANDBOX_WORKDIR": "local_working_directory",
    "LOCAL_SANDBOX_MEMORY": "memory_bytes",
    "LOCAL_SANDBOX_CPUS": "cpu_count",
    "LOCAL_SANDBOX_PIDS": "pids_limit",
    "LOCAL_SANDBOX_TIMEOUT_SEC": "command_timeout_sec",
    "LOCAL_SANDBOX_EXPOSED_PORTS": "exposed_ports",
    "GIT_AUTHOR_NAME": "git_author_name",
    "GIT_AUTHOR_EMAIL": "git_author_email",
    "GIT_COMMITTER_NAME": "git_committer_name",
    "GIT_COMMITTER_EMAIL": "git_committer_email",
    "SKIP_CI_UNTIL_LAST_COMMIT": "skip_ci",
    "DEV_SERVER_STARTUP_TIMEOUT_SEC": "dev_server_startup_timeout_sec",
    "DEV_SERVER_POLL_INTERVAL_SEC": "dev_server_poll_interval_sec",
    "DEV_SERVER_LOG_FILE": "dev_server_log_file",
    "DEV_SERVER_PID_FILE": "dev_server_pid_file",
    "SWE_SANDBOX_LOG_LEVEL": "log_level",
}


def load_settings(
    env: Optional[Mapping[str, str]] = None,
    config_path: Optional[str] = None,
) -> SandboxSettings:
    source = os.environ if env is None else env
    settings = SandboxSettings(local_working_directory=os.getcwd())

    path = config_path or source.get("SWE_SANDBOX_CONFIG")
    if path:
        settings = _apply(settings, _load_yaml(Path(path)))

    from_env = {field_name: source.get(key) for key, field_name in _ENV_KEYS.items()}
    settings = _apply(settings, from_env)
    # A set-but-off value still overrides the YAML layer.
    if "LOCAL_SANDBOX_NETWORK" in source:
        settings = replace(settings, network_mode=parse_network_mode(source["LOCAL_SANDBOX_NETWORK"]))
    return settings
