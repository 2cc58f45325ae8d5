"""Data models for sandbox interactions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

TIMEOUT_EXIT_CODE = 124
SHELL_UNAVAILABLE_EXIT_CODE = 127


@dataclass(frozen=True)
class SandboxResources:
    cpu_count: Optional[float] = None
    memory_bytes: Optional[int] = None
    pids_limit: Optional[int] = None
    network_disabled: bool = True
    network_mode: Optional[str] = None
    exposed_ports: tuple[int, ...] = ()


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str
    combined: str = ""
    duration_ms: int = 0

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def combine_streams(stdout: str, stderr: str) -> str:
    if stdout and stderr:
        return stdout.rstrip("\n") + "\n" + stderr
    return stdout or stderr


@dataclass(frozen=True)
class PortMapping:
    container_port: int
    host_port: int


@dataclass(frozen=True)
class WritableMount:
    source: str
    target: str


@dataclass(frozen=True)
class ProvisionRequest:
    """Everything a container provider needs to build one sandbox."""

    name: str
    image: str
    resources: SandboxResources
    working_directory: str
    mount_path: Optional[str] = None
    writable_mounts: tuple[WritableMount, ...] = ()
    port_mappings: tuple[PortMapping, ...] = ()
    default_timeout_sec: Optional[int] = None


@dataclass(frozen=True)
class ProvisionedSandbox:
    sandbox_id: str
    container_name: str
    applied_resources: Optional[SandboxResources] = None
    exposed_ports: Optional[tuple[int, ...]] = None


@dataclass(frozen=True)
class SandboxMetadata:
    container_name: str
    container_repo_path: str
    commit_on_change: bool
    command_timeout_sec: int
    host_repo_path: Optional[str] = None
    host_mount_path: Optional[str] = None
    workspace_path: Optional[str] = None
    requested_resources: Optional[SandboxResources] = None
    applied_resources: Optional[SandboxResources] = None
    exposed_ports: tuple[int, ...] = ()
    port_mappings: tuple[PortMapping, ...] = field(default_factory=tuple)

    def host_port_for(self, container_port: int) -> Optional[int]:
        for mapping in self.port_mappings:
            if mapping.container_port == container_port:
                return mapping.host_port
        return None
