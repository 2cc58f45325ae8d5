"""HTTP request and response bodies for the sandbox API."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from swe_sandbox.models.dev_server import DevServerStatus
from swe_sandbox.models.sandbox import ExecResult, SandboxMetadata, SandboxResources


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ResourcesBody(ApiModel):
    cpu_count: Optional[float] = None
    memory_bytes: Optional[int] = None
    pids_limit: Optional[int] = None
    network_disabled: bool = True
    network_mode: Optional[str] = None

    @classmethod
    def from_resources(cls, resources: Optional[SandboxResources]) -> Optional["ResourcesBody"]:
        if resources is None:
            return None
        return cls(
            cpu_count=resources.cpu_count,
            memory_bytes=resources.memory_bytes,
            pids_limit=resources.pids_limit,
            network_disabled=resources.network_disabled,
            network_mode=resources.network_mode,
        )


class PortMappingBody(ApiModel):
    container_port: int
    host_port: int


class SandboxMetadataBody(ApiModel):
    container_name: str
    container_repo_path: str
    commit_on_change: bool
    command_timeout_sec: int
    host_repo_path: Optional[str] = None
    host_mount_path: Optional[str] = None
    workspace_path: Optional[str] = None
    requested_resources: Optional[ResourcesBody] = None
    applied_resources: Optional[ResourcesBody] = None
    exposed_ports: list[int] = Field(default_factory=list)
    port_mappings: list[PortMappingBody] = Field(default_factory=list)

    @classmethod
    def from_metadata(cls, metadata: SandboxMetadata) -> "SandboxMetadataBody":
        return cls(
            container_name=metadata.container_name,
            container_repo_path=metadata.container_repo_path,
            commit_on_change=metadata.commit_on_change,
            command_timeout_sec=metadata.command_timeout_sec,
            host_repo_path=metadata.host_repo_path,
            host_mount_path=metadata.host_mount_path,
            workspace_path=metadata.workspace_path,
            requested_resources=ResourcesBody.from_resources(metadata.requested_resources),
            applied_resources=ResourcesBody.from_resources(metadata.applied_resources),
            exposed_ports=list(metadata.exposed_ports),
            port_mappings=[
                PortMappingBody(container_port=m.container_port, host_port=m.host_port)
                for m in metadata.port_mappings
            ],
        )


class CreateSandboxRequest(ApiModel):
    image: Optional[str] = None
    host_repo_path: Optional[str] = None
    workspace_path: Optional[str] = None
    repo_name: Optional[str] = None
    container_repo_path: Optional[str] = None
    commit_on_change: bool = False
    command_timeout_sec: Optional[int] = Field(default=None, gt=0)


class SandboxBody(ApiModel):
    id: str
    metadata: SandboxMetadataBody
    preview_port: Optional[int] = None


class ExecResponse(ApiModel):
    exit_code: int
    stdout: str
    stderr: str
    combined: str
    duration_ms: int
    timed_out: bool

    @classmethod
    def from_result(cls, result: ExecResult) -> "ExecResponse":
        return cls(
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            combined=result.combined,
            duration_ms=result.duration_ms,
            timed_out=result.timed_out,
        )


class LifecycleResponse(ApiModel):
    success: bool
    message: str


class StartDevServerRequest(ApiModel):
    sandbox_session_id: Optional[str] = None
    command: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    workdir: Optional[str] = None


class StartDevServerResponse(ApiModel):
    success: bool
    message: str
    port: Optional[int] = None
    error: Optional[str] = None


class StopDevServerRequest(ApiModel):
    sandbox_session_id: Optional[str] = None
    workdir: Optional[str] = None


class DevServerStatusResponse(ApiModel):
    running: bool
    pid: Optional[int] = None
    recent_log: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_status(cls, status: DevServerStatus) -> "DevServerStatusResponse":
        return cls(running=status.running, pid=status.pid, recent_log=status.recent_log)
