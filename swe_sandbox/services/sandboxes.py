"""Sandbox registry and lifecycle management."""

from __future__ import annotations

import logging
import re
import threading
import time
from pathlib import Path
from typing import Mapping, Optional
from uuid import uuid4

from swe_sandbox.config import SandboxSettings
from swe_sandbox.errors import (
    PortAllocationShortfall,
    SandboxCreationError,
    SandboxError,
    SandboxNotFound,
)
from swe_sandbox.models.sandbox import (
    ExecResult,
    PortMapping,
    ProvisionRequest,
    SandboxMetadata,
    SandboxResources,
    WritableMount,
)
from swe_sandbox.providers.sandbox.base import SandboxProvider
from swe_sandbox.services.git import AutoCommitter, GitIdentity, configure_sandbox_git
from swe_sandbox.services.ports import PortAllocator

logger = logging.getLogger(__name__)

CONTAINER_NAME_PREFIX = "openswe"
MAX_CONTAINER_NAME_LENGTH = 63
MAX_NAME_COMPONENT_LENGTH = 40
WORKSPACE_ROOT = "/workspace"

_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9_.-]+")


def _sanitize_name_component(value: str) -> str:
    sanitized = _INVALID_NAME_CHARS.sub("-", value.lower()).strip(".-")
    return sanitized or "sandbox"


def build_container_name(repo_name: str) -> str:
    """``openswe-<repo>-<8 hex>`` restricted to docker's name alphabet."""
    base = _sanitize_name_component(repo_name)[:MAX_NAME_COMPONENT_LENGTH].strip(".-")
    name = f"{CONTAINER_NAME_PREFIX}-{base or 'sandbox'}-{uuid4().hex[:8]}"
    return name[:MAX_CONTAINER_NAME_LENGTH].strip(".-")


def resolve_repo_name(repo_name: Optional[str], mount_source: Optional[str]) -> str:
    if repo_name:
        return repo_name
    if mount_source:
        base = Path(mount_source).name
        if base:
            return base
    return f"sandbox-{uuid4()}"


class SandboxHandle:
    """A live sandbox owned by a ``SandboxManager``."""

    def __init__(self, sandbox_id: str, metadata: SandboxMetadata, manager: "SandboxManager") -> None:
        self._id = sandbox_id
        self._metadata = metadata
        self._manager = manager

    @property
    def id(self) -> str:
        return self._id

    @property
    def metadata(self) -> SandboxMetadata:
        return self._metadata

    def exec(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout_sec: Optional[float] = None,
    ) -> ExecResult:
        return self._manager.exec(self._id, command, cwd=cwd, env=env, timeout_sec=timeout_sec)

    def __repr__(self) -> str:
        return f"SandboxHandle(id={self._id!r}, container={self._metadata.container_name!r})"


class SandboxManager:
    def __init__(
        self,
        provider: SandboxProvider,
        settings: SandboxSettings | None = None,
        port_allocator: PortAllocator | None = None,
        committer: AutoCommitter | None = None,
    ) -> None:
        self._provider = provider
        self._settings = settings or SandboxSettings()
        self._ports = port_allocator or PortAllocator()
        self._identity = GitIdentity.from_settings(self._settings)
        self._committer = committer or AutoCommitter(self._identity, skip_ci=self._settings.skip_ci)
        self._sandboxes: dict[str, SandboxHandle] = {}
        self._lock = threading.Lock()

    @property
    def provider(self) -> SandboxProvider:
        return self._provider

    @property
    def settings(self) -> SandboxSettings:
        return self._settings

    def requested_resources(self) -> SandboxResources:
        settings = self._settings
        return SandboxResources(
            cpu_count=settings.cpu_count,
            memory_bytes=settings.memory_bytes,
            pids_limit=settings.pids_limit,
            network_disabled=not settings.network_enabled,
            network_mode=settings.network_mode,
            exposed_ports=settings.exposed_ports,
        )

    def create_sandbox(
        self,
        image: Optional[str] = None,
        host_repo_path: Optional[str] = None,
        workspace_path: Optional[str] = None,
        repo_name: Optional[str] = None,
        container_repo_path: Optional[str] = None,
        commit_on_change: bool = False,
        command_timeout_sec: Optional[int] = None,
    ) -> SandboxHandle:
        mount_source = workspace_path or host_repo_path
        if mount_source:
            mount_source = str(Path(mount_source).resolve())
        name = resolve_repo_name(repo_name, mount_source)
        if not container_repo_path:
            if workspace_path:
                container_repo_path = f"{WORKSPACE_ROOT}/src"
            else:
                container_repo_path = f"{WORKSPACE_ROOT}/{name}"
        container_name = build_container_name(name)
        timeout = command_timeout_sec or self._settings.command_timeout_sec
        resources = self.requested_resources()
        port_mappings = self._allocate_ports(resources.exposed_ports)

        writable_mounts: tuple[WritableMount, ...] = ()
        if mount_source:
            writable_mounts = (WritableMount(source=mount_source, target=container_repo_path),)
        request = ProvisionRequest(
            name=container_name,
            image=image or self._settings.image,
            resources=resources,
            working_directory=container_repo_path,
            mount_path=mount_source,
            writable_mounts=writable_mounts,
            port_mappings=tuple(port_mappings),
            default_timeout_sec=timeout,
        )

        started = time.monotonic()
        logger.info(
            "Creating sandbox %s (image=%s, mount=%s, ports=%s)",
            container_name,
            request.image,
            mount_source or "-",
            ",".join(f"{m.container_port}->{m.host_port}" for m in port_mappings) or "none",
        )
        try:
            provisioned = self._provider.create_sandbox(request)
        except SandboxCreationError:
            raise
        except Exception as exc:
            logger.error("Failed to create sandbox %s: %s", container_name, exc)
            raise SandboxCreationError(f"Failed to create sandbox {container_name}: {exc}") from exc

        exposed = provisioned.exposed_ports
        if exposed is None:
            exposed = tuple(m.host_port for m in port_mappings)
        metadata = SandboxMetadata(
            container_name=provisioned.container_name,
            container_repo_path=container_repo_path,
            commit_on_change=commit_on_change,
            command_timeout_sec=timeout,
            host_repo_path=mount_source if commit_on_change else host_repo_path,
            host_mount_path=mount_source,
            workspace_path=workspace_path,
            requested_resources=resources,
            applied_resources=provisioned.applied_resources,
            exposed_ports=tuple(exposed),
            port_mappings=tuple(port_mappings),
        )
        handle = SandboxHandle(provisioned.sandbox_id, metadata, self)
        with self._lock:
            self._sandboxes[handle.id] = handle
        logger.info(
            "Created sandbox %s (%s) in %dms",
            handle.id,
            metadata.container_name,
            (time.monotonic() - started) * 1000,
        )

        try:
            configure_sandbox_git(
                lambda command, cwd: self._provider.exec(handle.id, command, cwd=cwd),
                container_repo_path,
                self._identity,
            )
        except SandboxError as exc:
            logger.warning("Failed to configure git inside sandbox %s: %s", handle.id, exc)
        return handle

    def _allocate_ports(self, container_ports: tuple[int, ...]) -> list[PortMapping]:
        if not container_ports:
            return []
        mappings = self._ports.allocate_mappings(container_ports)
        if len(mappings) < len(container_ports):
            shortfall = PortAllocationShortfall(
                requested=container_ports,
                allocated=[m.host_port for m in mappings],
            )
            logger.warning("%s; continuing with partial port mappings", shortfall)
        return mappings

    def exec(
        self,
        sandbox_id: str,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout_sec: Optional[float] = None,
    ) -> ExecResult:
        handle = self.get_sandbox(sandbox_id)
        if handle is None:
            raise SandboxNotFound(sandbox_id)
        metadata = handle.metadata
        result = self._provider.exec(
            sandbox_id,
            command,
            cwd=cwd or metadata.container_repo_path,
            env=env,
            timeout_s=timeout_sec if timeout_sec is not None else metadata.command_timeout_sec,
        )
        if result.exit_code == 0:
            self._commit_if_enabled(metadata)
        return result

    def _commit_if_enabled(self, metadata: SandboxMetadata) -> bool:
        if not metadata.commit_on_change or not metadata.host_repo_path:
            return False
        return self._committer.commit_changes(metadata.host_repo_path)

    def stop_sandbox(self, sandbox_id: str) -> bool:
        handle = self.get_sandbox(sandbox_id)
        if handle is None:
            logger.warning("Cannot stop unknown sandbox %s", sandbox_id)
            return False
        self._commit_if_enabled(handle.metadata)
        try:
            self._provider.stop_sandbox(sandbox_id)
        except Exception as exc:
            logger.error("Failed to stop sandbox %s: %s", sandbox_id, exc)
            return False
        logger.info("Stopped sandbox %s", sandbox_id)
        return True

    def delete_sandbox(self, sandbox_id: str) -> bool:
        handle = self.get_sandbox(sandbox_id)
        if handle is not None:
            self._commit_if_enabled(handle.metadata)
        try:
            deleted = self._provider.delete_sandbox(sandbox_id)
        except Exception as exc:
            logger.error("Failed to delete sandbox %s: %s", sandbox_id, exc)
            return False
        if deleted:
            with self._lock:
                self._sandboxes.pop(sandbox_id, None)
            logger.info("Deleted sandbox %s", sandbox_id)
        else:
            logger.warning("Provider did not delete sandbox %s", sandbox_id)
        return deleted

    def get_sandbox(self, sandbox_id: str) -> Optional[SandboxHandle]:
        with self._lock:
            return self._sandboxes.get(sandbox_id)

    def require_sandbox(self, sandbox_id: str) -> SandboxHandle:
        handle = self.get_sandbox(sandbox_id)
        if handle is None:
            raise SandboxNotFound(sandbox_id)
        return handle

    def get_sandbox_metadata(self, sandbox_id: str) -> Optional[SandboxMetadata]:
        handle = self.get_sandbox(sandbox_id)
        return handle.metadata if handle else None

    def list_sandboxes(self) -> list[SandboxHandle]:
        with self._lock:
            return list(self._sandboxes.values())

    def get_host_port_for_container(self, sandbox_id: str, container_port: int) -> Optional[int]:
        metadata = self.get_sandbox_metadata(sandbox_id)
        if metadata is None:
            return None
        return metadata.host_port_for(container_port)

    def get_preview_port(self, sandbox_id: str) -> Optional[int]:
        metadata = self.get_sandbox_metadata(sandbox_id)
        if metadata is None or not metadata.exposed_ports:
            return None
        return metadata.exposed_ports[0]

    def lookup_port_mappings(self, sandbox_id: str) -> Optional[list[PortMapping]]:
        """Port mappings from metadata, falling back to a live provider query."""
        metadata = self.get_sandbox_metadata(sandbox_id)
        if metadata is not None and metadata.port_mappings:
            return list(metadata.port_mappings)
        try:
            live = self._provider.get_port_mappings(sandbox_id)
        except Exception as exc:
            logger.warning("Failed to query port mappings for sandbox %s: %s", sandbox_id, exc)
            return None
        return list(live) if live else None
