"""Docker sandbox provider driven through the docker CLI."""

from __future__ import annotations

import json
import logging
import math
import shlex
from typing import Mapping, Optional, Sequence

from swe_sandbox.errors import SandboxCreationError
from swe_sandbox.models.sandbox import (
    ExecResult,
    PortMapping,
    ProvisionedSandbox,
    ProvisionRequest,
    SandboxResources,
)
from swe_sandbox.providers.sandbox.base import SandboxProvider
from swe_sandbox.services.shell import ShellExecutor

logger = logging.getLogger(__name__)

DOCKER_CLI_TIMEOUT_S = 120
# The local executor times out first and reports 124; the in-container
# `timeout` then kills whatever the killed docker CLI left behind.
CONTAINER_KILL_GRACE_S = 2


def parse_port_bindings(raw: str) -> list[PortMapping]:
    """Parse ``docker inspect`` ``NetworkSettings.Ports`` JSON."""
    try:
        ports = json.loads(raw or "null")
    except json.JSONDecodeError:
        return []
    if not isinstance(ports, dict):
        return []
    mappings: list[PortMapping] = []
    for key, bindings in ports.items():
        if not bindings:
            continue
        try:
            # key looks like "3000/tcp"
            container_port = int(str(key).split("/")[0])
            host_port = int(bindings[0].get("HostPort", ""))
        except (ValueError, AttributeError, IndexError):
            continue
        mappings.append(PortMapping(container_port=container_port, host_port=host_port))
    return mappings


class DockerProvider(SandboxProvider):
    def __init__(self, executor: ShellExecutor | None = None, docker_bin: str = "docker") -> None:
        self._executor = executor or ShellExecutor()
        self._docker = docker_bin

    def _run(self, args: Sequence[str], timeout_s: float = DOCKER_CLI_TIMEOUT_S) -> ExecResult:
        return self._executor.execute(
            shlex.join([self._docker, *args]),
            timeout_sec=timeout_s,
        )

    def build_run_args(self, request: ProvisionRequest) -> list[str]:
        resources = request.resources
        args = ["run", "-d", f"--name={request.name}"]
        if resources.memory_bytes:
            args.append(f"--memory={resources.memory_bytes}")
        if resources.cpu_count:
            args.append(f"--cpus={resources.cpu_count:g}")
        if resources.pids_limit:
            args.append(f"--pids-limit={resources.pids_limit}")
        if resources.network_disabled or not resources.network_mode:
            args.append("--network=none")
        else:
            args.append(f"--network={resources.network_mode}")
        for mapping in request.port_mappings:
            args.extend(["-p", f"{mapping.host_port}:{mapping.container_port}"])
        mounted_targets = set()
        for mount in request.writable_mounts:
            args.extend(["-v", f"{mount.source}:{mount.target}:rw"])
            mounted_targets.add(mount.target)
        if request.mount_path and request.working_directory not in mounted_targets:
            args.extend(["-v", f"{request.mount_path}:{request.working_directory}:rw"])
        args.extend(["-w", request.working_directory, request.image, "sleep", "infinity"])
        return args

    def create_sandbox(self, request: ProvisionRequest) -> ProvisionedSandbox:
        result = self._run(self.build_run_args(request))
        if result.exit_code != 0:
            raise SandboxCreationError(
                f"docker run failed for {request.name} (exit {result.exit_code}): "
                f"{result.stderr.strip()}"
            )
        container_id = result.stdout.strip().splitlines()[-1][:12]
        return ProvisionedSandbox(
            sandbox_id=container_id,
            container_name=request.name,
            applied_resources=self._inspect_resources(container_id),
            exposed_ports=tuple(m.host_port for m in request.port_mappings),
        )

    def exec(
        self,
        sandbox_id: str,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout_s: Optional[float] = None,
    ) -> ExecResult:
        args = ["exec"]
        if cwd:
            args.extend(["-w", cwd])
        for key, value in (env or {}).items():
            if value:
                args.extend(["-e", f"{key}={value}"])
        args.append(sandbox_id)
        if timeout_s:
            args.extend(["timeout", "-s", "KILL", str(math.ceil(timeout_s) + CONTAINER_KILL_GRACE_S)])
        args.extend(["sh", "-c", command])
        return self._executor.execute(shlex.join([self._docker, *args]), timeout_sec=timeout_s)

    def stop_sandbox(self, sandbox_id: str) -> None:
        result = self._run(["stop", sandbox_id])
        if result.exit_code != 0:
            raise RuntimeError(f"docker stop {sandbox_id} failed: {result.stderr.strip()}")

    def delete_sandbox(self, sandbox_id: str) -> bool:
        result = self._run(["rm", "-f", sandbox_id])
        if result.exit_code != 0:
            logger.warning("docker rm -f %s failed: %s", sandbox_id, result.stderr.strip())
            return False
        return True

    def get_port_mappings(self, sandbox_id: str) -> Optional[Sequence[PortMapping]]:
        result = self._run(
            ["inspect", "-f", "{{json .NetworkSettings.Ports}}", sandbox_id],
            timeout_s=10,
        )
        if result.exit_code != 0:
            logger.debug("docker inspect %s failed: %s", sandbox_id, result.stderr.strip())
            return None
        mappings = parse_port_bindings(result.stdout.strip())
        logger.info(
            "Retrieved port mappings from docker for %s: %s",
            sandbox_id,
            ", ".join(f"{m.container_port}->{m.host_port}" for m in mappings) or "none",
        )
        return mappings or None

    def _inspect_resources(self, container_id: str) -> Optional[SandboxResources]:
        result = self._run(
            ["inspect", "-f", "{{json .HostConfig}}", container_id],
            timeout_s=10,
        )
        if result.exit_code != 0:
            return None
        try:
            host_config = json.loads(result.stdout.strip() or "{}")
        except json.JSONDecodeError:
            return None
        nano_cpus = host_config.get("NanoCpus") or 0
        network_mode = host_config.get("NetworkMode")
        return SandboxResources(
            cpu_count=nano_cpus / 1e9 if nano_cpus else None,
            memory_bytes=host_config.get("Memory") or None,
            pids_limit=host_config.get("PidsLimit") or None,
            network_disabled=network_mode == "none",
            network_mode=network_mode,
        )
