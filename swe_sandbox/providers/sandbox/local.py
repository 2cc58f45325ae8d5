"""Local sandbox provider implementation.

A local sandbox is a directory on the host. Commands run through a
``ShellExecutor`` with their working directory confined to that directory;
there is no process or network isolation.
"""

from __future__ import annotations

import posixpath
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence
from uuid import uuid4

from swe_sandbox.models.sandbox import (
    ExecResult,
    PortMapping,
    ProvisionedSandbox,
    ProvisionRequest,
)
from swe_sandbox.providers.sandbox.base import SandboxProvider
from swe_sandbox.services.shell import ShellExecutor


@dataclass(frozen=True)
class _SandboxRecord:
    sandbox_id: str
    root: Path
    state_dir: Path
    working_directory: str
    port_mappings: tuple[PortMapping, ...]
    default_timeout_sec: Optional[int]


class LocalProvider(SandboxProvider):
    def __init__(
        self,
        base_dir: str | None = None,
        executor: ShellExecutor | None = None,
    ) -> None:
        self._base_dir = Path(base_dir) if base_dir else None
        self._executor = executor or ShellExecutor()
        self._sandboxes: dict[str, _SandboxRecord] = {}
        self._stopped: set[str] = set()

    @property
    def base_dir(self) -> Path:
        if self._base_dir is None:
            self._base_dir = Path(tempfile.mkdtemp(prefix="swe-sandbox-local-"))
        return self._base_dir

    def create_sandbox(self, request: ProvisionRequest) -> ProvisionedSandbox:
        sandbox_id = f"{request.name}-{uuid4().hex[:8]}"
        state_dir = self.base_dir / sandbox_id
        state_dir.mkdir(parents=True, exist_ok=False)

        source = request.mount_path
        if request.writable_mounts:
            source = request.writable_mounts[0].source
        if source:
            root = Path(source).resolve()
            root.mkdir(parents=True, exist_ok=True)
        else:
            root = state_dir / "root"
            root.mkdir()

        self._sandboxes[sandbox_id] = _SandboxRecord(
            sandbox_id=sandbox_id,
            root=root,
            state_dir=state_dir,
            working_directory=request.working_directory,
            port_mappings=tuple(request.port_mappings),
            default_timeout_sec=request.default_timeout_sec,
        )
        return ProvisionedSandbox(
            sandbox_id=sandbox_id,
            container_name=request.name,
            applied_resources=None,
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
        record = self._get_record(sandbox_id)
        workdir = self._resolve_path(sandbox_id, cwd) if cwd else record.root
        merged_env = {
            # `git config --global` inside the sandbox writes here.
            "GIT_CONFIG_GLOBAL": str(record.state_dir / "gitconfig"),
            "SANDBOX_ROOT": str(record.root),
        }
        if env:
            merged_env.update(env)
        timeout = timeout_s if timeout_s is not None else record.default_timeout_sec
        return self._executor.execute(
            command,
            cwd=str(workdir),
            env=merged_env,
            timeout_sec=timeout,
        )

    def stop_sandbox(self, sandbox_id: str) -> None:
        self._get_record(sandbox_id)
        self._stopped.add(sandbox_id)

    def delete_sandbox(self, sandbox_id: str) -> bool:
        record = self._sandboxes.get(sandbox_id)
        if record is None:
            return False
        shutil.rmtree(record.state_dir, ignore_errors=True)
        self._sandboxes.pop(sandbox_id, None)
        self._stopped.discard(sandbox_id)
        return True

    def get_port_mappings(self, sandbox_id: str) -> Optional[Sequence[PortMapping]]:
        record = self._sandboxes.get(sandbox_id)
        if record is None or not record.port_mappings:
            return None
        return list(record.port_mappings)

    def is_stopped(self, sandbox_id: str) -> bool:
        return sandbox_id in self._stopped

    def root_for(self, sandbox_id: str) -> Path:
        return self._get_record(sandbox_id).root

    def _get_record(self, sandbox_id: str) -> _SandboxRecord:
        if sandbox_id not in self._sandboxes:
            raise KeyError(f"Unknown sandbox id: {sandbox_id}")
        return self._sandboxes[sandbox_id]

    def _resolve_path(self, sandbox_id: str, path: str) -> Path:
        record = self._get_record(sandbox_id)
        root = record.root.resolve()
        candidate = Path(self._rebase(record, path))
        if not candidate.is_absolute():
            candidate = root / candidate
        resolved = candidate.resolve()
        if root != resolved and root not in resolved.parents:
            raise ValueError(f"Path escapes sandbox: {path}")
        return resolved

    @staticmethod
    def _rebase(record: _SandboxRecord, path: str) -> str:
        """Map paths under the container working directory onto the host root."""
        container_root = posixpath.normpath(record.working_directory)
        normalized = posixpath.normpath(path)
        if normalized == container_root:
            return str(record.root)
        if normalized.startswith(container_root + "/"):
            return str(record.root / normalized[len(container_root) + 1:])
        return path
