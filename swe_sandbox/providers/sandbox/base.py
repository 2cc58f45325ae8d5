"""Sandbox provider interface."""

from __future__ import annotations

from typing import Mapping, Optional, Protocol, Sequence

from swe_sandbox.models.sandbox import (
    ExecResult,
    PortMapping,
    ProvisionedSandbox,
    ProvisionRequest,
)


class SandboxProvider(Protocol):
    def create_sandbox(self, request: ProvisionRequest) -> ProvisionedSandbox:
        ...

    def exec(
        self,
        sandbox_id: str,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout_s: Optional[float] = None,
    ) -> ExecResult:
        ...

    def stop_sandbox(self, sandbox_id: str) -> None:
        ...

    def delete_sandbox(self, sandbox_id: str) -> bool:
        ...

    def get_port_mappings(self, sandbox_id: str) -> Optional[Sequence[PortMapping]]:
        ...
