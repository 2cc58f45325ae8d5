"""Error taxonomy for the sandbox and process execution subsystem."""

from __future__ import annotations

from typing import Sequence


class SandboxError(Exception):
    """Base class for sandbox subsystem errors."""


class ShellUnavailable(SandboxError):
    def __init__(self, checked_paths: Sequence[str]) -> None:
        self.checked_paths = tuple(checked_paths)
        super().__init__(
            "No shell available to execute command. "
            f"Checked paths: {', '.join(self.checked_paths)}"
        )


class SpawnFailure(SandboxError):
    def __init__(self, command: str, shell: str, reason: str) -> None:
        self.command = command
        self.shell = shell
        super().__init__(f"Failed to spawn {shell} for command {command!r}: {reason}")


class CommandTimeout(SandboxError):
    def __init__(self, timeout_sec: float) -> None:
        self.timeout_sec = timeout_sec
        super().__init__(f"Command timed out after {timeout_sec:g} seconds")


class PortAllocationShortfall(SandboxError):
    def __init__(self, requested: Sequence[int], allocated: Sequence[int]) -> None:
        self.requested = tuple(requested)
        self.allocated = tuple(allocated)
        super().__init__(
            f"Allocated {len(self.allocated)} of {len(self.requested)} requested ports"
        )


class SandboxCreationError(SandboxError):
    pass


class SandboxNotFound(SandboxError):
    def __init__(self, sandbox_id: str) -> None:
        self.sandbox_id = sandbox_id
        super().__init__(f"Unknown sandbox id: {sandbox_id}")


class InvalidPort(SandboxError):
    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(f"Invalid port number: {value!r}")


class ProxyConnectionRefused(SandboxError):
    def __init__(self, port: int) -> None:
        self.port = port
        super().__init__(
            f"No server running on port {port}. Start your development server first."
        )


class ProxyUpstreamError(SandboxError):
    pass


class DevServerStartTimeout(SandboxError):
    def __init__(self, port: int, timeout_sec: float) -> None:
        self.port = port
        self.timeout_sec = timeout_sec
        super().__init__(
            f"Dev server on port {port} not ready after {timeout_sec:g} seconds"
        )


class AutoCommitFailure(SandboxError):
    pass
