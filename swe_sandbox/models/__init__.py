"""Shared data models for the swe-sandbox application."""

from swe_sandbox.models.commands import (
    ListFilesCommand,
    ReadFileCommand,
    SandboxCommand,
    ShellCommand,
)
from swe_sandbox.models.dev_server import (
    DevServerConfig,
    DevServerStatus,
    LaunchResult,
    LaunchState,
    ProjectType,
)
from swe_sandbox.models.sandbox import (
    ExecResult,
    PortMapping,
    ProvisionedSandbox,
    ProvisionRequest,
    SandboxMetadata,
    SandboxResources,
    WritableMount,
)

__all__ = [
    "DevServerConfig",
    "DevServerStatus",
    "ExecResult",
    "LaunchResult",
    "LaunchState",
    "ListFilesCommand",
    "PortMapping",
    "ProjectType",
    "ProvisionRequest",
    "ProvisionedSandbox",
    "ReadFileCommand",
    "SandboxCommand",
    "SandboxMetadata",
    "SandboxResources",
    "ShellCommand",
    "WritableMount",
]
