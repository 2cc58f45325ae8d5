"""Services behind the sandbox API."""

from swe_sandbox.services.launcher import DevServerLauncher
from swe_sandbox.services.ports import PortAllocator
from swe_sandbox.services.proxy import ProxyGateway
from swe_sandbox.services.sandboxes import SandboxHandle, SandboxManager
from swe_sandbox.services.shell import ShellExecutor

__all__ = [
    "DevServerLauncher",
    "PortAllocator",
    "ProxyGateway",
    "SandboxHandle",
    "SandboxManager",
    "ShellExecutor",
]
