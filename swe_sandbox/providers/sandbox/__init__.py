"""Sandbox provider implementations and interfaces."""

from swe_sandbox.providers.sandbox.base import SandboxProvider
from swe_sandbox.providers.sandbox.docker import DockerProvider
from swe_sandbox.providers.sandbox.local import LocalProvider

__all__ = ["DockerProvider", "LocalProvider", "SandboxProvider"]
