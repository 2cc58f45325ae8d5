"""Provider package for container backends."""

from swe_sandbox.providers.sandbox import DockerProvider, LocalProvider, SandboxProvider

__all__ = [
    "DockerProvider",
    "LocalProvider",
    "SandboxProvider",
]
