# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the sandbox test suite.

Provides:
- A real (empty) git repository for auto-commit scenarios
- Settings with port exposure disabled so tests never bind host ports
- An in-memory container provider that records every call
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Mapping, Optional, Sequence

import pytest

from swe_sandbox.config import SandboxSettings
from swe_sandbox.models.sandbox import (
    ExecResult,
    PortMapping,
    ProvisionedSandbox,
    ProvisionRequest,
)


# =============================================================================
# Repository Fixtures
# =============================================================================


def _git_log_subjects(repo: Path) -> list[str]:
    result = subprocess.run(
        ["git", "log", "--format=%s"],
        cwd=repo,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        return []
    return [line for line in result.stdout.splitlines() if line]


@pytest.fixture
def git_log():
    """Commit subjects of a repository, newest first."""
    return _git_log_subjects


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create an initialized git repository with no commits.

    The repository lives in a subdirectory so other tmp_path content is never
    picked up as untracked changes.
    """
    repo = tmp_path / "repo"
    repo.mkdir()
    subprocess.run(["git", "init", "-q"], cwd=repo, check=True)
    return repo


# =============================================================================
# Settings Fixtures
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> SandboxSettings:
    return SandboxSettings(
        local_working_directory=str(tmp_path),
        exposed_ports=(),
        dev_server_log_file=str(tmp_path / "dev-server.log"),
        dev_server_pid_file=str(tmp_path / "dev-server.pid"),
        dev_server_startup_timeout_sec=0.5,
        dev_server_poll_interval_sec=0.1,
    )


# =============================================================================
# Provider Fakes
# =============================================================================


class FakeProvider:
    """Container provider that keeps everything in memory."""

    def __init__(self) -> None:
        self.requests: list[ProvisionRequest] = []
        self.exec_calls: list[dict] = []
        self.stopped: list[str] = []
        self.deleted: list[str] = []
        self.exec_result = ExecResult(exit_code=0, stdout="", stderr="", combined="")
        self.delete_result = True
        self.live_port_mappings: Optional[list[PortMapping]] = None
        self.create_error: Optional[Exception] = None
        self._counter = 0

    def create_sandbox(self, request: ProvisionRequest) -> ProvisionedSandbox:
        if self.create_error is not None:
            raise self.create_error
        self.requests.append(request)
        self._counter += 1
        return ProvisionedSandbox(
            sandbox_id=f"fake-{self._counter}",
            container_name=request.name,
        )

    def exec(
        self,
        sandbox_id: str,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout_s: Optional[float] = None,
    ) -> ExecResult:
        self.exec_calls.append(
            {"sandbox_id": sandbox_id, "command": command, "cwd": cwd, "env": env, "timeout_s": timeout_s}
        )
        return self.exec_result

    def stop_sandbox(self, sandbox_id: str) -> None:
        self.stopped.append(sandbox_id)

    def delete_sandbox(self, sandbox_id: str) -> bool:
        self.deleted.append(sandbox_id)
        return self.delete_result

    def get_port_mappings(self, sandbox_id: str) -> Optional[Sequence[PortMapping]]:
        return self.live_port_mappings

    def user_commands(self) -> list[str]:
        """Commands other than the git identity setup run at creation."""
        return [call["command"] for call in self.exec_calls if not call["command"].startswith("git config")]


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()
