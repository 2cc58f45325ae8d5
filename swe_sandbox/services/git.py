"""Auto-commit of sandbox changes and in-sandbox git identity."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from swe_sandbox.config import SandboxSettings
from swe_sandbox.errors import AutoCommitFailure
from swe_sandbox.models.sandbox import ExecResult

logger = logging.getLogger(__name__)

AUTO_COMMIT_MESSAGE = "OpenSWE auto-commit"
SKIP_CI_TAG = "[skip ci]"
GIT_TIMEOUT_S = 60


@dataclass(frozen=True)
class GitIdentity:
    author_name: str
    author_email: str
    committer_name: str
    committer_email: str

    @classmethod
    def from_settings(cls, settings: SandboxSettings) -> "GitIdentity":
        return cls(
            author_name=settings.git_author_name,
            author_email=settings.git_author_email,
            committer_name=settings.committer_name,
            committer_email=settings.committer_email,
        )

    def as_env(self) -> dict[str, str]:
        return {
            "GIT_AUTHOR_NAME": self.author_name,
            "GIT_AUTHOR_EMAIL": self.author_email,
            "GIT_COMMITTER_NAME": self.committer_name,
            "GIT_COMMITTER_EMAIL": self.committer_email,
        }


class AutoCommitter:
    """Commits pending host-side changes with numbered messages.

    Numbering is per repository path and lives only as long as this object.
    """

    def __init__(self, identity: GitIdentity, skip_ci: bool = True) -> None:
        self._identity = identity
        self._skip_ci = skip_ci
        self._counters: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def identity(self) -> GitIdentity:
        return self._identity

    def next_message(self, repo_path: str) -> str:
        with self._lock:
            count = self._counters.get(repo_path, 0) + 1
            self._counters[repo_path] = count
        suffix = f" {SKIP_CI_TAG}" if self._skip_ci else ""
        return f"{AUTO_COMMIT_MESSAGE} #{count}{suffix}"

    def commit_changes(self, repo_path: str) -> bool:
        """Commit everything pending in ``repo_path``; never raises."""
        started = time.monotonic()
        logger.info("Checking host repository %s for changes", repo_path)
        try:
            status = self._git(["status", "--porcelain"], repo_path)
            if not status.stdout.strip():
                logger.info(
                    "No host changes detected in %s (%dms)",
                    repo_path,
                    (time.monotonic() - started) * 1000,
                )
                return False
            self._git(["add", "--all"], repo_path)
            message = self.next_message(repo_path)
            commit = self._git(["commit", "-m", message], repo_path)
        except AutoCommitFailure as exc:
            logger.error("Failed to commit sandbox changes in %s: %s", repo_path, exc)
            return False
        if commit.stderr.strip():
            logger.info("Git commit in %s completed with messages: %s", repo_path, commit.stderr.strip())
        logger.info(
            "Committed sandbox changes in %s as %r (%dms)",
            repo_path,
            message,
            (time.monotonic() - started) * 1000,
        )
        return True

    def _git(self, args: Sequence[str], cwd: str) -> subprocess.CompletedProcess[str]:
        env = os.environ.copy()
        env.update(self._identity.as_env())
        command = ["git", *args]
        try:
            result = subprocess.run(
                command,
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=GIT_TIMEOUT_S,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise AutoCommitFailure(f"{' '.join(command)}: {exc}") from exc
        if result.returncode != 0:
            raise AutoCommitFailure(
                f"{' '.join(command)} exited {result.returncode}: {result.stderr.strip()}"
            )
        return result


ExecFn = Callable[[str, Optional[str]], ExecResult]


def configure_sandbox_git(exec_fn: ExecFn, repo_path: str, identity: GitIdentity) -> bool:
    """Trust ``repo_path`` and set the commit identity inside a sandbox."""
    commands = [f"git config --global --add safe.directory {shlex.quote(repo_path)}"]
    if identity.committer_name:
        commands.append(f"git config --global user.name {shlex.quote(identity.committer_name)}")
    if identity.committer_email:
        commands.append(f"git config --global user.email {shlex.quote(identity.committer_email)}")

    configured = True
    for command in commands:
        result = exec_fn(command, repo_path)
        if result.exit_code != 0:
            logger.warning(
                "Failed to configure git inside sandbox at %s (%s): %s",
                repo_path,
                command,
                result.stderr.strip(),
            )
            configured = False
    return configured
