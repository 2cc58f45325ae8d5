"""Local shell command execution with timeouts and bounded output."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from typing import Mapping, Optional, Sequence

from swe_sandbox.errors import CommandTimeout, ShellUnavailable, SpawnFailure
from swe_sandbox.models.sandbox import (
    SHELL_UNAVAILABLE_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    ExecResult,
    combine_streams,
)

logger = logging.getLogger(__name__)

# Candidate shells in order of preference.
SHELL_CANDIDATES = (
    "/bin/bash",
    "/usr/bin/bash",
    "/bin/sh",
    "/usr/bin/sh",
    "/usr/local/bin/bash",
    "/usr/local/bin/sh",
)

MAX_OUTPUT_CHARS = 500_000
KEEP_OUTPUT_CHARS = 200_000
SHELL_PROBE_TIMEOUT_S = 5

_UNPROBED = object()


def truncate_output(
    output: str,
    max_chars: int = MAX_OUTPUT_CHARS,
    keep_chars: int = KEEP_OUTPUT_CHARS,
) -> str:
    """Keep the head and tail of oversized output, eliding the middle."""
    if len(output) <= max_chars:
        return output
    keep = min(keep_chars, max_chars // 2)
    elided = len(output) - keep * 2
    marker = f"\n\n... [{elided} characters truncated to prevent memory issues] ...\n\n"
    return output[:keep] + marker + output[-keep:]


def _probe_shell(shell_path: str) -> bool:
    if not os.access(shell_path, os.X_OK):
        return False
    try:
        result = subprocess.run(
            [shell_path, "-c", "echo test"],
            capture_output=True,
            text=True,
            timeout=SHELL_PROBE_TIMEOUT_S,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("Shell probe failed for %s: %s", shell_path, exc)
        return False
    return result.returncode == 0 and "test" in result.stdout


def merge_environment(env: Optional[Mapping[str, Optional[str]]]) -> dict[str, str]:
    merged = os.environ.copy()
    if env:
        merged.update({key: value for key, value in env.items() if value})
    return merged


class ShellExecutor:
    """Runs one shell command per call in a fresh process group.

    The usable shell is probed once per executor and cached; executors do not
    share that cache.
    """

    def __init__(
        self,
        working_directory: Optional[str] = None,
        shell_candidates: Sequence[str] = SHELL_CANDIDATES,
        default_timeout_sec: float = 900,
        max_output_chars: int = MAX_OUTPUT_CHARS,
        keep_chars: int = KEEP_OUTPUT_CHARS,
    ) -> None:
        self._working_directory = working_directory or os.getcwd()
        self._candidates = tuple(shell_candidates)
        self._default_timeout_sec = default_timeout_sec
        self._max_output_chars = max_output_chars
        self._keep_chars = keep_chars
        self._shell: object = _UNPROBED
        self._shell_lock = threading.Lock()

    @property
    def working_directory(self) -> str:
        return self._working_directory

    @property
    def shell_candidates(self) -> tuple[str, ...]:
        return self._candidates

    def find_shell(self) -> Optional[str]:
        with self._shell_lock:
            if self._shell is _UNPROBED:
                self._shell = self._probe_candidates()
            return self._shell  # type: ignore[return-value]

    def has_shell(self) -> bool:
        return self.find_shell() is not None

    def reset_shell_cache(self) -> None:
        with self._shell_lock:
            self._shell = _UNPROBED

    def _probe_candidates(self) -> Optional[str]:
        for shell_path in self._candidates:
            if _probe_shell(shell_path):
                logger.info("Found available shell %s", shell_path)
                return shell_path
            logger.debug("Shell %s is missing or failed its probe", shell_path)
        logger.error("No shell available; checked %s", ", ".join(self._candidates))
        return None

    def execute(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, Optional[str]]] = None,
        timeout_sec: Optional[float] = None,
    ) -> ExecResult:
        workdir = cwd or self._working_directory
        timeout = self._default_timeout_sec if timeout_sec is None else timeout_sec

        shell = self.find_shell()
        if shell is None:
            message = str(ShellUnavailable(self._candidates))
            logger.error("Cannot execute %r in %s: %s", command, workdir, message)
            return ExecResult(
                exit_code=SHELL_UNAVAILABLE_EXIT_CODE,
                stdout="",
                stderr=message,
                combined=message,
            )

        logger.info("Executing command locally in %s: %s", workdir, command)
        start = time.monotonic()
        try:
            process = subprocess.Popen(
                [shell, "-c", command],
                cwd=workdir,
                env=merge_environment(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except OSError as exc:
            logger.error("Shell spawn failed for %r using %s: %s", command, shell, exc)
            raise SpawnFailure(command, shell, str(exc)) from exc

        timed_out = False
        try:
            stdout, stderr = process.communicate(timeout=timeout if timeout > 0 else None)
        except subprocess.TimeoutExpired:
            timed_out = True
            self._kill_group(process)
            stdout, stderr = process.communicate()

        duration_ms = int((time.monotonic() - start) * 1000)
        stdout = truncate_output(stdout or "", self._max_output_chars, self._keep_chars)
        stderr = truncate_output(stderr or "", self._max_output_chars, self._keep_chars)

        if timed_out:
            message = str(CommandTimeout(timeout))
            stderr = f"{stderr}\n{message}" if stderr else message
            logger.warning("Command exceeded %ss timeout: %s", timeout, command)
            return ExecResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=stdout,
                stderr=stderr,
                combined=combine_streams(stdout, stderr),
                duration_ms=duration_ms,
            )

        return ExecResult(
            exit_code=process.returncode,
            stdout=stdout,
            stderr=stderr,
            combined=combine_streams(stdout, stderr),
            duration_ms=duration_ms,
        )

    @staticmethod
    def _kill_group(process: subprocess.Popen) -> None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError as exc:
            logger.warning("Failed to kill process group %s: %s", process.pid, exc)
            process.kill()
