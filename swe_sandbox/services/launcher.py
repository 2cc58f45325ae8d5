"""Start, watch and stop a detached dev server inside a sandbox or locally."""

from __future__ import annotations

import logging
import shlex
import time
from typing import Callable, Optional, Protocol

from swe_sandbox.errors import DevServerStartTimeout, SandboxError
from swe_sandbox.models.commands import ListFilesCommand, ReadFileCommand
from swe_sandbox.models.dev_server import (
    DevServerConfig,
    DevServerStatus,
    LaunchResult,
    LaunchState,
    ProjectType,
)
from swe_sandbox.models.sandbox import ExecResult
from swe_sandbox.services.dev_server import detect_dev_server, evaluate_readiness
from swe_sandbox.services.polling import wait_until

logger = logging.getLogger(__name__)

DEFAULT_LOG_FILE = "/tmp/dev-server.log"
DEFAULT_PID_FILE = "/tmp/dev-server.pid"
DEFAULT_PORT = 3000
DEFAULT_COMMAND = "npm run dev"
LAUNCH_TIMEOUT_S = 10
PROBE_TIMEOUT_S = 5
STATUS_LOG_LINES = 20

_PORT_ENV_TYPES = (ProjectType.NEXTJS, ProjectType.VITE, ProjectType.VUE)
_PORT_ENV_COMMANDS = ("npm run dev", "yarn dev", "pnpm dev")


class CommandRunner(Protocol):
    def __call__(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout_sec: Optional[float] = None,
    ) -> ExecResult:
        ...


def apply_port(command: str, port: int, project_type: Optional[ProjectType] = None) -> str:
    """Rewrite ``command`` so the server binds ``port``."""
    if project_type in _PORT_ENV_TYPES:
        return f"PORT={port} {command}"
    if project_type is ProjectType.DJANGO:
        return f"python manage.py runserver 0.0.0.0:{port}"
    if project_type is ProjectType.FLASK:
        return f"FLASK_RUN_PORT={port} flask run --host=0.0.0.0"
    if project_type is ProjectType.FASTAPI:
        return f"uvicorn main:app --reload --host 0.0.0.0 --port {port}"

    if any(marker in command for marker in _PORT_ENV_COMMANDS):
        return f"PORT={port} {command}"
    if "vite" in command:
        return f"{command} --port {port}"
    if "next" in command:
        return f"PORT={port} {command}"
    return command


def build_background_command(command: str, log_file: str, pid_file: str) -> str:
    return f"nohup {command} > {shlex.quote(log_file)} 2>&1 & echo $! > {shlex.quote(pid_file)}"


def build_kill_command(pid_file: str) -> str:
    pid = shlex.quote(pid_file)
    return f"if [ -f {pid} ]; then kill $(cat {pid}) 2>/dev/null || true; rm -f {pid}; fi"


def build_status_command(pid_file: str) -> str:
    pid = shlex.quote(pid_file)
    return (
        f"if [ -f {pid} ]; then pid=$(cat {pid}); "
        'if kill -0 "$pid" 2>/dev/null; then echo "running:$pid"; else echo "stopped"; fi; '
        'else echo "stopped"; fi'
    )


class DevServerLauncher:
    """Drives one launch attempt through its states.

    NOT_STARTED -> STARTING -> READY | NOT_READY_TIMEOUT | START_FAILED.
    A server that is not ready by the deadline is left running.
    """

    def __init__(
        self,
        runner: CommandRunner,
        log_file: str = DEFAULT_LOG_FILE,
        pid_file: str = DEFAULT_PID_FILE,
        startup_timeout_sec: float = 15,
        poll_interval_sec: float = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._run = runner
        self.log_file = log_file
        self.pid_file = pid_file
        self._startup_timeout_sec = startup_timeout_sec
        self._poll_interval_sec = poll_interval_sec
        self._clock = clock
        self._sleep = sleep
        self.state = LaunchState.NOT_STARTED

    def detect(self, workdir: Optional[str] = None) -> Optional[DevServerConfig]:
        package_json: Optional[str] = None
        listing = ""
        try:
            result = self._run(ReadFileCommand(path="package.json").render(), cwd=workdir, timeout_sec=LAUNCH_TIMEOUT_S)
            if result.exit_code == 0:
                package_json = result.stdout
            result = self._run(ListFilesCommand(max_depth=2).render(), cwd=workdir, timeout_sec=LAUNCH_TIMEOUT_S)
            if result.exit_code == 0:
                listing = result.stdout
        except SandboxError as exc:
            logger.debug("Could not inspect project in %s: %s", workdir, exc)
        return detect_dev_server(listing, package_json)

    def start(
        self,
        command: Optional[str] = None,
        port: Optional[int] = None,
        workdir: Optional[str] = None,
        project_type: Optional[ProjectType] = None,
    ) -> LaunchResult:
        started = self._clock()
        if not command:
            config = self.detect(workdir)
            if config is not None:
                command = config.command
                project_type = project_type or config.project_type
                port = port or config.port
            else:
                command = DEFAULT_COMMAND
        port = port or DEFAULT_PORT

        self.state = LaunchState.STARTING
        self.stop(workdir)
        server_command = apply_port(command, port, project_type)
        background = build_background_command(server_command, self.log_file, self.pid_file)
        logger.info("Starting dev server in %s on port %s: %s", workdir, port, server_command)

        try:
            result = self._run(background, cwd=workdir, timeout_sec=LAUNCH_TIMEOUT_S)
        except SandboxError as exc:
            logger.error("Error starting dev server in %s: %s", workdir, exc)
            return self._finish(LaunchState.START_FAILED, port, server_command,
                                "Error starting dev server", error=str(exc))
        if result.exit_code != 0:
            logger.error(
                "Failed to start dev server (exit %s): %s",
                result.exit_code,
                result.stderr.strip() or result.stdout.strip(),
            )
            return self._finish(
                LaunchState.START_FAILED,
                port,
                server_command,
                "Failed to start dev server",
                error=result.combined or result.stderr or f"Exit code: {result.exit_code}",
            )

        ready_port = wait_until(
            lambda: self._probe(workdir, port),
            self._startup_timeout_sec,
            self._poll_interval_sec,
            clock=self._clock,
            sleep=self._sleep,
        )
        elapsed_ms = (self._clock() - started) * 1000
        if ready_port is not None:
            logger.info("Dev server started on port %s (%dms)", ready_port, elapsed_ms)
            return self._finish(LaunchState.READY, ready_port, server_command,
                                f"Dev server started on port {ready_port}")

        log_tail = self.read_log(workdir) or ""
        logger.warning(
            "%s; leaving it running (%dms). Log: %s",
            DevServerStartTimeout(port, self._startup_timeout_sec),
            elapsed_ms,
            log_tail[-2000:],
        )
        return self._finish(
            LaunchState.NOT_READY_TIMEOUT,
            port,
            server_command,
            f"Dev server was started but may not be ready yet. Check port {port}.",
            log_tail=log_tail,
        )

    def _finish(
        self,
        state: LaunchState,
        port: int,
        command: str,
        message: str,
        log_tail: str = "",
        error: Optional[str] = None,
    ) -> LaunchResult:
        self.state = state
        return LaunchResult(state=state, port=port, command=command, message=message,
                            log_tail=log_tail, error=error)

    def _probe(self, workdir: Optional[str], expected_port: int) -> Optional[int]:
        output = self.read_log(workdir)
        if output is None:
            return None
        return evaluate_readiness(output, expected_port)

    def read_log(self, workdir: Optional[str] = None, lines: Optional[int] = None) -> Optional[str]:
        if lines:
            command = f'tail -{lines} {shlex.quote(self.log_file)} 2>/dev/null || echo ""'
        else:
            command = ReadFileCommand(path=self.log_file, missing_ok=True).render()
        try:
            result = self._run(command, cwd=workdir, timeout_sec=PROBE_TIMEOUT_S)
        except SandboxError as exc:
            logger.debug("Error reading dev server log %s: %s", self.log_file, exc)
            return None
        return result.stdout

    def stop(self, workdir: Optional[str] = None) -> bool:
        try:
            result = self._run(build_kill_command(self.pid_file), cwd=workdir, timeout_sec=PROBE_TIMEOUT_S)
        except SandboxError as exc:
            logger.warning("Failed to stop dev server via %s: %s", self.pid_file, exc)
            return False
        return result.exit_code == 0

    def status(self, workdir: Optional[str] = None) -> DevServerStatus:
        result = self._run(build_status_command(self.pid_file), cwd=workdir, timeout_sec=PROBE_TIMEOUT_S)
        output = result.stdout.strip()
        if not output.startswith("running:"):
            return DevServerStatus(running=False)
        pid_text = output.split(":", 1)[1].strip()
        pid = int(pid_text) if pid_text.isdigit() else None
        return DevServerStatus(
            running=True,
            pid=pid,
            recent_log=self.read_log(workdir, lines=STATUS_LOG_LINES),
        )
