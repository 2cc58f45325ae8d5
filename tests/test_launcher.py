"""Tests for the dev server launcher state machine."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from swe_sandbox.errors import SpawnFailure
from swe_sandbox.models.dev_server import LaunchState, ProjectType
from swe_sandbox.models.sandbox import ExecResult
from swe_sandbox.services.launcher import (
    DevServerLauncher,
    apply_port,
    build_background_command,
    build_kill_command,
)
from swe_sandbox.services.shell import ShellExecutor


def _result(stdout: str = "", exit_code: int = 0, stderr: str = "") -> ExecResult:
    return ExecResult(exit_code=exit_code, stdout=stdout, stderr=stderr, combined=stdout + stderr)


class ScriptedRunner:
    """Answers launcher commands from canned outputs, recording each call."""

    def __init__(self, logs=None, package_json=None, listing="", launch=None):
        self.calls: list[tuple[str, str]] = []
        self.logs = list(logs or [])
        self.package_json = package_json
        self.listing = listing
        self.launch = launch or _result()

    def __call__(self, command, cwd=None, env=None, timeout_sec=None):
        self.calls.append((command, cwd))
        if command.startswith("cat -- package.json"):
            if self.package_json is None:
                return _result(exit_code=1, stderr="No such file")
            return _result(self.package_json)
        if command.startswith("find "):
            return _result(self.listing)
        if command.startswith("nohup "):
            return self.launch
        if command.startswith("cat -- ") or command.startswith("tail "):
            return _result(self._next_log())
        return _result()

    def _next_log(self) -> str:
        # The last entry repeats once the script runs out.
        if not self.logs:
            return ""
        if len(self.logs) > 1:
            return self.logs.pop(0)
        return self.logs[0]

    def commands(self, prefix: str) -> list[str]:
        return [command for command, _ in self.calls if command.startswith(prefix)]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def _launcher(runner, clock=None, timeout=15) -> DevServerLauncher:
    clock = clock or FakeClock()
    return DevServerLauncher(
        runner,
        log_file="/tmp/dev-server.log",
        pid_file="/tmp/dev-server.pid",
        startup_timeout_sec=timeout,
        poll_interval_sec=1,
        clock=clock,
        sleep=clock.sleep,
    )


# =============================================================================
# Command Construction Tests
# =============================================================================


class TestApplyPort:
    @pytest.mark.parametrize(
        "project_type,command,expected",
        [
            (ProjectType.NEXTJS, "npm run dev", "PORT=4000 npm run dev"),
            (ProjectType.VITE, "npm run dev", "PORT=4000 npm run dev"),
            (ProjectType.DJANGO, "python manage.py runserver 0.0.0.0:8000", "python manage.py runserver 0.0.0.0:4000"),
            (ProjectType.FLASK, "flask run --host=0.0.0.0", "FLASK_RUN_PORT=4000 flask run --host=0.0.0.0"),
            (
                ProjectType.FASTAPI,
                "uvicorn main:app --reload --host 0.0.0.0",
                "uvicorn main:app --reload --host 0.0.0.0 --port 4000",
            ),
        ],
    )
    def test_by_project_type(self, project_type, command, expected):
        assert apply_port(command, 4000, project_type) == expected

    @pytest.mark.parametrize(
        "command,expected",
        [
            ("yarn dev", "PORT=4000 yarn dev"),
            ("pnpm dev", "PORT=4000 pnpm dev"),
            ("npx vite", "npx vite --port 4000"),
            ("next dev", "PORT=4000 next dev"),
            ("go run .", "go run ."),
        ],
    )
    def test_by_command(self, command, expected):
        assert apply_port(command, 4000) == expected

    def test_background_command(self):
        assert (
            build_background_command("npm run dev", "/tmp/dev-server.log", "/tmp/dev-server.pid")
            == "nohup npm run dev > /tmp/dev-server.log 2>&1 & echo $! > /tmp/dev-server.pid"
        )

    def test_kill_command(self):
        assert build_kill_command("/tmp/dev-server.pid") == (
            "if [ -f /tmp/dev-server.pid ]; then kill $(cat /tmp/dev-server.pid) 2>/dev/null || true; "
            "rm -f /tmp/dev-server.pid; fi"
        )


# =============================================================================
# Launch State Machine Tests
# =============================================================================


class TestStart:
    def test_ready_with_port_from_log(self):
        runner = ScriptedRunner(logs=["\n", "> next dev\n", "ready - started server on http://localhost:3001"])
        launcher = _launcher(runner)
        assert launcher.state is LaunchState.NOT_STARTED

        result = launcher.start(command="npm run dev", port=3000, workdir="/workspace/demo")

        assert result.state is LaunchState.READY
        assert launcher.state is LaunchState.READY
        assert result.port == 3001
        assert result.launched
        assert result.message == "Dev server started on port 3001"
        assert runner.commands("nohup ") == [
            "nohup PORT=3000 npm run dev > /tmp/dev-server.log 2>&1 & echo $! > /tmp/dev-server.pid"
        ]
        assert all(cwd == "/workspace/demo" for _, cwd in runner.calls)

    def test_kills_previous_server_first(self):
        runner = ScriptedRunner(logs=["ready"])

        _launcher(runner).start(command="npm run dev", port=3000)

        commands = [command for command, _ in runner.calls]
        kill_index = next(i for i, c in enumerate(commands) if c.startswith("if [ -f"))
        launch_index = next(i for i, c in enumerate(commands) if c.startswith("nohup "))
        assert kill_index < launch_index

    def test_timeout_leaves_server_running(self):
        clock = FakeClock()
        runner = ScriptedRunner(logs=["> building...\n"])
        launcher = _launcher(runner, clock=clock, timeout=5)

        result = launcher.start(command="npm run dev", port=3000)

        assert result.state is LaunchState.NOT_READY_TIMEOUT
        assert result.launched
        assert result.port == 3000
        assert "may not be ready yet" in result.message
        assert result.log_tail == "> building...\n"
        assert clock.now == pytest.approx(5)
        assert len(runner.commands("if [ -f")) == 1

    def test_error_without_port_keeps_polling(self):
        runner = ScriptedRunner(logs=["Error: Cannot find module 'x'\n"])

        result = _launcher(runner, timeout=3).start(command="npm run dev", port=3000)

        assert result.state is LaunchState.NOT_READY_TIMEOUT

    def test_launch_failure(self):
        runner = ScriptedRunner(launch=_result(exit_code=127, stderr="nohup: not found"))

        result = _launcher(runner).start(command="npm run dev", port=3000)

        assert result.state is LaunchState.START_FAILED
        assert not result.launched
        assert "nohup: not found" in result.error

    def test_spawn_failure(self, mocker):
        runner = mocker.Mock(side_effect=SpawnFailure("nohup", "/bin/sh", "ENOENT"))

        result = _launcher(runner).start(command="npm run dev", port=3000)

        assert result.state is LaunchState.START_FAILED
        assert "ENOENT" in result.error

    def test_detects_command_when_missing(self):
        runner = ScriptedRunner(
            package_json=json.dumps({"devDependencies": {"vite": "^5"}}),
            logs=["VITE ready  Local: http://localhost:5173/"],
        )

        result = _launcher(runner).start()

        assert result.state is LaunchState.READY
        assert result.port == 5173
        assert result.command == "PORT=5173 npm run dev"

    def test_detection_uses_file_listing(self):
        runner = ScriptedRunner(
            listing="./manage.py\n./app/models.py\n",
            logs=["Starting development server at http://0.0.0.0:8000/"],
        )

        result = _launcher(runner).start()

        assert result.command == "python manage.py runserver 0.0.0.0:8000"

    def test_falls_back_to_npm_run_dev(self):
        runner = ScriptedRunner(logs=["ready"])

        result = _launcher(runner).start()

        assert result.command == "PORT=3000 npm run dev"
        assert result.port == 3000


# =============================================================================
# Stop and Status Tests
# =============================================================================


class TestStopAndStatus:
    def test_stop_runs_kill_command(self):
        runner = ScriptedRunner()

        assert _launcher(runner).stop("/workspace/demo") is True
        assert runner.calls == [(build_kill_command("/tmp/dev-server.pid"), "/workspace/demo")]

    def test_status_with_real_shell(self, tmp_path: Path):
        """A pid file naming a live process reports running with the log tail."""
        log_file = tmp_path / "dev-server.log"
        pid_file = tmp_path / "dev-server.pid"
        log_file.write_text("".join(f"line {i}\n" for i in range(30)))
        pid_file.write_text(f"{os.getpid()}\n")
        executor = ShellExecutor(working_directory=str(tmp_path))
        launcher = DevServerLauncher(executor.execute, log_file=str(log_file), pid_file=str(pid_file))

        status = launcher.status()

        assert status.running is True
        assert status.pid == os.getpid()
        assert status.recent_log.splitlines() == [f"line {i}" for i in range(10, 30)]

    def test_status_without_pid_file(self, tmp_path: Path):
        executor = ShellExecutor(working_directory=str(tmp_path))
        launcher = DevServerLauncher(
            executor.execute,
            log_file=str(tmp_path / "dev-server.log"),
            pid_file=str(tmp_path / "dev-server.pid"),
        )

        status = launcher.status()

        assert status.running is False
        assert status.pid is None
        assert status.recent_log is None

    def test_stop_removes_pid_file(self, tmp_path: Path):
        pid_file = tmp_path / "dev-server.pid"
        executor = ShellExecutor(working_directory=str(tmp_path))
        sleeper = executor.execute(f"nohup sleep 30 > /dev/null 2>&1 & echo $! > {pid_file}")
        assert sleeper.exit_code == 0
        launcher = DevServerLauncher(executor.execute, log_file=str(tmp_path / "log"), pid_file=str(pid_file))

        assert launcher.stop() is True
        assert not pid_file.exists()
