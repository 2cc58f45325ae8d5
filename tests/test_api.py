"""Tests for the HTTP API.

Tests cover:
- Sandbox lifecycle routes backed by the local provider
- Typed command execution and request validation
- Dev server start/stop/status routes with the launcher stubbed out
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from swe_sandbox.api import main
from swe_sandbox.api.main import build_provider, create_app
from swe_sandbox.models.dev_server import LaunchResult, LaunchState
from swe_sandbox.providers.sandbox import DockerProvider, LocalProvider
from swe_sandbox.services.launcher import DevServerLauncher
from swe_sandbox.services.sandboxes import SandboxManager
from swe_sandbox.services.shell import ShellExecutor


@pytest.fixture
def executor(tmp_path: Path) -> ShellExecutor:
    return ShellExecutor(working_directory=str(tmp_path))


@pytest.fixture
def manager(settings, executor, tmp_path: Path) -> SandboxManager:
    provider = LocalProvider(base_dir=str(tmp_path / "state"), executor=executor)
    return SandboxManager(provider, settings=settings)


@pytest.fixture
def client(settings, manager, executor):
    with TestClient(create_app(settings, manager=manager, executor=executor)) as test_client:
        yield test_client


@pytest.fixture
def project(tmp_path: Path) -> Path:
    path = tmp_path / "demo"
    path.mkdir()
    (path / "notes.txt").write_text("remember the milk\n")
    return path


@pytest.fixture
def sandbox_id(client, project) -> str:
    response = client.post("/sandboxes", json={"hostRepoPath": str(project)})
    assert response.status_code == 201
    return response.json()["id"]


def _launch(state: LaunchState, **overrides) -> LaunchResult:
    values = {
        "state": state,
        "port": 3001,
        "command": "PORT=3000 npm run dev",
        "message": "Dev server started on port 3001",
    }
    values.update(overrides)
    return LaunchResult(**values)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_build_provider(settings, executor):
    assert isinstance(build_provider(replace(settings, provider="docker"), executor), DockerProvider)
    assert isinstance(build_provider(replace(settings, provider="podman"), executor), LocalProvider)


def test_import_builds_no_app():
    assert not hasattr(main, "app")


# =============================================================================
# Sandbox Route Tests
# =============================================================================


class TestSandboxRoutes:
    def test_create_returns_camel_case_metadata(self, client, project):
        response = client.post("/sandboxes", json={"hostRepoPath": str(project), "commitOnChange": True})

        assert response.status_code == 201
        body = response.json()
        metadata = body["metadata"]
        assert metadata["containerRepoPath"] == "/workspace/demo"
        assert metadata["hostRepoPath"] == str(project.resolve())
        assert metadata["commitOnChange"] is True
        assert metadata["commandTimeoutSec"] == 900
        assert metadata["containerName"].startswith("openswe-demo-")
        assert metadata["requestedResources"]["networkDisabled"] is True
        assert body["previewPort"] is None

    def test_list_and_get(self, client, sandbox_id):
        listed = client.get("/sandboxes").json()
        assert [item["id"] for item in listed] == [sandbox_id]

        assert client.get(f"/sandboxes/{sandbox_id}").json()["id"] == sandbox_id

    def test_unknown_sandbox_is_404(self, client):
        response = client.get("/sandboxes/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "Sandbox not found"

    def test_create_failure_is_500(self, settings, fake_provider):
        fake_provider.create_error = RuntimeError("daemon down")
        app = create_app(settings, manager=SandboxManager(fake_provider, settings=settings))

        with TestClient(app) as client:
            response = client.post("/sandboxes", json={"repoName": "demo"})

        assert response.status_code == 500
        assert "daemon down" in response.json()["message"]

    def test_stop_then_delete(self, client, sandbox_id):
        stopped = client.post(f"/sandboxes/{sandbox_id}/stop")
        assert stopped.status_code == 200
        assert stopped.json()["success"] is True

        deleted = client.delete(f"/sandboxes/{sandbox_id}")
        assert deleted.json() == {"success": True, "message": f"Sandbox {sandbox_id} deleted"}
        assert client.get(f"/sandboxes/{sandbox_id}").status_code == 404

    def test_delete_unknown_is_404(self, client):
        assert client.delete("/sandboxes/missing").status_code == 404


# =============================================================================
# Command Route Tests
# =============================================================================


class TestExecRoute:
    def test_shell_command_runs_in_repo(self, client, sandbox_id, project):
        response = client.post(
            f"/sandboxes/{sandbox_id}/exec",
            json={"kind": "shell", "command": "pwd && echo $GREETING", "env": {"GREETING": "hi"}},
        )

        body = response.json()
        assert response.status_code == 200
        assert body["exitCode"] == 0
        assert body["stdout"].splitlines() == [str(project.resolve()), "hi"]
        assert body["timedOut"] is False

    def test_read_file(self, client, sandbox_id):
        response = client.post(f"/sandboxes/{sandbox_id}/exec", json={"kind": "read_file", "path": "notes.txt"})

        assert response.json()["stdout"] == "remember the milk\n"

    def test_read_file_with_hostile_path_is_quoted(self, client, sandbox_id, project):
        response = client.post(
            f"/sandboxes/{sandbox_id}/exec",
            json={"kind": "read_file", "path": "x; touch pwned"},
        )

        assert response.json()["exitCode"] != 0
        assert not (project / "pwned").exists()

    def test_list_files(self, client, sandbox_id):
        response = client.post(f"/sandboxes/{sandbox_id}/exec", json={"kind": "list_files", "maxDepth": 1})

        assert "./notes.txt" in response.json()["stdout"].splitlines()

    def test_timeout_reports_124(self, client, sandbox_id):
        response = client.post(
            f"/sandboxes/{sandbox_id}/exec",
            json={"kind": "shell", "command": "sleep 5", "timeoutSec": 1},
        )

        body = response.json()
        assert body["exitCode"] == 124
        assert body["timedOut"] is True

    @pytest.mark.parametrize(
        "payload",
        [
            {"kind": "rm_rf", "path": "/"},
            {"command": "ls"},
            {"kind": "shell", "command": ""},
            {"kind": "list_files", "maxDepth": 99},
            {"kind": "shell", "command": "ls", "unexpected": True},
        ],
    )
    def test_invalid_commands_are_422(self, client, sandbox_id, payload):
        assert client.post(f"/sandboxes/{sandbox_id}/exec", json=payload).status_code == 422

    def test_cwd_outside_sandbox_is_400(self, client, sandbox_id):
        response = client.post(
            f"/sandboxes/{sandbox_id}/exec",
            json={"kind": "shell", "command": "ls", "cwd": "/etc"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"

    def test_missing_cwd_is_structured_500(self, client, sandbox_id):
        response = client.post(
            f"/sandboxes/{sandbox_id}/exec",
            json={"kind": "shell", "command": "ls", "cwd": "nope"},
        )

        assert response.status_code == 500
        assert response.headers["content-type"] == "application/json"
        body = response.json()
        assert body["error"] == "Command failed to start"
        assert "ls" in body["message"]

    def test_unknown_sandbox(self, client):
        response = client.post("/sandboxes/missing/exec", json={"kind": "shell", "command": "ls"})

        assert response.status_code == 404


# =============================================================================
# Dev Server Route Tests
# =============================================================================


class TestDevServerRoutes:
    def test_start_ready(self, client, mocker):
        start = mocker.patch.object(DevServerLauncher, "start", return_value=_launch(LaunchState.READY))

        response = client.post("/dev-server/start", json={"command": "npm run dev", "port": 3000})

        assert response.status_code == 200
        assert response.json() == {"success": True, "port": 3001, "message": "Dev server started on port 3001"}
        assert start.call_args.kwargs == {
            "command": "npm run dev",
            "port": 3000,
            "workdir": client.app.state.settings.local_working_directory,
        }

    def test_start_not_ready_is_still_success(self, client, mocker):
        message = "Dev server was started but may not be ready yet. Check port 3000."
        mocker.patch.object(
            DevServerLauncher,
            "start",
            return_value=_launch(LaunchState.NOT_READY_TIMEOUT, port=3000, message=message),
        )

        response = client.post("/dev-server/start", json={})

        assert response.status_code == 200
        assert response.json()["message"] == message

    def test_start_failed_is_500(self, client, mocker):
        mocker.patch.object(
            DevServerLauncher,
            "start",
            return_value=_launch(
                LaunchState.START_FAILED,
                message="Failed to start dev server",
                error="Exit code: 1",
            ),
        )

        response = client.post("/dev-server/start", json={})

        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "message": "Failed to start dev server",
            "error": "Exit code: 1",
        }

    def test_start_in_sandbox_uses_repo_path(self, client, sandbox_id, mocker):
        start = mocker.patch.object(DevServerLauncher, "start", return_value=_launch(LaunchState.READY))

        client.post("/dev-server/start", json={"sandboxSessionId": sandbox_id})

        assert start.call_args.kwargs["workdir"] == "/workspace/demo"

    def test_start_without_shell(self, settings, tmp_path):
        executor = ShellExecutor(working_directory=str(tmp_path), shell_candidates=("/nonexistent/sh",))
        app = create_app(settings, executor=executor)

        with TestClient(app) as client:
            response = client.post("/dev-server/start", json={})

        assert response.status_code == 500
        body = response.json()
        assert body["message"] == "No shell available to execute commands"
        assert "/nonexistent/sh" in body["error"]

    def test_start_with_workdir_outside_sandbox_is_400(self, client, sandbox_id):
        response = client.post("/dev-server/start", json={"sandboxSessionId": sandbox_id, "workdir": "/etc"})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"
        assert "escapes sandbox" in response.json()["message"]

    def test_stop_with_workdir_outside_sandbox_is_400(self, client, sandbox_id):
        response = client.post("/dev-server/stop", json={"sandboxSessionId": sandbox_id, "workdir": "/etc"})

        assert response.status_code == 400

    def test_start_rejects_bad_port(self, client):
        assert client.post("/dev-server/start", json={"port": 70000}).status_code == 422

    def test_unknown_sandbox_is_404(self, client):
        response = client.post("/dev-server/start", json={"sandboxSessionId": "missing"})

        assert response.status_code == 404

    def test_stop_without_body(self, client):
        response = client.post("/dev-server/stop")

        assert response.json() == {"success": True, "message": "Dev server stopped"}

    def test_status_not_running(self, client):
        assert client.get("/dev-server/status").json() == {"running": False}

    def test_status_unknown_sandbox(self, client):
        assert client.get("/dev-server/status", params={"sandboxSessionId": "missing"}).status_code == 404
