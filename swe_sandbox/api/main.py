from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import TypeAdapter, ValidationError
from uvicorn import run as uvicorn_run

from swe_sandbox.api.schemas import (
    CreateSandboxRequest,
    DevServerStatusResponse,
    ExecResponse,
    LifecycleResponse,
    SandboxBody,
    SandboxMetadataBody,
    StartDevServerRequest,
    StartDevServerResponse,
    StopDevServerRequest,
)
from swe_sandbox.config import SandboxSettings, load_settings
from swe_sandbox.errors import (
    SandboxCreationError,
    SandboxError,
    SandboxNotFound,
    ShellUnavailable,
    SpawnFailure,
)
from swe_sandbox.models.commands import SandboxCommand
from swe_sandbox.models.dev_server import LaunchState
from swe_sandbox.providers.sandbox import DockerProvider, LocalProvider, SandboxProvider
from swe_sandbox.services.launcher import CommandRunner, DevServerLauncher
from swe_sandbox.services.proxy import ALLOWED_METHODS, ProxyGateway
from swe_sandbox.services.sandboxes import SandboxHandle, SandboxManager
from swe_sandbox.services.shell import ShellExecutor

logger = logging.getLogger(__name__)

_COMMAND_ADAPTER: TypeAdapter[Any] = TypeAdapter(SandboxCommand)


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_provider(settings: SandboxSettings, executor: ShellExecutor) -> SandboxProvider:
    if settings.provider == "docker":
        return DockerProvider(executor=executor)
    if settings.provider != "local":
        logger.warning("Unknown sandbox provider %r; using local", settings.provider)
    return LocalProvider(executor=executor)


def _sandbox_body(manager: SandboxManager, handle: SandboxHandle) -> SandboxBody:
    return SandboxBody(
        id=handle.id,
        metadata=SandboxMetadataBody.from_metadata(handle.metadata),
        preview_port=manager.get_preview_port(handle.id),
    )


def create_app(
    settings: Optional[SandboxSettings] = None,
    manager: Optional[SandboxManager] = None,
    executor: Optional[ShellExecutor] = None,
    gateway: Optional[ProxyGateway] = None,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    executor = executor or ShellExecutor(
        working_directory=settings.local_working_directory,
        default_timeout_sec=settings.command_timeout_sec,
    )
    manager = manager or SandboxManager(build_provider(settings, executor), settings=settings)
    gateway = gateway or ProxyGateway(manager=manager)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await gateway.aclose()

    app = FastAPI(title="swe-sandbox", lifespan=lifespan)
    app.state.settings = settings
    app.state.manager = manager
    app.state.executor = executor
    app.state.gateway = gateway

    @app.exception_handler(SandboxNotFound)
    async def sandbox_not_found(_: Request, exc: SandboxNotFound) -> JSONResponse:
        return JSONResponse({"error": "Sandbox not found", "message": str(exc)}, status_code=404)

    @app.exception_handler(SandboxCreationError)
    async def sandbox_creation_failed(_: Request, exc: SandboxCreationError) -> JSONResponse:
        return JSONResponse({"error": "Sandbox creation failed", "message": str(exc)}, status_code=500)

    @app.exception_handler(SpawnFailure)
    async def spawn_failed(_: Request, exc: SpawnFailure) -> JSONResponse:
        logger.error("Command could not be spawned: %s", exc)
        return JSONResponse({"error": "Command failed to start", "message": str(exc)}, status_code=500)

    @app.exception_handler(SandboxError)
    async def sandbox_failed(_: Request, exc: SandboxError) -> JSONResponse:
        logger.error("Sandbox operation failed: %s", exc)
        return JSONResponse({"error": "Sandbox error", "message": str(exc)}, status_code=500)

    # Raised by providers for paths that leave the sandbox root.
    @app.exception_handler(ValueError)
    async def invalid_request(_: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse({"error": "Invalid request", "message": str(exc)}, status_code=400)

    def _runner_for(sandbox_id: Optional[str]) -> tuple[CommandRunner, str]:
        if sandbox_id:
            handle = manager.require_sandbox(sandbox_id)
            return handle.exec, handle.metadata.container_repo_path
        return executor.execute, settings.local_working_directory

    def _launcher(runner: CommandRunner) -> DevServerLauncher:
        return DevServerLauncher(
            runner,
            log_file=settings.dev_server_log_file,
            pid_file=settings.dev_server_pid_file,
            startup_timeout_sec=settings.dev_server_startup_timeout_sec,
            poll_interval_sec=settings.dev_server_poll_interval_sec,
        )

    @app.get("/health")
    def health_check() -> dict:
        return {"status": "ok"}

    @app.post("/sandboxes", response_model=SandboxBody, status_code=201)
    def create_sandbox(body: CreateSandboxRequest) -> SandboxBody:
        handle = manager.create_sandbox(
            image=body.image,
            host_repo_path=body.host_repo_path,
            workspace_path=body.workspace_path,
            repo_name=body.repo_name,
            container_repo_path=body.container_repo_path,
            commit_on_change=body.commit_on_change,
            command_timeout_sec=body.command_timeout_sec,
        )
        return _sandbox_body(manager, handle)

    @app.get("/sandboxes", response_model=list[SandboxBody])
    def list_sandboxes() -> list[SandboxBody]:
        return [_sandbox_body(manager, handle) for handle in manager.list_sandboxes()]

    @app.get("/sandboxes/{sandbox_id}", response_model=SandboxBody)
    def get_sandbox(sandbox_id: str) -> SandboxBody:
        return _sandbox_body(manager, manager.require_sandbox(sandbox_id))

    @app.post("/sandboxes/{sandbox_id}/exec", response_model=ExecResponse)
    def exec_command(sandbox_id: str, payload: dict[str, Any] = Body(...)) -> ExecResponse:
        try:
            command = _COMMAND_ADAPTER.validate_python(payload)
        except ValidationError as exc:
            raise RequestValidationError(exc.errors(include_url=False)) from exc
        manager.require_sandbox(sandbox_id)
        result = manager.exec(
            sandbox_id,
            command.render(),
            cwd=command.cwd,
            env=command.environment(),
            timeout_sec=command.timeout_sec,
        )
        return ExecResponse.from_result(result)

    @app.post("/sandboxes/{sandbox_id}/stop", response_model=LifecycleResponse)
    def stop_sandbox(sandbox_id: str) -> Any:
        manager.require_sandbox(sandbox_id)
        if not manager.stop_sandbox(sandbox_id):
            return JSONResponse(
                {"success": False, "message": f"Failed to stop sandbox {sandbox_id}"},
                status_code=500,
            )
        return LifecycleResponse(success=True, message=f"Sandbox {sandbox_id} stopped")

    @app.delete("/sandboxes/{sandbox_id}", response_model=LifecycleResponse)
    def delete_sandbox(sandbox_id: str) -> Any:
        manager.require_sandbox(sandbox_id)
        if not manager.delete_sandbox(sandbox_id):
            return JSONResponse(
                {"success": False, "message": f"Failed to delete sandbox {sandbox_id}"},
                status_code=500,
            )
        return LifecycleResponse(success=True, message=f"Sandbox {sandbox_id} deleted")

    @app.post(
        "/dev-server/start",
        response_model=StartDevServerResponse,
        response_model_exclude_none=True,
    )
    def start_dev_server(body: StartDevServerRequest) -> Any:
        if not body.sandbox_session_id and not executor.has_shell():
            error = ShellUnavailable(executor.shell_candidates)
            logger.error("Cannot start dev server: %s", error)
            return JSONResponse(
                StartDevServerResponse(
                    success=False,
                    message="No shell available to execute commands",
                    error=str(error),
                ).model_dump(by_alias=True, exclude_none=True),
                status_code=500,
            )

        runner, default_workdir = _runner_for(body.sandbox_session_id)
        workdir = body.workdir or default_workdir
        logger.info(
            "Processing dev server start (sandbox=%s, command=%s, port=%s, workdir=%s)",
            body.sandbox_session_id,
            body.command,
            body.port,
            workdir,
        )
        result = _launcher(runner).start(command=body.command, port=body.port, workdir=workdir)
        if result.state is LaunchState.START_FAILED:
            return JSONResponse(
                StartDevServerResponse(
                    success=False, message=result.message, error=result.error
                ).model_dump(by_alias=True, exclude_none=True),
                status_code=500,
            )
        return StartDevServerResponse(success=True, port=result.port, message=result.message)

    @app.post("/dev-server/stop", response_model=LifecycleResponse)
    def stop_dev_server(body: Optional[StopDevServerRequest] = None) -> Any:
        body = body or StopDevServerRequest()
        runner, default_workdir = _runner_for(body.sandbox_session_id)
        if not _launcher(runner).stop(body.workdir or default_workdir):
            return JSONResponse(
                {"success": False, "message": "Failed to stop dev server"},
                status_code=500,
            )
        return LifecycleResponse(success=True, message="Dev server stopped")

    @app.get(
        "/dev-server/status",
        response_model=DevServerStatusResponse,
        response_model_exclude_none=True,
    )
    def dev_server_status(
        sandbox_session_id: Optional[str] = Query(default=None, alias="sandboxSessionId"),
    ) -> DevServerStatusResponse:
        runner, workdir = _runner_for(sandbox_session_id)
        try:
            status = _launcher(runner).status(workdir)
        except SandboxError as exc:
            logger.error("Failed to read dev server status: %s", exc)
            return DevServerStatusResponse(running=False, error=str(exc))
        return DevServerStatusResponse.from_status(status)

    @app.api_route("/dev-server/proxy/{port}", methods=list(ALLOWED_METHODS))
    async def proxy_root(
        port: str,
        request: Request,
        sandbox_session_id: Optional[str] = Query(default=None, alias="sandboxSessionId"),
    ):
        return await gateway.handle(request, port, "", sandbox_session_id)

    @app.api_route("/dev-server/proxy/{port}/{path:path}", methods=list(ALLOWED_METHODS))
    async def proxy_path(
        port: str,
        path: str,
        request: Request,
        sandbox_session_id: Optional[str] = Query(default=None, alias="sandboxSessionId"),
    ):
        return await gateway.handle(request, port, path, sandbox_session_id)

    return app


def run(host: str = "127.0.0.1", port: int = 2024) -> None:
    """Serve the API. `uvicorn swe_sandbox.api.main:create_app --factory` works too."""
    settings = load_settings()
    configure_logging(settings.log_level)
    logger.info("Starting sandbox api host=%s port=%s provider=%s", host, port, settings.provider)
    uvicorn_run(create_app(settings), host=host, port=port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
