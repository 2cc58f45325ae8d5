"""Reverse proxy from the API to dev servers running in sandboxes."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

import httpx
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from swe_sandbox.errors import InvalidPort, ProxyConnectionRefused, ProxyUpstreamError
from swe_sandbox.services.html_rewrite import rewrite_html, rewrite_location
from swe_sandbox.services.ports import is_valid_port

if TYPE_CHECKING:
    from swe_sandbox.services.sandboxes import SandboxManager

logger = logging.getLogger(__name__)

FORWARD_REQUEST_HEADERS = (
    "content-type",
    "accept",
    "accept-language",
    "authorization",
    "cookie",
    "x-requested-with",
    "cache-control",
)
# content-length is left out because HTML bodies are rewritten.
FORWARD_RESPONSE_HEADERS = (
    "content-type",
    "cache-control",
    "etag",
    "last-modified",
    "set-cookie",
    "location",
)
ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD")
PROXY_MARKER_HEADER = "x-sandbox-preview-proxy"
DEFAULT_PROXY_TIMEOUT_S = 30.0


def parse_port(value: object) -> int:
    text = str(value).strip()
    if not (text.isascii() and text.isdigit()):
        raise InvalidPort(value)
    port = int(text)
    if not is_valid_port(port):
        raise InvalidPort(value)
    return port


def cors_headers() -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": ", ".join(ALLOWED_METHODS),
        "Access-Control-Allow-Headers": ", ".join(FORWARD_REQUEST_HEADERS),
    }


class ProxyGateway:
    def __init__(
        self,
        manager: "SandboxManager | None" = None,
        client: httpx.AsyncClient | None = None,
        upstream_host: str = "localhost",
        timeout_sec: float = DEFAULT_PROXY_TIMEOUT_S,
    ) -> None:
        self._manager = manager
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_sec, follow_redirects=False)
        self._upstream_host = upstream_host

    def resolve_host_port(self, port: int, sandbox_id: Optional[str] = None) -> int:
        """Map a sandbox container port to the host port serving it."""
        if not sandbox_id or self._manager is None:
            return port
        mappings = self._manager.lookup_port_mappings(sandbox_id) or []
        for mapping in mappings:
            if mapping.container_port == port:
                if mapping.host_port != port:
                    logger.info(
                        "Proxying container port %s of sandbox %s via host port %s",
                        port,
                        sandbox_id,
                        mapping.host_port,
                    )
                return mapping.host_port
        logger.debug("No port mapping for %s in sandbox %s; using it directly", port, sandbox_id)
        return port

    async def handle(
        self,
        request: Request,
        port: str | int,
        path: str = "",
        sandbox_id: Optional[str] = None,
    ) -> Response:
        try:
            container_port = parse_port(port)
        except InvalidPort:
            return JSONResponse({"error": "Invalid port number"}, status_code=400)

        host_port = await run_in_threadpool(self.resolve_host_port, container_port, sandbox_id)
        target_url = f"http://{self._upstream_host}:{host_port}/{path.lstrip('/')}"
        headers = {
            name: request.headers[name] for name in FORWARD_REQUEST_HEADERS if name in request.headers
        }
        headers[PROXY_MARKER_HEADER] = "true"
        body = None
        if request.method not in ("GET", "HEAD"):
            body = await request.body()

        upstream_request = self._client.build_request(
            request.method,
            target_url,
            params=list(request.query_params.multi_items()),
            headers=headers,
            content=body,
        )
        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.ConnectError as exc:
            error = ProxyConnectionRefused(container_port)
            logger.warning("Proxy connect to %s failed: %s", target_url, exc)
            return JSONResponse(
                {"error": "Connection refused", "message": str(error)},
                status_code=503,
            )
        except httpx.HTTPError as exc:
            error = ProxyUpstreamError(str(exc) or type(exc).__name__)
            logger.error("Proxy request to %s failed: %s", target_url, error)
            return JSONResponse({"error": "Proxy error", "message": str(error)}, status_code=502)

        forwarded = self._response_headers(upstream, str(upstream_request.url), host_port, container_port)
        content_type = upstream.headers.get("content-type", "")
        if "text/html" in content_type:
            try:
                await upstream.aread()
            finally:
                await upstream.aclose()
            html = rewrite_html(upstream.text, container_port, host_port)
            response: Response = Response(
                content=html.encode(upstream.encoding or "utf-8", errors="replace"),
                status_code=upstream.status_code,
            )
        else:
            response = StreamingResponse(
                upstream.aiter_bytes(),
                status_code=upstream.status_code,
                background=BackgroundTask(upstream.aclose),
            )
        for name, value in forwarded:
            response.headers.append(name, value)
        return response

    def _response_headers(
        self,
        upstream: httpx.Response,
        target_url: str,
        host_port: int,
        container_port: int,
    ) -> list[tuple[str, str]]:
        # Anything off the whitelist, x-frame-options included, is dropped.
        forwarded: list[tuple[str, str]] = []
        for name in FORWARD_RESPONSE_HEADERS:
            for value in upstream.headers.get_list(name):
                if name == "location":
                    value = rewrite_location(value, target_url, host_port, container_port)
                forwarded.append((name, value))
        forwarded.extend((name.lower(), value) for name, value in cors_headers().items())
        return forwarded

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
