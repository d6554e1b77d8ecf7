"""FastAPI application serving the explorer UI and proxying the engine."""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional, Protocol
from urllib.parse import urlparse

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse, Response
from pydantic import BaseModel

from ..errors import ProxyUpstreamError
from ..logging import get_logger
from ..registry import Registry, RegistryStore
from ..supervisor import State, SupervisorStatus

EXPLORER_DIR = Path(__file__).resolve().parent.parent / "explorer"

_HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
    "content-encoding",
}
_PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

logger = get_logger("service")


class EngineSource(Protocol):
    def endpoint(self) -> Optional[str]: ...

    def status(self) -> SupervisorStatus: ...


class RemoteEngine:
    """A Prometheus that autoscope proxies but does not manage."""

    def __init__(self, url: str) -> None:
        parsed = urlparse(url if "://" in url else f"http://{url}")
        if parsed.scheme not in {"http", "https"} or not parsed.hostname:
            raise ValueError(f"Prometheus URL must look like http://host:port, got '{url}'")
        self.url = parsed.geturl().rstrip("/")

    def endpoint(self) -> Optional[str]:
        return self.url

    def status(self) -> SupervisorStatus:
        return SupervisorStatus(state=State.RUNNING, endpoint=self.url, needs_attention=False, restarts=0)


class FunctionRecord(BaseModel):
    qualifiedName: str
    module: str
    file: str
    lineStart: int
    lineEnd: int
    language: str
    metricNames: List[str]


class StatusResponse(BaseModel):
    state: str
    endpoint: Optional[str] = None
    needs_attention: bool = False
    restarts: int = 0
    last_error: Optional[str] = None
    functions: int = 0
    diagnostics: int = 0


class HealthResponse(BaseModel):
    status: str


def _forward_headers(headers: Any) -> dict[str, str]:
    return {key: value for key, value in headers.items() if key.lower() not in _HOP_BY_HOP}


def create_app(
    supervisor: EngineSource,
    store: RegistryStore,
    *,
    ui_dir: Path = EXPLORER_DIR,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    upstream_timeout: float = 60.0,
    forward_prefix: bool = True,
) -> FastAPI:
    """Create the application exposing the explorer, the engine proxy and the registry.

    The supervised engine serves under ``/prometheus`` itself, so requests are
    forwarded with that prefix. Pass ``forward_prefix=False`` for a Prometheus
    that serves from the root of its URL.
    """

    app = FastAPI(title="autoscope explorer", version="1.0.0")
    ui_root = ui_dir.resolve()

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/")
    async def root() -> RedirectResponse:
        return RedirectResponse(url="/explorer/")

    @app.get("/explorer")
    async def explorer_root() -> RedirectResponse:
        return RedirectResponse(url="/explorer/")

    @app.get("/explorer/{path:path}")
    async def explorer(path: str) -> FileResponse:
        file_path = (ui_root / (path or "index.html")).resolve()
        try:
            file_path.relative_to(ui_root)
        except ValueError:
            raise HTTPException(status_code=404, detail="Not found") from None
        if file_path.is_dir():
            file_path = file_path / "index.html"
        if not file_path.is_file():
            raise HTTPException(status_code=404, detail="Not found")
        return FileResponse(file_path)

    @app.get("/api/functions", response_model=List[FunctionRecord])
    async def list_functions() -> List[FunctionRecord]:
        return [FunctionRecord(**record) for record in store.registry.to_records()]  # type: ignore[arg-type]

    @app.get("/api/functions/{name}", response_model=List[FunctionRecord])
    async def get_function(name: str) -> List[FunctionRecord]:
        matches = Registry(tuple(store.registry.lookup(name)))
        if not len(matches):
            raise HTTPException(status_code=404, detail=f"No instrumented function named '{name}'")
        return [FunctionRecord(**record) for record in matches.to_records()]  # type: ignore[arg-type]

    @app.get("/api/status", response_model=StatusResponse)
    async def status() -> StatusResponse:
        current = supervisor.status()
        result = store.current()
        return StatusResponse(
            state=current.state.value,
            endpoint=current.endpoint,
            needs_attention=current.needs_attention,
            restarts=current.restarts,
            last_error=current.last_error,
            functions=len(result.registry),
            diagnostics=len(result.diagnostics),
        )

    @app.api_route("/prometheus/{path:path}", methods=_PROXY_METHODS)
    async def prometheus(request: Request, path: str) -> Response:
        endpoint = supervisor.endpoint()
        if endpoint is None:
            return JSONResponse(status_code=503, content={"detail": "upstream unavailable"})

        upstream_path = request.url.path if forward_prefix else f"/{path}"
        url = f"{endpoint.rstrip('/')}{upstream_path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        body = await request.body()
        try:
            async with httpx.AsyncClient(transport=transport, timeout=upstream_timeout) as client:
                upstream = await client.request(
                    request.method,
                    url,
                    headers=_forward_headers(request.headers),
                    content=body or None,
                )
        except httpx.TransportError as exc:
            raise ProxyUpstreamError(f"Engine unreachable at {endpoint}: {exc}") from exc

        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            headers=_forward_headers(upstream.headers),
        )

    @app.exception_handler(ProxyUpstreamError)
    async def upstream_error_handler(_: Any, exc: ProxyUpstreamError) -> JSONResponse:
        logger.warning("%s", exc)
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    return app


def run_service(app: FastAPI, host: str = "127.0.0.1", port: int = 6789) -> None:  # pragma: no cover - integration path
    import uvicorn

    logger.info("Explorer listening on http://%s:%d/explorer/", host, port)
    uvicorn.run(app, host=host, port=port, log_level="warning")


__all__ = ["EXPLORER_DIR", "EngineSource", "RemoteEngine", "create_app", "run_service"]
