"""FastAPI application entrypoint.

Exposes the registry's read-only views: ``/health`` (200 when every server
is connected, 503 otherwise) and ``/connections``.  The lifespan loads server
definitions, initializes the registry, runs the health monitor, and shuts
everything down on exit.
"""

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from mcp_registry.core.config import Settings, load_server_configs
from mcp_registry.core.errors import MCPRegistryError, ServerNotFoundError, StructuredErrorResponse
from mcp_registry.health_monitor import HealthMonitor
from mcp_registry.models.schemas import Connection, HealthReport
from mcp_registry.registry import ServerRegistry

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, registry: ServerRegistry | None = None) -> FastAPI:
    """Build the app around *registry* (a new one from *settings* if omitted)."""
    settings = settings or Settings()
    registry = registry or ServerRegistry(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await registry.initialize(load_server_configs(settings))
        monitor = None
        if settings.ENABLE_HEALTH_CHECK:
            monitor = HealthMonitor(registry, interval=settings.HEALTH_CHECK_INTERVAL)
            monitor.start()
        try:
            yield
        finally:
            if monitor is not None:
                await monitor.stop()
            await registry.shutdown()

    app = FastAPI(
        title=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.registry = registry

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        """Assign or preserve a unique request ID on every request."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(MCPRegistryError)
    async def registry_error_handler(request: Request, exc: MCPRegistryError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "") or str(uuid.uuid4())
        body = StructuredErrorResponse.from_exception(exc, request_id)
        status = 404 if isinstance(exc, ServerNotFoundError) else 503
        return JSONResponse(status_code=status, content=body.model_dump())

    @app.get("/health", response_model=HealthReport)
    async def health() -> JSONResponse:
        """Return overall health plus per-server diagnostics."""
        report = registry.health()
        return JSONResponse(
            status_code=200 if report.healthy else 503,
            content=report.model_dump(mode="json"),
        )

    @app.get("/connections", response_model=list[Connection])
    async def list_connections() -> list[Connection]:
        return registry.get_connections()

    @app.get("/connections/{name}", response_model=Connection)
    async def get_connection(name: str) -> Connection:
        connection = registry.get_connection(name)
        if connection is None:
            raise ServerNotFoundError(name)
        return connection

    return app


app = create_app()
