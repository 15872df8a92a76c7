"""FastAPI application entry point."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from daytona_relay.api.context import AppContext
from daytona_relay.api.middleware import AuditLoggerMiddleware
from daytona_relay.api.routers import generate
from daytona_relay.api.schemas import APIMessage
from daytona_relay.config import load_settings
from daytona_relay.errors import RequestError
from daytona_relay.version import __version__


def create_app(context: AppContext | None = None) -> FastAPI:
    """Instantiate the FastAPI application with all routers."""

    if context is None:
        context = AppContext(settings=load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await context.shutdown()

    app = FastAPI(
        title="Daytona Relay API",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.context = context
    app.add_middleware(AuditLoggerMiddleware)
    app.include_router(generate.router)

    @app.exception_handler(RequestError)
    async def request_error_handler(_: Request, exc: RequestError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.get("/healthz", response_model=APIMessage, tags=["system"])
    def healthz() -> APIMessage:
        return APIMessage(message="ok")

    return app


app = create_app()

__all__ = ["app", "create_app"]
