from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from engram.api.routes.backend import router as backend_router
from engram.api.routes.chat import router as chat_router
from engram.api.routes.index import router as index_router
from engram.config import Settings, get_settings
from engram.errors import (
    BackendUnavailable,
    EngramError,
    GenerationTimeout,
    InsufficientResource,
    InvalidConfiguration,
    NetworkError,
    NotConfigured,
    NotInitialized,
    TranscriptNotFound,
    VectorIndexError,
)
from engram.service.factory import build_manager
from engram.service.lifecycle import ResourceLifecycleManager

logger = logging.getLogger(__name__)

_STATUS_CODES: dict[type[EngramError], int] = {
    NotConfigured: 409,
    NotInitialized: 409,
    TranscriptNotFound: 404,
    InsufficientResource: 507,
    InvalidConfiguration: 422,
    NetworkError: 503,
    BackendUnavailable: 503,
    GenerationTimeout: 504,
    VectorIndexError: 500,
}


def status_code_for(exc: EngramError) -> int:
    for error_type, code in _STATUS_CODES.items():
        if isinstance(exc, error_type):
            return code
    return 500


async def engram_error_handler(request: Request, exc: EngramError) -> JSONResponse:
    code = status_code_for(exc)
    if code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": exc.user_message})


def create_app(
    manager: ResourceLifecycleManager | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Build the API around a lifecycle manager.

    The manager is built lazily from settings on startup when not supplied,
    and shut down (backend unloaded, idle timer cancelled) when the app stops.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "manager", None) is None:
            app.state.manager = build_manager(settings)
        try:
            yield
        finally:
            await app.state.manager.shutdown()

    app = FastAPI(
        title="Engram API",
        description="Local-first RAG over meeting transcripts",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.manager = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:8501",
        ],
        allow_origin_regex=r"http://localhost:\d+",
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(EngramError, engram_error_handler)

    app.include_router(chat_router)
    app.include_router(index_router)
    app.include_router(backend_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
