"""Timetable Sync Server - FastAPI Application Entry Point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from server.api.auth import router as auth_router
from server.api.devices import router as devices_router
from server.api.presentations import router as presentations_router
from server.config import Settings
from server.database import init_db, make_engine
from server.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup, release pooled connections on shutdown."""
    init_db(app.state.engine)
    logger.info("%s started (db=%s)", app.state.settings.server_name, app.state.engine.url)

    yield

    app.state.engine.dispose()


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies are a 400 so clients know not to retry them."""
    logger.warning("Rejected %s %s: %d validation error(s)", request.method, request.url.path, len(exc.errors()))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "code": "VALIDATION_ERROR",
            "message": "Invalid request",
            "details": jsonable_encoder(exc.errors()),
        },
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build an app bound to its own settings and engine."""
    settings = settings or Settings()
    settings.ensure_dirs()
    settings.ensure_secrets()

    app = FastAPI(
        title="Timetable Sync",
        description="Device pairing and timetable sync gateway",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = make_engine(settings)
    app.state.rate_limiter = RateLimiter(settings.rate_limit_window_seconds)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # --- Register API routers ---
    app.include_router(auth_router, prefix=API_PREFIX)
    app.include_router(devices_router, prefix=API_PREFIX)
    app.include_router(presentations_router, prefix=API_PREFIX)

    @app.get("/")
    def root():
        """Server info."""
        return {
            "name": settings.server_name,
            "version": VERSION,
            "status": "running",
        }

    @app.get(f"{API_PREFIX}/health")
    def health():
        return {"status": "ok"}

    return app


def run() -> None:
    """Console entry point: `timetable-sync-server`."""
    import uvicorn

    settings = Settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
