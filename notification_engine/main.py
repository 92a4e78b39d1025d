"""FastAPI application factory with middleware, routers, and lifespan."""

import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import Depends, FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings, setup_logging
from .database.base import get_db
from .notifications.engine import build_notification_engine
from .notifications.exceptions import (
    DirectoryUnavailable,
    JobAlreadyRunning,
    NotificationError,
    PersistenceFailure,
    QueryFailure,
    TargetNotFound,
    TemplateRenderError,
)
from .rate_limit import limiter

logger = logging.getLogger(__name__)

_startup_time: float = 0.0

# Most specific first; anything else derived from NotificationError is a 500.
_ERROR_STATUS: list[tuple[type[NotificationError], int]] = [
    (TargetNotFound, 404),
    (JobAlreadyRunning, 409),
    (DirectoryUnavailable, 503),
    (PersistenceFailure, 503),
    (QueryFailure, 503),
    (TemplateRenderError, 500),
]


def _run_migrations() -> None:
    """Run Alembic migrations (upgrade head) on startup."""
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config()
    alembic_cfg.set_main_option("script_location", str(Path(__file__).parent.parent / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.effective_database_url)
    command.upgrade(alembic_cfg, "head")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run migrations, start the notification engine, and drain it on shutdown."""
    global _startup_time
    _startup_time = time.time()

    setup_logging()
    _run_migrations()

    engine = build_notification_engine(settings)
    app.state.engine = engine
    engine.start()
    logger.info("Notification engine ready")
    try:
        yield
    finally:
        engine.stop()


def error_status(exc: NotificationError) -> int:
    for exc_type, status_code in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status_code
    return 500


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> Response:
    retry_after = "60"
    return JSONResponse(
        {"success": False, "error": "Too many requests", "detail": str(exc.detail), "retry_after": int(retry_after)},
        status_code=429,
        headers={"Retry-After": retry_after},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Training Portal Notification Engine",
        lifespan=lifespan,
    )

    # --- Exception handlers ---
    @app.exception_handler(NotificationError)
    async def notification_error_handler(request: Request, exc: NotificationError):
        status_code = error_status(exc)
        if status_code >= 500:
            logger.error("%s on %s %s: %s", exc.__class__.__name__, request.method, request.url.path, exc)
        return JSONResponse({"success": False, "error": str(exc)}, status_code=status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            {"success": False, "error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
            status_code=422,
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse({"success": False, "error": str(exc)}, status_code=400)

    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"success": False, "error": exc.detail}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse({"success": False, "error": "Internal server error"}, status_code=500)

    # --- Middleware stack (LIFO: last added = outermost) ---

    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        return response

    # --- API v1 (all JSON endpoints) ---
    from .api_v1 import api_v1_router

    app.include_router(api_v1_router)

    # --- Health check ---
    @app.get("/health")
    def health(request: Request, db: Session = Depends(get_db)):
        db_status = "ok"
        try:
            db.execute(text("SELECT 1"))
        except SQLAlchemyError:
            db_status = "unreachable"

        engine = getattr(request.app.state, "engine", None)
        scheduler_status = "running" if engine is not None and engine.scheduler.running else "stopped"
        uptime = round(time.time() - _startup_time, 1) if _startup_time else 0.0

        return {
            "status": "ok" if db_status == "ok" else "degraded",
            "db": db_status,
            "scheduler": scheduler_status,
            "version": "1.0.0",
            "uptime_seconds": uptime,
        }

    return app


app = create_app()
