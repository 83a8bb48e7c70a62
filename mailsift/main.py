"""Mailsift API - Main FastAPI Application."""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mailsift.api.routes import emails, health, jobs, review_queue, usage
from mailsift.core.config import get_settings
from mailsift.core.exceptions import MailsiftException


def configure_logging() -> None:
    """Set up the root logger from LOG_FORMAT and LOG_LEVEL.

    json: Structured JSON via python-json-logger (for production).
    text: Human-readable format (for local development).
    """
    settings = get_settings()
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicate output
    root_logger.handlers.clear()

    handler = logging.StreamHandler()
    if settings.LOG_FORMAT == "json":
        from pythonjsonlogger.json import JsonFormatter

        handler.setFormatter(
            JsonFormatter(
                fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
                rename_fields={
                    "asctime": "timestamp",
                    "levelname": "level",
                    "name": "service",
                },
                static_fields={"app": "mailsift-api"},
            )
        )
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root_logger.addHandler(handler)


configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> Any:
    """Application lifespan handler for startup and shutdown events."""
    settings = get_settings()
    settings.validate_startup()
    logger.info(
        "Starting Mailsift API...",
        extra={"env": settings.APP_ENV, "transport": settings.LLM_TRANSPORT, "model": settings.ANALYZER_MODEL},
    )
    yield
    logger.info("Shutting down Mailsift API...")


app = FastAPI(
    title="Mailsift API",
    description="Email analysis pipeline and daily review queue",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Review queue routes share the /emails prefix; register them before the generic email routes.
app.include_router(review_queue.router, prefix="/api/v1")
app.include_router(emails.router, prefix="/api/v1")
app.include_router(usage.router, prefix="/api/v1")
app.include_router(jobs.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


@app.get("/health", tags=["system"])
async def root_health_check() -> dict[str, str]:
    """Lightweight liveness check; dependency-aware status lives at /api/v1/health."""
    return {"status": "healthy"}


@app.exception_handler(MailsiftException)
async def mailsift_exception_handler(request: Request, exc: MailsiftException) -> JSONResponse:
    """Render pipeline exceptions with a consistent JSON body."""
    request_id = str(uuid.uuid4())
    logger.warning(
        "Mailsift exception occurred",
        extra={
            "code": exc.code,
            "status_code": exc.status_code,
            "request_id": request_id,
            "path": request.url.path,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.message,
            "code": exc.code,
            "request_id": request_id,
        },
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request body and query validation errors."""
    request_id = str(uuid.uuid4())
    logger.warning(
        "Request validation error",
        extra={"request_id": request_id, "path": request.url.path, "method": request.method},
    )
    return JSONResponse(
        status_code=400,
        content={
            "detail": "Validation error",
            "code": "VALIDATION_ERROR",
            "request_id": request_id,
            "errors": jsonable_errors(exc),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")} for e in exc.errors()]
