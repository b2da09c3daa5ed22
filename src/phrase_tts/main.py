"""
FastAPI Application Entry Point.

This module creates and configures the FastAPI application instance for the
phrase-tts service. It sets up routing, logging, request validation errors
and the pipeline lifespan.

Lifespan:
    startup  - build the pipeline, scan the cache root, start the cache
               manager thread
    shutdown - close the pipeline (stops the manager, optionally flushes)

    Set PHRASE_TTS_SKIP_STARTUP=1 to skip both (tests that override
    dependencies).

Usage:
    # Run with uvicorn
    uvicorn phrase_tts.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from phrase_tts.api.dependencies import start_pipeline, stop_pipeline
from phrase_tts.api.routes import router
from phrase_tts.core.errors import ErrorCode
from phrase_tts.core.logging import configure_logging, get_logger, info

_LOG = get_logger("phrase-tts.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    skip = os.getenv("PHRASE_TTS_SKIP_STARTUP", "0") == "1"
    if skip:
        info(_LOG, "startup_skipped", reason="PHRASE_TTS_SKIP_STARTUP=1")
    else:
        start_pipeline()
    try:
        yield
    finally:
        if not skip:
            stop_pipeline()


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies get the same error shape as every other rejection."""
    return JSONResponse(
        status_code=400,
        content={
            "ok": False,
            "error": ErrorCode.INVALID_INPUT,
            "message": "Malformed request body",
            "details": {"errors": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
                for err in exc.errors()
            ]},
        },
    )


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    This factory function:
        1. Configures structured logging based on environment settings
        2. Creates a FastAPI instance with the pipeline lifespan
        3. Registers the API router and the body validation handler

    Returns:
        FastAPI: Configured application instance ready to serve requests.
    """
    # Initialize structured logging (reads PHRASE_TTS_LOG_LEVEL env var)
    configure_logging()

    app = FastAPI(title="phrase-tts", lifespan=lifespan)
    app.include_router(router)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)

    return app


# Global application instance for ASGI servers (uvicorn, gunicorn, etc.)
app = create_app()
