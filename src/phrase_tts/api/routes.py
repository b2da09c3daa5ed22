"""
phrase-tts API Routes.

Endpoints:
    GET  /               - Welcome text
    GET  /v1/languages   - Enabled languages and allowed formats
    POST /v1/convert     - Phrase to audio (bearer token required)
    GET  /health         - Health check for load balancers and probes
    GET  /metrics        - Prometheus metrics (requires prometheus_client)

Request Flow (/v1/convert):
    1. Generate unique request ID for tracing
    2. Resolve the bearer token to a caller identity
    3. Call SynthesisPipeline.produce()
    4. Return audio with metadata headers

Error Handling:
    All errors are returned as JSON with standardized format:
    {
        "ok": false,
        "error": "<ERROR_CODE>",
        "message": "<human readable message>",
        "details": {...}
    }

    HTTP status codes are mapped from PipelineError codes:
        - Validation codes -> 400 Bad Request
        - UNAUTHORIZED -> 401 Unauthorized
        - RATE_LIMITED -> 429 Too Many Requests (+ Retry-After)
        - TIMEOUT -> 504 Gateway Timeout
        - SERVICE_CLOSED -> 503 Service Unavailable
        - everything else -> 500 Internal Server Error

Example Usage:
    curl -X POST http://localhost:8000/v1/convert \\
        -H "Authorization: Bearer s3cr3t-token" \\
        -H "Content-Type: application/json" \\
        -d '{"phrase": "Hello, world!", "language": "en", "format": "mp3"}' \\
        --output output.mp3
"""
from __future__ import annotations

import math
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from phrase_tts.api.dependencies import get_authenticator, get_pipeline_dep
from phrase_tts.api.schemas import ConvertRequest, LanguagesResponse
from phrase_tts.core.errors import VALIDATION_CODES, ErrorCode, PipelineError, RateLimitedError
from phrase_tts.core.logging import error, get_logger, set_identity, set_request_id
from phrase_tts.core.metrics import metrics
from phrase_tts.services.auth import Authenticator, parse_bearer
from phrase_tts.services.pipeline import SynthesisPipeline

# FastAPI router for all endpoints
router = APIRouter()

# Module-level logger for request tracing
_LOG = get_logger("phrase-tts.api")

STATUS_MAP = {
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.SERVICE_CLOSED: 503,
}

MEDIA_TYPES = {
    "wav": "audio/wav",
    "mp3": "audio/mpeg",
    "flac": "audio/flac",
    "m4a": "audio/mp4",
    "wma": "audio/x-ms-wma",
    "aac": "audio/aac",
    "aif": "audio/aiff",
}


def status_for(err: PipelineError) -> int:
    """Map an error code to its HTTP status."""
    if err.code in VALIDATION_CODES:
        return 400
    return STATUS_MAP.get(err.code, 500)


def _error_response(err: PipelineError, request_id: Optional[str] = None) -> JSONResponse:
    """Create a standardized JSON error response from a PipelineError."""
    status_code = status_for(err)
    headers = {}
    if request_id:
        headers["X-Request-Id"] = request_id
    if isinstance(err, RateLimitedError):
        headers["Retry-After"] = str(math.ceil(err.retry_after))
    elif status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(status_code=status_code, content=err.to_dict(), headers=headers)


@router.get("/", response_class=PlainTextResponse)
def index(pipeline: SynthesisPipeline = Depends(get_pipeline_dep)):
    """Catch-all landing text for anyone who finds the API without docs."""
    return f"Welcome to {pipeline.config.api_name}'s TTS API."


@router.get("/v1/languages", response_model=LanguagesResponse)
def languages(pipeline: SynthesisPipeline = Depends(get_pipeline_dep)):
    return LanguagesResponse(
        languages=pipeline.languages(),
        formats=list(pipeline.config.request.allowed_formats),
    )


@router.post("/v1/convert", response_class=Response)
def convert(
    req: ConvertRequest,
    authorization: Optional[str] = Header(default=None),
    pipeline: SynthesisPipeline = Depends(get_pipeline_dep),
    authenticator: Authenticator = Depends(get_authenticator),
):
    """
    Convert a phrase to speech.

    Returns:
        Response: Audio bytes with headers:
            - Content-Disposition: attachment; filename="output.<fmt>"
            - X-Request-Id: Unique request identifier for tracing
            - X-Cache: hit, miss, coalesced or uncached
            - X-Bytes: Size of audio data in bytes
    """
    # Generate unique request ID for tracing across logs
    rid = str(uuid.uuid4())[:12]
    set_request_id(rid)

    try:
        identity = authenticator.validate(parse_bearer(authorization))
        set_identity(identity)
        result = pipeline.produce(req.to_raw(), identity=identity, request_id=rid)
    except PipelineError as e:
        return _error_response(e, rid)
    except Exception as e:
        # Log internally but don't expose details
        error(_LOG, "unhandled_error", error=str(e), error_type=type(e).__name__)
        return JSONResponse(
            status_code=500,
            content={
                "ok": False,
                "error": ErrorCode.INTERNAL_ERROR,
                "message": "Internal server error",
                "request_id": rid,
            },
            headers={"X-Request-Id": rid},
        )

    headers = {
        "Content-Disposition": f'attachment; filename="output.{result.fmt}"',
        "X-Request-Id": rid,
        "X-Cache": result.cache_status,
        "X-Bytes": str(len(result.data)),
    }
    media_type = MEDIA_TYPES.get(result.fmt, "application/octet-stream")
    return Response(content=result.data, media_type=media_type, headers=headers)


@router.get("/health")
def health(pipeline: SynthesisPipeline = Depends(get_pipeline_dep)):
    """
    Health check endpoint for load balancers and orchestration.

    Returns engine availability, cache store and manager statistics and
    the rate limit configuration (see SynthesisPipeline.get_health_info).
    """
    return pipeline.get_health_info()


@router.get("/metrics")
def prometheus_metrics():
    """
    Prometheus metrics endpoint.

    Requires prometheus_client package. Returns placeholder text if unavailable.
    """
    content, content_type = metrics.get_metrics_response()
    return Response(content=content, media_type=content_type)
