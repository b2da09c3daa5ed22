"""
Error Codes and Exceptions for phrase-tts.

Every failure that can reach a caller is a PipelineError carrying a
machine-readable code, a human-readable message and optional details. The
API layer maps codes to HTTP status codes (see api/routes.py).

Taxonomy:
    - ValidationError: Malformed or out-of-range request (rejected before
      any cache or rate-limit work)
    - RateLimitedError: Admission denied, carries retry_after seconds
    - SynthesisFailure / ConversionFailure: Engine error or timeout; the
      cache is never mutated when these are raised
    - CacheIoError: Disk write/read failure in the artifact store
    - CacheInitError: Cache root cannot be created or opened at startup
    - EvictionError: Per-entry eviction failure (absorbed by the sweep)
    - UnauthorizedError: Missing or unknown credentials
    - ServiceClosedError: Pipeline used after shutdown

Example:
    >>> try:
    ...     pipeline.produce(raw, identity="alice")
    ... except RateLimitedError as e:
    ...     print(e.retry_after)
"""
from __future__ import annotations

import math
from typing import Any, Dict, Optional


class ErrorCode:
    """
    Standardized error codes for API responses.

    Validation codes name the violated constraint so clients can react
    without parsing the message.
    """
    # Validation
    PHRASE_REQUIRED = "PHRASE_REQUIRED"
    PHRASE_TOO_LONG = "PHRASE_TOO_LONG"
    PHRASE_BLACKLISTED = "PHRASE_BLACKLISTED"
    PHRASE_INVALID_CHAR = "PHRASE_INVALID_CHAR"
    LANGUAGE_UNSUPPORTED = "LANGUAGE_UNSUPPORTED"
    FORMAT_UNSUPPORTED = "FORMAT_UNSUPPORTED"
    SPEED_INVALID = "SPEED_INVALID"
    SPEED_OUT_OF_RANGE = "SPEED_OUT_OF_RANGE"
    INVALID_INPUT = "INVALID_INPUT"

    # Admission / auth
    RATE_LIMITED = "RATE_LIMITED"
    UNAUTHORIZED = "UNAUTHORIZED"

    # Engines
    SYNTHESIS_FAILED = "SYNTHESIS_FAILED"
    CONVERSION_FAILED = "CONVERSION_FAILED"
    TIMEOUT = "TIMEOUT"

    # Cache
    CACHE_IO = "CACHE_IO"
    CACHE_INIT = "CACHE_INIT"
    EVICTION_FAILED = "EVICTION_FAILED"

    # Lifecycle
    SERVICE_CLOSED = "SERVICE_CLOSED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


VALIDATION_CODES = frozenset({
    ErrorCode.PHRASE_REQUIRED,
    ErrorCode.PHRASE_TOO_LONG,
    ErrorCode.PHRASE_BLACKLISTED,
    ErrorCode.PHRASE_INVALID_CHAR,
    ErrorCode.LANGUAGE_UNSUPPORTED,
    ErrorCode.FORMAT_UNSUPPORTED,
    ErrorCode.SPEED_INVALID,
    ErrorCode.SPEED_OUT_OF_RANGE,
    ErrorCode.INVALID_INPUT,
})


class PipelineError(Exception):
    """
    Base exception for phrase-tts errors.

    Attributes:
        message: Human-readable error message.
        code: Error code from ErrorCode class.
        details: Optional dictionary with additional context.
    """
    def __init__(self, message: str, code: str = ErrorCode.INTERNAL_ERROR, details: Optional[Dict] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to standardized error response dict for API."""
        result = {
            "ok": False,
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(PipelineError):
    """
    Raised when a request fails validation.

    Example:
        >>> raise ValidationError("No phrase provided!", ErrorCode.PHRASE_REQUIRED)
    """
    def __init__(self, message: str, code: str = ErrorCode.INVALID_INPUT, details: Optional[Dict] = None):
        super().__init__(message, code, details)


class RateLimitedError(PipelineError):
    """Raised when an identity has exhausted its request allowance."""
    def __init__(self, retry_after: float, details: Optional[Dict] = None):
        self.retry_after = max(0.0, float(retry_after))
        wait = math.ceil(self.retry_after)
        super().__init__(
            f"Too many requests! You will be able to make another request in {wait} seconds.",
            ErrorCode.RATE_LIMITED,
            {"retry_after": wait, **(details or {})},
        )


class SynthesisFailure(PipelineError):
    """Raised when the speech synthesizer fails or times out."""
    def __init__(self, message: str, details: Optional[Dict] = None, code: str = ErrorCode.SYNTHESIS_FAILED):
        super().__init__(message, code, details)


class ConversionFailure(PipelineError):
    """Raised when format conversion fails, times out or is unsupported."""
    def __init__(self, message: str, details: Optional[Dict] = None, code: str = ErrorCode.CONVERSION_FAILED):
        super().__init__(message, code, details)


class CacheIoError(PipelineError):
    """Raised when an artifact cannot be written to or read from disk."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.CACHE_IO, details)


class CacheInitError(PipelineError):
    """Raised when the cache root cannot be created or opened."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.CACHE_INIT, details)


class EvictionError(PipelineError):
    """Raised when a single cache entry cannot be evicted."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.EVICTION_FAILED, details)


class UnauthorizedError(PipelineError):
    """Raised when a bearer token is missing or unknown."""
    def __init__(self, message: str = "Invalid or missing credentials", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.UNAUTHORIZED, details)


class ServiceClosedError(PipelineError):
    """Raised when the pipeline is used after close()."""
    def __init__(self, message: str = "Service is shutting down", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.SERVICE_CLOSED, details)
