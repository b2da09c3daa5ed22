"""
FastAPI REST API Layer for phrase-tts.

This package defines all HTTP endpoints:
    - routes.py: /, /v1/languages, /v1/convert, /health, /metrics
    - schemas.py: Request/response Pydantic models
    - dependencies.py: FastAPI dependency injection
"""
