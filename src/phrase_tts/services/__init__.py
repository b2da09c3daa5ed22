"""
phrase-tts Services Layer.

This package holds the request-level logic that sits between the API layer
and the cache/engine layer.

Components:
    - validators.py: RequestNormalizer (validation + canonical keys)
    - rate_limiter.py: Sliding-window admission control
    - auth.py: Bearer token to identity resolution
    - pipeline.py: SynthesisPipeline (the request orchestrator)
"""
from .pipeline import ProduceResult, SynthesisPipeline, get_pipeline, reset_pipeline
from .rate_limiter import Allowed, Denied, InMemoryAccountHistory, RateLimiter
from .validators import GenerationKey, GenerationRequest, RequestNormalizer

__all__ = [
    "SynthesisPipeline",
    "ProduceResult",
    "get_pipeline",
    "reset_pipeline",
    "RateLimiter",
    "Allowed",
    "Denied",
    "InMemoryAccountHistory",
    "RequestNormalizer",
    "GenerationRequest",
    "GenerationKey",
]
