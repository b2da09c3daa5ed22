"""
phrase-tts: Cached Phrase-to-Speech Microservice.

Turns short text phrases into speech audio through an external engine
(Festival or Flite), optionally re-encodes the result with ffmpeg, and keeps
every artifact in a size-bounded, content-addressed disk cache.

Key Features:
    - Canonical request fingerprints (whitespace and case insensitive)
    - Disk cache with atomic publication and LRU eviction
    - Sliding-window rate limiting per caller identity
    - Coalescing of concurrent identical cache misses
    - Bearer-token protected REST API (/v1/convert)
    - Prometheus metrics support

Example Usage:
    >>> from phrase_tts.core.config import Settings
    >>> from phrase_tts.services.pipeline import SynthesisPipeline
    >>>
    >>> pipeline = SynthesisPipeline.from_settings(Settings(raw={}))
    >>> pipeline.start()
    >>> result = pipeline.produce(
    ...     {"phrase": "hello world", "language": "en", "speed": 1.0, "format": "wav"},
    ...     identity="alice",
    ... )
    >>> with open("output.wav", "wb") as f:
    ...     f.write(result.data)
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
