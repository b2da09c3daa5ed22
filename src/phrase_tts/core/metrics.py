"""
Prometheus Metrics for phrase-tts.

Counters and gauges for the conversion pipeline and its disk cache. The
prometheus_client dependency is an optional extra; without it every
record_* call returns immediately and /metrics serves a one-line notice.

Metrics Exposed:
    phrase_tts_requests_total               - Requests by final status
    phrase_tts_request_duration_seconds     - Request latency by cache status
    phrase_tts_audio_bytes_total            - Audio bytes served
    phrase_tts_cache_hits_total             - Cache hits (including coalesced)
    phrase_tts_cache_misses_total           - Cache misses
    phrase_tts_rate_limited_total           - Requests denied by the limiter
    phrase_tts_evictions_total              - Entries removed by the sweep
    phrase_tts_cache_size_bytes             - Bytes tracked by the cache index
    phrase_tts_engine_failures_total        - Synthesizer/converter failures

Usage:
    from phrase_tts.core.metrics import metrics

    metrics.record_request(status="success", duration=0.5,
                           cache_status="miss", audio_bytes=44100)
    metrics.record_cache("hit")
    metrics.record_eviction(count=3, bytes_freed=120_000)

    content, content_type = metrics.get_metrics_response()
"""
from __future__ import annotations

from typing import Optional

# Optional extra: pip install phrase-tts[metrics]
try:
    from prometheus_client import (
        CONTENT_TYPE_LATEST,
        CollectorRegistry,
        Counter,
        Gauge,
        Histogram,
        generate_latest,
    )
    PROMETHEUS_AVAILABLE = True
except ImportError:
    PROMETHEUS_AVAILABLE = False
    Counter = None
    Histogram = None
    Gauge = None
    CollectorRegistry = None


class PipelineMetrics:
    """
    Metrics collection for the synthesis pipeline and its cache.

    A private CollectorRegistry keeps these series apart from any other
    Prometheus instrumentation in the same process. The module-level
    `metrics` instance is shared by every component.

    Attributes:
        enabled: Whether metrics collection is active.
    """

    def __init__(self):
        self._enabled = PROMETHEUS_AVAILABLE
        self._registry: Optional["CollectorRegistry"] = None

        if self._enabled:
            self._setup_metrics()

    def _setup_metrics(self) -> None:
        """Create all metric objects on a private registry."""
        self._registry = CollectorRegistry()

        self._requests_total = Counter(
            "phrase_tts_requests_total",
            "Total conversion requests",
            ["status"],
            registry=self._registry,
        )
        self._request_duration = Histogram(
            "phrase_tts_request_duration_seconds",
            "Conversion request duration in seconds",
            ["cache_status"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )
        self._audio_bytes_total = Counter(
            "phrase_tts_audio_bytes_total",
            "Total audio bytes served",
            registry=self._registry,
        )
        self._cache_hits = Counter(
            "phrase_tts_cache_hits_total",
            "Requests served from the disk cache",
            registry=self._registry,
        )
        self._cache_misses = Counter(
            "phrase_tts_cache_misses_total",
            "Requests that needed synthesis",
            registry=self._registry,
        )
        self._rate_limited = Counter(
            "phrase_tts_rate_limited_total",
            "Requests denied by the rate limiter",
            registry=self._registry,
        )
        self._evictions = Counter(
            "phrase_tts_evictions_total",
            "Cache entries evicted by the size sweep",
            registry=self._registry,
        )
        self._cache_size = Gauge(
            "phrase_tts_cache_size_bytes",
            "Bytes currently tracked by the cache index",
            registry=self._registry,
        )
        self._engine_failures = Counter(
            "phrase_tts_engine_failures_total",
            "Synthesizer and converter failures",
            ["stage"],
            registry=self._registry,
        )

    @property
    def enabled(self) -> bool:
        """False when prometheus_client is missing."""
        return self._enabled

    def record_request(
        self,
        status: str,
        duration: float,
        cache_status: str = "miss",
        audio_bytes: int = 0,
    ) -> None:
        """
        Record a completed request.

        Args:
            status: Final status ("success", "rejected", "error")
            duration: Request duration in seconds
            cache_status: "hit", "coalesced", "miss" or "uncached"
            audio_bytes: Size of the served artifact in bytes
        """
        if not self._enabled:
            return

        self._requests_total.labels(status=status).inc()
        if duration >= 0:
            self._request_duration.labels(cache_status=cache_status).observe(duration)
        if audio_bytes > 0:
            self._audio_bytes_total.inc(audio_bytes)

    def record_cache(self, result: str) -> None:
        """Record a cache "hit" or "miss"."""
        if not self._enabled:
            return
        if result == "hit":
            self._cache_hits.inc()
        else:
            self._cache_misses.inc()

    def record_rate_limited(self) -> None:
        """Record a request denied by the rate limiter."""
        if not self._enabled:
            return
        self._rate_limited.inc()

    def record_eviction(self, count: int = 1, bytes_freed: int = 0) -> None:
        """Record entries removed by an eviction sweep."""
        if not self._enabled or count <= 0:
            return
        self._evictions.inc(count)

    def set_cache_size(self, size_bytes: int) -> None:
        """Set the current cache size gauge."""
        if not self._enabled:
            return
        self._cache_size.set(size_bytes)

    def record_engine_failure(self, stage: str) -> None:
        """Record a failure in the "synth" or "convert" stage."""
        if not self._enabled:
            return
        self._engine_failures.labels(stage=stage).inc()

    def get_metrics_response(self) -> tuple[bytes, str]:
        """
        Render the registry in the Prometheus text format.

        Returns:
            (body, content_type) for the /metrics response.
        """
        if not self._enabled:
            return (
                b"# Metrics not available (prometheus_client not installed)\n",
                "text/plain; charset=utf-8",
            )

        content = generate_latest(self._registry)
        return (content, CONTENT_TYPE_LATEST)


# Shared by pipeline, cache manager and API
metrics = PipelineMetrics()
