"""
SynthesisPipeline - Request Orchestration.

This module provides the central SynthesisPipeline class, the single entry
point for turning a raw request into an audio artifact. Both the HTTP API
and the CLI go through it.

Architecture:
    Request → Normalize → Cache Lookup ─ hit ──────────────────────→ Served
                                       └ miss → Rate Limit → Synthesize
                                                 → Convert (optional)
                                                 → Cache Insert → Served

Key Components:
    - RequestNormalizer: Validation and canonical GenerationKey
    - CacheStore: Disk artifact store (lookups, atomic inserts)
    - CacheManager: Background size budget enforcement
    - RateLimiter: Per-identity sliding window, consulted on misses only
    - SpeechSynthesizer / FormatConverter: External tools, bounded by
      timeouts and run on a worker pool

Cache Status:
    - hit: served from the store, limiter not consulted
    - miss: synthesized by this request and inserted
    - coalesced: another request was already synthesizing the same key;
      this one waited for its result
    - uncached: synthesized, but the insert failed and
      cache.serve_on_write_failure allowed serving anyway

Error Handling:
    - ValidationError: raised before any key, cache or limiter work
    - RateLimitedError: carries retry_after seconds
    - SynthesisFailure / ConversionFailure: engine error or timeout; nothing
      is inserted and the limiter is not touched again
    - CacheIoError: surfaced only when serve_on_write_failure is off
    - ServiceClosedError: produce() after close()

Example:
    >>> from phrase_tts.core.config import Settings
    >>> from phrase_tts.services.pipeline import SynthesisPipeline
    >>>
    >>> pipeline = SynthesisPipeline.from_settings(Settings(raw={}))
    >>> pipeline.start()
    >>> result = pipeline.produce(
    ...     {"phrase": "hello world", "language": "en", "speed": 1.0, "format": "wav"},
    ...     identity="alice",
    ... )
    >>> result.cache_status
    'miss'
"""
from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple, Type

from phrase_tts.core.config import ServiceConfig, Settings
from phrase_tts.core.errors import (
    CacheIoError,
    ConversionFailure,
    ErrorCode,
    PipelineError,
    RateLimitedError,
    ServiceClosedError,
    SynthesisFailure,
    ValidationError,
)
from phrase_tts.core.logging import (
    debug,
    fail,
    get_logger,
    get_request_id,
    info,
    set_identity,
    set_request_id,
    success,
    warn,
)
from phrase_tts.core.metrics import metrics
from phrase_tts.services.rate_limiter import AccountHistory, Denied, RateLimiter
from phrase_tts.services.validators import RawRequest, RequestNormalizer
from phrase_tts.tts.cache_manager import CacheManager
from phrase_tts.tts.converter import FormatConverter, create_converter
from phrase_tts.tts.engine import SpeechSynthesizer, create_synthesizer
from phrase_tts.tts.storage import CacheStore, GenerationKey
from phrase_tts.utils.text import preview
from phrase_tts.utils.timeit import StageTimings, timeit

_LOG = get_logger("phrase-tts.pipeline")


# =============================================================================
# Result Dataclass
# =============================================================================

@dataclass
class ProduceResult:
    """
    Result of a produce() call.

    Attributes:
        data: Audio bytes in the requested format.
        key: Canonical key the request resolved to.
        fmt: Audio format of `data`.
        cache_status: "hit", "miss", "coalesced" or "uncached".
        total_seconds: Total processing time.
        request_id: Request ID for tracing.
        timings: Per-stage timing breakdown.
    """
    data: bytes
    key: GenerationKey
    fmt: str
    cache_status: str
    total_seconds: float
    request_id: str
    timings: Dict[str, float] = field(default_factory=dict)


# =============================================================================
# Main Pipeline Class
# =============================================================================

class SynthesisPipeline:
    """
    Orchestrates normalization, caching, admission control and synthesis.

    One instance is shared by every request thread for the lifetime of the
    process. No lock is held while an engine runs.

    Usage:
        pipeline = SynthesisPipeline(config, synthesizer, converter)
        pipeline.start()        # scan cache root, start cache manager
        result = pipeline.produce(raw_request, identity="alice")
        pipeline.close()        # stop cache manager (optionally flush)
    """

    def __init__(
        self,
        config: ServiceConfig,
        synthesizer: SpeechSynthesizer,
        converter: FormatConverter,
        store: Optional[CacheStore] = None,
        limiter: Optional[RateLimiter] = None,
        history: Optional[AccountHistory] = None,
    ):
        """
        Wire the pipeline's components.

        Args:
            config: Validated service configuration.
            synthesizer: Speech engine producing base-format audio.
            converter: Converter for non-base output formats.
            store: Artifact store (default: CacheStore at cache.root).
            limiter: Rate limiter (default: built from rate_limit config).
            history: Account history for the default limiter.

        Raises:
            CacheInitError: The cache root can't be created.
        """
        self._config = config
        self._synth = synthesizer
        self._converter = converter
        self._normalizer = RequestNormalizer(config.request)
        self._store = store if store is not None else CacheStore(config.cache.root)
        self._manager = CacheManager.from_config(self._store, config.cache)
        self._limiter = limiter or RateLimiter.from_config(config.rate_limit, history=history)
        self._executor = ThreadPoolExecutor(
            max_workers=config.engine.max_workers,
            thread_name_prefix="phrase-tts-engine",
        )

        # In-flight misses keyed by digest; followers wait on the leader's future
        self._inflight: Dict[str, Future] = {}
        self._inflight_lock = threading.Lock()

        self._state_lock = threading.Lock()
        self._started = False
        self._closed = False
        self._text_preview_chars = config.logging.text_preview_chars

    @classmethod
    def from_settings(cls, settings: Settings) -> "SynthesisPipeline":
        """Build a pipeline with the configured engine and converters."""
        config = settings.get_service_config()
        return cls(config, create_synthesizer(config), create_converter(config))

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> ServiceConfig:
        return self._config

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def manager(self) -> CacheManager:
        return self._manager

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def normalizer(self) -> RequestNormalizer:
        return self._normalizer

    @property
    def synthesizer(self) -> SpeechSynthesizer:
        return self._synth

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Recover the cache index from disk and start the cache manager."""
        with self._state_lock:
            if self._started or self._closed:
                return
            self._started = True

        with timeit("startup") as t:
            self._store.scan()
            self._manager.start()
            self._manager.request_sweep()
        success(
            _LOG, "pipeline_started",
            engine=self._synth.name,
            entries=len(self._store),
            size_bytes=self._store.current_size(),
            seconds=round(t.timing.seconds, 3),
        )

    def close(self, flush: Optional[bool] = None) -> None:
        """
        Stop accepting requests and shut down background work.

        Args:
            flush: Destroy the cache root while the manager drains. None
                uses cache.flush_on_close.
        """
        with self._state_lock:
            if self._closed:
                return
            self._closed = True

        self._manager.close(flush=flush)
        self._executor.shutdown(wait=False, cancel_futures=True)
        info(_LOG, "pipeline_closed")

    # =========================================================================
    # Engine Calls
    # =========================================================================

    def _call_engine(
        self,
        stage: str,
        failure: Type[PipelineError],
        timeout: float,
        fn: Callable[..., bytes],
        *args: Any,
    ) -> bytes:
        """
        Run an engine call on the worker pool, bounded by `timeout`.

        On timeout the worker keeps running to completion in the background;
        its result is discarded.
        """
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError:
            raise ServiceClosedError()

        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            metrics.record_engine_failure(stage)
            raise failure(
                f"{stage} timed out after {timeout:g}s",
                {"stage": stage, "timeout_s": timeout},
                code=ErrorCode.TIMEOUT,
            )
        except PipelineError:
            metrics.record_engine_failure(stage)
            raise
        except Exception as e:
            metrics.record_engine_failure(stage)
            raise failure(
                f"{stage} failed: {e}",
                {"stage": stage, "error_type": type(e).__name__},
            )

    def _generate_and_store(self, key: GenerationKey, stages: StageTimings) -> Tuple[bytes, str]:
        engine_cfg = self._config.engine
        base_format = self._synth.base_format

        # Check before synthesizing so a misconfigured format costs no engine time
        if key.fmt != base_format and not self._converter.is_supported(key.fmt):
            raise ConversionFailure(
                "Requested file format is not available on this api, "
                "this is a misconfiguration of the deployment",
                {"format": key.fmt},
            )

        with stages.measure("synth"):
            data = self._call_engine(
                "synth", SynthesisFailure, engine_cfg.synth_timeout_s,
                self._synth.generate, key.phrase, key.language, key.speed,
            )

        if key.fmt != base_format:
            with stages.measure("convert"):
                data = self._call_engine(
                    "convert", ConversionFailure, engine_cfg.convert_timeout_s,
                    self._converter.convert, data, base_format, key.fmt,
                )

        try:
            with stages.measure("cache_insert"):
                self._store.insert(key, data)
        except CacheIoError as e:
            if not self._config.cache.serve_on_write_failure:
                raise
            warn(_LOG, "serving_uncached", key=key.digest[:8], error=e.details.get("error", e.message))
            return data, "uncached"

        self._manager.request_sweep()
        return data, "miss"

    def _produce_miss(self, key: GenerationKey, stages: StageTimings) -> Tuple[bytes, str]:
        """
        Synthesize a missing artifact, coalescing concurrent identical misses.

        The first caller for a digest becomes the leader and does the work;
        later callers wait on the leader's future.
        """
        digest = key.digest
        with self._inflight_lock:
            future = self._inflight.get(digest)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[digest] = future

        if not leader:
            timeout = self._config.engine.request_timeout_s
            debug(_LOG, "coalesced_wait", key=digest[:8])
            with stages.measure("coalesced_wait"):
                try:
                    data = future.result(timeout=timeout)
                except FutureTimeout:
                    raise SynthesisFailure(
                        f"Timed out after {timeout:g}s waiting for in-flight synthesis",
                        {"timeout_s": timeout},
                        code=ErrorCode.TIMEOUT,
                    )
            return data, "coalesced"

        try:
            data, status = self._generate_and_store(key, stages)
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(data)
        finally:
            with self._inflight_lock:
                self._inflight.pop(digest, None)
        return data, status

    # =========================================================================
    # Public API: produce()
    # =========================================================================

    def produce(
        self,
        raw: RawRequest,
        identity: str,
        request_id: Optional[str] = None,
    ) -> ProduceResult:
        """
        Turn a raw request into audio bytes (main API method).

        Pipeline:
            1. Normalize and validate the request
            2. Look up the cache; a hit is served immediately
            3. On a miss, check the caller's rate limit
            4. Synthesize (or join an identical in-flight synthesis)
            5. Convert to the requested format if needed
            6. Insert into the cache and schedule a size check

        Args:
            raw: GenerationRequest or mapping with phrase/language/speed/format.
            identity: Authenticated caller, used for rate limiting.
            request_id: Trace ID; taken from the logging context or
                generated when omitted.

        Raises:
            ValidationError, RateLimitedError, SynthesisFailure,
            ConversionFailure, CacheIoError, ServiceClosedError
        """
        if self._closed:
            raise ServiceClosedError()

        if request_id is None:
            current = get_request_id()
            request_id = current if current != "-" else uuid.uuid4().hex[:12]
        set_request_id(request_id)
        set_identity(identity)

        stages = StageTimings(logger=_LOG)
        cache_status = "miss"
        started = time.perf_counter()

        try:
            # ─────────────────────────────────────────────────────────────────
            # Stage 1: Normalize (no key, cache or limiter work before this)
            # ─────────────────────────────────────────────────────────────────
            with stages.measure("normalize"):
                key = self._normalizer.normalize(raw)
            digest = key.digest
            info(
                _LOG, "request",
                key=digest[:8],
                language=key.language,
                speed=key.speed,
                fmt=key.fmt,
                chars=len(key.phrase),
                text_preview=preview(key.phrase, self._text_preview_chars),
            )

            # ─────────────────────────────────────────────────────────────────
            # Stage 2: Cache lookup (hits bypass the rate limiter)
            # ─────────────────────────────────────────────────────────────────
            with stages.measure("cache_lookup"):
                try:
                    data = self._store.read(key)
                except CacheIoError as e:
                    warn(_LOG, "cache_read_failed", key=digest[:8], error=e.details.get("error", e.message))
                    data = None

            if data is not None:
                cache_status = "hit"
                metrics.record_cache("hit")
            else:
                metrics.record_cache("miss")

                # ─────────────────────────────────────────────────────────────
                # Stage 3: Admission control
                # ─────────────────────────────────────────────────────────────
                with stages.measure("rate_limit"):
                    decision = self._limiter.check(identity, request=key)
                if isinstance(decision, Denied):
                    metrics.record_rate_limited()
                    warn(_LOG, "rate_limited", retry_after=round(decision.retry_after, 3))
                    raise RateLimitedError(decision.retry_after)

                # ─────────────────────────────────────────────────────────────
                # Stage 4: Synthesize, convert, insert
                # ─────────────────────────────────────────────────────────────
                data, cache_status = self._produce_miss(key, stages)

        except (ValidationError, RateLimitedError) as e:
            metrics.record_request(status="rejected", duration=time.perf_counter() - started,
                                   cache_status=cache_status)
            info(_LOG, "rejected", code=e.code)
            raise
        except PipelineError as e:
            metrics.record_request(status="error", duration=time.perf_counter() - started,
                                   cache_status=cache_status)
            fail(_LOG, "request_failed", code=e.code, error=e.message)
            raise
        except Exception as e:
            metrics.record_request(status="error", duration=time.perf_counter() - started,
                                   cache_status=cache_status)
            fail(_LOG, "request_failed", error=str(e), error_type=type(e).__name__)
            # Detail stays in the log line above
            raise PipelineError("Internal server error", ErrorCode.INTERNAL_ERROR) from e

        total_s = time.perf_counter() - started
        metrics.record_request(
            status="success",
            duration=total_s,
            cache_status=cache_status,
            audio_bytes=len(data),
        )
        success(_LOG, "done", cache=cache_status, bytes=len(data), seconds=round(total_s, 3))

        return ProduceResult(
            data=data,
            key=key,
            fmt=key.fmt,
            cache_status=cache_status,
            total_seconds=total_s,
            request_id=request_id,
            timings=stages.as_dict(),
        )

    # =========================================================================
    # Health & Status
    # =========================================================================

    def languages(self) -> Dict[str, str]:
        """Enabled languages as {code: display name}."""
        return {
            code: lang.display_name
            for code, lang in self._config.request.enabled_languages().items()
        }

    def get_health_info(self) -> Dict[str, Any]:
        """
        Get health and status information.

        Returns a dictionary with:
            - Service status (ok, started, closed)
            - Engine info (name, base format, binary availability)
            - Converter outputs and allowed formats
            - Cache store and manager statistics
            - Rate limit configuration
        """
        with self._inflight_lock:
            inflight = len(self._inflight)

        size = self._store.current_size()
        metrics.set_cache_size(size)

        return {
            "ok": not self._closed,
            "api_name": self._config.api_name,
            "started": self._started,
            "closed": self._closed,
            "engine": {
                "name": self._synth.name,
                "base_format": self._synth.base_format,
                "available": self._synth.is_available(),
            },
            "formats": {
                "allowed": list(self._config.request.allowed_formats),
                "convertible": sorted(self._converter.supported_outputs()),
            },
            "cache": {
                **self._store.stats(),
                "manager": self._manager.stats(),
            },
            "rate_limit": {
                "enabled": self._limiter.enabled,
                "threshold": self._limiter.threshold,
                "window_s": self._limiter.window_s,
            },
            "inflight": inflight,
        }


# =============================================================================
# Global Pipeline Singleton
# =============================================================================

_pipeline: Optional[SynthesisPipeline] = None
_pipeline_lock = threading.Lock()


def get_pipeline(settings: Settings) -> SynthesisPipeline:
    """
    Get or create the global SynthesisPipeline instance.

    Thread-safe lazy singleton. The pipeline is created on first call
    and reused for subsequent calls.
    """
    global _pipeline
    if _pipeline is None:
        with _pipeline_lock:
            if _pipeline is None:
                _pipeline = SynthesisPipeline.from_settings(settings)
    return _pipeline


def reset_pipeline() -> None:
    """
    Close and forget the global pipeline.

    Used primarily for testing to ensure clean state between tests.
    """
    global _pipeline
    with _pipeline_lock:
        if _pipeline is not None:
            _pipeline.close()
        _pipeline = None
