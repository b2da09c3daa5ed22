"""End-to-end tests for SynthesisPipeline with a fake engine."""
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

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
from phrase_tts.services.pipeline import SynthesisPipeline
from phrase_tts.services.rate_limiter import InMemoryAccountHistory, RateLimiter

from conftest import make_config


def _req(phrase: str = "Hello world", **extra):
    return {"phrase": phrase, "language": "en", "speed": 1.0, "format": "wav", **extra}


def _artifacts(pipeline: SynthesisPipeline):
    root = pipeline.store.root
    return [p for p in root.rglob("*") if p.is_file() and ".tmp" not in p.parts]


class TestHitAndMiss:
    """Basic cache behavior."""

    def test_hello_world(self, pipeline, synth):
        """A miss synthesizes and stores; the repeat is a hit."""
        first = pipeline.produce(_req(), identity="alice")
        assert first.cache_status == "miss"
        assert first.data == b"RIFFen|1|hello world"
        assert first.fmt == "wav"
        assert len(first.request_id) == 12
        assert "synth" in first.timings
        assert len(_artifacts(pipeline)) == 1

        second = pipeline.produce(_req(), identity="alice")
        assert second.cache_status == "hit"
        assert second.data == first.data
        assert len(synth.calls) == 1

    def test_canonical_variants_share_entry(self, pipeline, synth):
        """Case and whitespace variants hit the same artifact."""
        pipeline.produce(_req("Hello   World"), identity="alice")
        result = pipeline.produce(_req("  hello world "), identity="alice")
        assert result.cache_status == "hit"
        assert synth.calls == [("hello world", "en", 1.0)]

    def test_quantized_speed_shares_entry(self, pipeline, synth):
        """Speeds in the same 0.5 bucket share an artifact."""
        pipeline.produce(_req(speed=1.2), identity="alice")
        result = pipeline.produce(_req(speed=1.4), identity="alice")
        assert result.cache_status == "hit"
        assert synth.calls == [("hello world", "en", 1.0)]

    def test_request_id_passed_through(self, pipeline):
        """An explicit request id is kept."""
        result = pipeline.produce(_req(), identity="alice", request_id="abc123")
        assert result.request_id == "abc123"


class TestRateLimiting:
    """Admission control is applied to misses only."""

    def test_hits_bypass_limiter(self, pipeline):
        """Cached phrases stay available after the allowance is spent."""
        for i in range(3):
            pipeline.produce(_req(f"phrase {i}"), identity="alice")

        with pytest.raises(RateLimitedError) as exc:
            pipeline.produce(_req("phrase 9"), identity="alice")
        assert exc.value.code == ErrorCode.RATE_LIMITED
        assert exc.value.retry_after == pytest.approx(600.0)

        assert pipeline.produce(_req("phrase 0"), identity="alice").cache_status == "hit"

    def test_validation_before_limiter(self, pipeline, synth):
        """Invalid requests are rejected without using the allowance."""
        for _ in range(5):
            with pytest.raises(ValidationError) as exc:
                pipeline.produce(_req("x" * 500), identity="alice")
            assert exc.value.code == ErrorCode.PHRASE_TOO_LONG

        for i in range(3):
            assert pipeline.produce(_req(f"ok {i}"), identity="alice").cache_status == "miss"

    def test_too_long_reported_when_limited(self, pipeline):
        """A limited caller still gets the validation error, not 429."""
        for i in range(3):
            pipeline.produce(_req(f"phrase {i}"), identity="alice")
        with pytest.raises(ValidationError):
            pipeline.produce(_req("x" * 500), identity="alice")

    def test_window_expiry(self, pipeline, clock):
        """After the window passes the caller may synthesize again."""
        for i in range(3):
            pipeline.produce(_req(f"phrase {i}"), identity="alice")
        clock.advance(601)
        assert pipeline.produce(_req("phrase 9"), identity="alice").cache_status == "miss"


class TestFailures:
    """Engine failures, timeouts and cache write errors."""

    def test_synthesis_failure_caches_nothing(self, pipeline, synth):
        """A failing engine leaves the cache empty."""
        synth.error = SynthesisFailure("boom")
        with pytest.raises(SynthesisFailure):
            pipeline.produce(_req(), identity="alice")
        assert len(pipeline.store) == 0
        assert _artifacts(pipeline) == []

    def test_unexpected_engine_error_is_wrapped(self, pipeline, synth):
        """Arbitrary exceptions from the engine become SynthesisFailure."""
        synth.error = RuntimeError("segfault-ish")
        with pytest.raises(SynthesisFailure) as exc:
            pipeline.produce(_req(), identity="alice")
        assert exc.value.code == ErrorCode.SYNTHESIS_FAILED

    def test_timeout(self, build_pipeline, synth):
        """A slow engine times out and nothing is cached."""
        pipeline = build_pipeline(engine={"synth_timeout_s": 0.05})
        synth.delay = 0.5
        with pytest.raises(SynthesisFailure) as exc:
            pipeline.produce(_req(), identity="alice")
        assert exc.value.code == ErrorCode.TIMEOUT
        assert len(pipeline.store) == 0

        synth.delay = 0.0
        assert pipeline.produce(_req(), identity="alice").cache_status == "miss"

    def test_timeout_keeps_single_admission(self, tmp_path, synth, converter, clock):
        """A timed-out miss keeps its one limiter record and adds no other."""
        config = make_config(tmp_path, engine={"synth_timeout_s": 0.05})
        history = InMemoryAccountHistory(retention_s=60.0)
        limiter = RateLimiter(threshold=5, window_s=60.0, history=history, clock=clock)
        pipeline = SynthesisPipeline(config, synth, converter, limiter=limiter)
        pipeline.start()
        try:
            synth.delay = 0.5
            with pytest.raises(SynthesisFailure) as exc:
                pipeline.produce(_req(), identity="alice")
            assert exc.value.code == ErrorCode.TIMEOUT
            assert len(pipeline.store) == 0
            assert history.load_recent_requests("alice", limit=10) == [clock()]
        finally:
            pipeline.close()

    def test_unexpected_error_is_generic(self, pipeline, monkeypatch):
        """Non-pipeline exceptions become INTERNAL_ERROR with a fixed message."""
        def broken_check(identity, request=None):
            raise RuntimeError("secret /var/lib/state")

        monkeypatch.setattr(pipeline.limiter, "check", broken_check)
        with pytest.raises(PipelineError) as exc:
            pipeline.produce(_req(), identity="alice")
        assert exc.value.code == ErrorCode.INTERNAL_ERROR
        assert exc.value.message == "Internal server error"
        assert "secret" not in str(exc.value.to_dict())

    def test_uncached_when_insert_fails(self, pipeline, monkeypatch):
        """With serve_on_write_failure the audio is served uncached."""
        def broken_insert(key, data):
            raise CacheIoError("disk full")

        monkeypatch.setattr(pipeline.store, "insert", broken_insert)
        result = pipeline.produce(_req(), identity="alice")
        assert result.cache_status == "uncached"
        assert result.data.startswith(b"RIFF")
        assert len(pipeline.store) == 0

    def test_insert_failure_raised_when_configured(self, build_pipeline, monkeypatch):
        """Without serve_on_write_failure the CacheIoError propagates."""
        pipeline = build_pipeline(cache={"serve_on_write_failure": False})

        def broken_insert(key, data):
            raise CacheIoError("disk full")

        monkeypatch.setattr(pipeline.store, "insert", broken_insert)
        with pytest.raises(CacheIoError):
            pipeline.produce(_req(), identity="alice")

    def test_closed(self, pipeline):
        """produce() after close() raises ServiceClosedError."""
        pipeline.close()
        assert pipeline.closed
        with pytest.raises(ServiceClosedError):
            pipeline.produce(_req(), identity="alice")


class TestConversion:
    """Non-base formats go through the converter."""

    def test_mp3_converted_and_cached(self, pipeline, converter, synth):
        """mp3 requests are converted once and cached separately from wav."""
        mp3 = pipeline.produce(_req(format="mp3"), identity="alice")
        assert mp3.data.startswith(b"CONV-mp3|RIFF")
        assert mp3.fmt == "mp3"
        assert converter.calls == [("wav", "mp3")]

        wav = pipeline.produce(_req(format="wav"), identity="alice")
        assert wav.cache_status == "miss"
        assert len(pipeline.store) == 2

        again = pipeline.produce(_req(format="MP3"), identity="alice")
        assert again.cache_status == "hit"
        assert len(converter.calls) == 1
        assert len(synth.calls) == 2

    def test_unconvertible_format_fails_before_synthesis(self, build_pipeline, synth):
        """An allowed format no converter produces fails without engine work."""
        pipeline = build_pipeline(request={"allowed_formats": ["wav", "mp3", "flac"]})
        with pytest.raises(ConversionFailure):
            pipeline.produce(_req(format="flac"), identity="alice")
        assert synth.calls == []


class TestConcurrency:
    """Concurrent requests for the same key."""

    def test_concurrent_misses_publish_one_artifact(self, pipeline, synth):
        """Many parallel identical requests leave exactly one artifact."""
        synth.delay = 0.2
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda i: pipeline.produce(_req(), identity=f"user{i}"),
                range(8),
            ))

        assert len({r.data for r in results}) == 1
        assert len(pipeline.store) == 1
        assert len(_artifacts(pipeline)) == 1
        assert pipeline.store.current_size() == len(results[0].data)
        assert {r.cache_status for r in results} <= {"miss", "coalesced", "hit"}
        assert sum(r.cache_status == "miss" for r in results) <= len(synth.calls)

    def test_follower_waits_for_leader(self, pipeline, synth):
        """A second identical miss joins the first instead of synthesizing."""
        synth.gate = threading.Event()
        results = {}

        def run(name):
            results[name] = pipeline.produce(_req(), identity=name)

        leader = threading.Thread(target=run, args=("alice",))
        leader.start()
        assert synth.started.wait(2.0)

        follower = threading.Thread(target=run, args=("bob",))
        follower.start()
        time.sleep(0.2)
        synth.gate.set()
        leader.join(5.0)
        follower.join(5.0)

        assert results["alice"].cache_status == "miss"
        assert results["bob"].cache_status in ("coalesced", "hit")
        assert results["bob"].data == results["alice"].data
        assert len(synth.calls) == 1

    def test_follower_sees_leader_failure(self, pipeline, synth):
        """If the leader fails, coalesced followers fail too."""
        synth.gate = threading.Event()
        synth.error = SynthesisFailure("boom")
        errors = {}

        def run(name):
            try:
                pipeline.produce(_req(), identity=name)
            except SynthesisFailure as e:
                errors[name] = e

        leader = threading.Thread(target=run, args=("alice",))
        leader.start()
        assert synth.started.wait(2.0)
        follower = threading.Thread(target=run, args=("bob",))
        follower.start()
        time.sleep(0.2)
        synth.gate.set()
        leader.join(5.0)
        follower.join(5.0)

        assert set(errors) == {"alice", "bob"}
        assert len(pipeline.store) == 0


class TestLifecycleAndHealth:
    """Startup recovery, shutdown and health info."""

    def test_restart_recovers_cache(self, tmp_path, synth, converter):
        """Artifacts survive a restart and are served as hits."""
        config = make_config(tmp_path)
        first = SynthesisPipeline(config, synth, converter)
        first.start()
        first.produce(_req(), identity="alice")
        first.close()

        second = SynthesisPipeline(config, synth, converter)
        second.start()
        try:
            assert second.produce(_req(), identity="alice").cache_status == "hit"
            assert len(synth.calls) == 1
        finally:
            second.close()

    def test_flush_on_close(self, tmp_path, synth, converter):
        """close(flush=True) deletes the cache root."""
        config = make_config(tmp_path)
        pipeline = SynthesisPipeline(config, synth, converter)
        pipeline.start()
        pipeline.produce(_req(), identity="alice")
        pipeline.close(flush=True)
        assert not (tmp_path / "cache").exists()

    def test_budget_enforced(self, build_pipeline):
        """The manager keeps the store within max_size_bytes."""
        pipeline = build_pipeline(cache={"max_size_bytes": 60}, rate_limit={"threshold": 100})
        for i in range(10):
            pipeline.produce(_req(f"phrase number {i}"), identity="alice")

        pipeline.manager.sweep()
        assert pipeline.store.current_size() <= 60

    def test_health_info(self, pipeline):
        """Health info reports engine, cache and limiter details."""
        pipeline.produce(_req(), identity="alice")
        info = pipeline.get_health_info()

        assert info["ok"] is True
        assert info["started"] is True
        assert info["engine"] == {"name": "fake", "base_format": "wav", "available": True}
        assert info["formats"]["allowed"] == ["wav", "mp3"]
        assert info["formats"]["convertible"] == ["mp3"]
        assert info["cache"]["entries"] == 1
        assert info["cache"]["manager"]["state"] == "running"
        assert info["rate_limit"] == {"enabled": True, "threshold": 3, "window_s": 600.0}
        assert info["inflight"] == 0

    def test_languages(self, pipeline):
        """languages() maps enabled codes to display names."""
        assert pipeline.languages() == {"en": "English"}

    def test_custom_limiter_used(self, tmp_path, synth, converter, clock):
        """An injected limiter replaces the configured one."""
        config = make_config(tmp_path)
        limiter = RateLimiter(threshold=1, window_s=60.0, clock=clock)
        pipeline = SynthesisPipeline(config, synth, converter, limiter=limiter)
        pipeline.start()
        try:
            pipeline.produce(_req("one"), identity="alice")
            with pytest.raises(RateLimitedError):
                pipeline.produce(_req("two"), identity="alice")
        finally:
            pipeline.close()
