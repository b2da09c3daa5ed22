"""Tests for Prometheus metrics."""
from __future__ import annotations

import pytest


class TestMetricsModule:
    """Recording never fails, with or without prometheus_client."""

    def test_metrics_instance_exists(self):
        from phrase_tts.core.metrics import metrics

        assert metrics is not None
        assert isinstance(metrics.enabled, bool)

    def test_record_calls_no_error(self):
        from phrase_tts.core.metrics import PipelineMetrics

        m = PipelineMetrics()
        m.record_request(status="success", duration=0.5, cache_status="miss", audio_bytes=1000)
        m.record_request(status="rejected", duration=0.001, cache_status="none")
        m.record_cache("hit")
        m.record_cache("miss")
        m.record_rate_limited()
        m.record_eviction(count=2, bytes_freed=100)
        m.record_eviction(count=0)
        m.set_cache_size(4096)
        m.record_engine_failure("synth")

    def test_metrics_response(self):
        from phrase_tts.core.metrics import PipelineMetrics

        content, content_type = PipelineMetrics().get_metrics_response()
        assert isinstance(content, bytes)
        assert content_type.startswith("text/plain")


class TestPrometheusOutput:
    """Series names when prometheus_client is installed."""

    @pytest.fixture
    def m(self):
        pytest.importorskip("prometheus_client")
        from phrase_tts.core.metrics import PipelineMetrics
        return PipelineMetrics()

    def test_counters_exposed(self, m):
        m.record_request(status="success", duration=0.2, cache_status="hit", audio_bytes=10)
        m.record_cache("hit")
        m.record_rate_limited()
        m.record_eviction(count=3)
        m.set_cache_size(123)

        text = m.get_metrics_response()[0].decode("utf-8")
        assert 'phrase_tts_requests_total{status="success"} 1.0' in text
        assert "phrase_tts_cache_hits_total 1.0" in text
        assert "phrase_tts_rate_limited_total 1.0" in text
        assert "phrase_tts_evictions_total 3.0" in text
        assert "phrase_tts_cache_size_bytes 123.0" in text

    def test_instances_are_isolated(self, m):
        """Each instance owns its registry."""
        from phrase_tts.core.metrics import PipelineMetrics

        m.record_rate_limited()
        other = PipelineMetrics().get_metrics_response()[0].decode("utf-8")
        assert "phrase_tts_rate_limited_total 0.0" in other
