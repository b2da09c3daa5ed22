"""Shared fakes and fixtures: an in-process synthesizer, converter and clock."""
from __future__ import annotations

import os
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import pytest

os.environ.setdefault("PHRASE_TTS_SKIP_STARTUP", "1")
os.environ.setdefault("PHRASE_TTS_NO_COLOR", "1")

from phrase_tts.core.config import ServiceConfig, Settings
from phrase_tts.services.pipeline import SynthesisPipeline
from phrase_tts.services.rate_limiter import RateLimiter
from phrase_tts.tts.converter import FormatConverter
from phrase_tts.tts.engine import SpeechSynthesizer


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSynthesizer(SpeechSynthesizer):
    """
    Deterministic synthesizer: the audio encodes its inputs.

    `delay` slows every call down, `error` makes every call raise, and
    `gate` (an Event) blocks calls until it is set.
    """
    name = "fake"
    base_format = "wav"
    default_binary = "fake-tts"

    def __init__(self, languages=None, delay: float = 0.0):
        super().__init__(languages or {}, timeout_s=5.0)
        self.delay = delay
        self.error: Optional[Exception] = None
        self.gate: Optional[threading.Event] = None
        self.started = threading.Event()
        self.calls: List[Tuple[str, str, float]] = []
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        return True

    def generate(self, phrase: str, language: str, speed: float) -> bytes:
        with self._lock:
            self.calls.append((phrase, language, speed))
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5.0)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return b"RIFF" + f"{language}|{speed:g}|{phrase}".encode("utf-8")


class FakeConverter(FormatConverter):
    """Prefixes the payload with the target format."""
    name = "fake"

    def __init__(self, outputs=("mp3",)):
        self.outputs = frozenset(outputs)
        self.calls: List[Tuple[str, str]] = []

    def supported_outputs(self):
        return self.outputs

    def convert(self, data: bytes, from_fmt: str, to_fmt: str) -> bytes:
        self.calls.append((from_fmt, to_fmt))
        return f"CONV-{to_fmt}|".encode("ascii") + data


def make_settings(tmp_path, **sections: Dict[str, Any]) -> Settings:
    """Small, fast settings rooted in tmp_path; sections are merged in."""
    raw: Dict[str, Any] = {
        "cache": {"root": str(tmp_path / "cache"), "sweep_interval_s": 0.2},
        "rate_limit": {"threshold": 3, "window_minutes": 10},
        "request": {"allowed_formats": ["wav", "mp3"]},
        "engine": {"synth_timeout_s": 2, "convert_timeout_s": 2, "request_timeout_s": 5},
        "auth": {"tokens": {"tok-alice": "alice", "tok-bob": "bob"}},
    }
    for section, values in sections.items():
        raw.setdefault(section, {}).update(values)
    return Settings(raw=raw)


def make_config(tmp_path, **sections: Dict[str, Any]) -> ServiceConfig:
    return ServiceConfig.from_settings(make_settings(tmp_path, **sections))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def synth():
    return FakeSynthesizer()


@pytest.fixture
def converter():
    return FakeConverter()


@pytest.fixture
def build_pipeline(tmp_path, synth, converter, clock):
    """Factory for started pipelines; every pipeline is closed on teardown."""
    created: List[SynthesisPipeline] = []

    def _build(**sections) -> SynthesisPipeline:
        config = make_config(tmp_path, **sections)
        limiter = RateLimiter.from_config(config.rate_limit, clock=clock)
        pipeline = SynthesisPipeline(config, synth, converter, limiter=limiter)
        pipeline.start()
        created.append(pipeline)
        return pipeline

    yield _build
    for p in created:
        p.close()


@pytest.fixture
def pipeline(build_pipeline):
    return build_pipeline()
