"""Tests for the subprocess-backed synthesizers."""
from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from phrase_tts.core.config import LanguageConfig, ServiceConfig, Settings
from phrase_tts.core.errors import ConversionFailure, ErrorCode, SynthesisFailure
from phrase_tts.tts.engine import create_synthesizer, run_tool
from phrase_tts.tts.engines.festival_engine import FestivalSynthesizer
from phrase_tts.tts.engines.flite_engine import FliteSynthesizer

LANGS = {"en": LanguageConfig(code="en", display_name="English", engine_code="voice_kal_diphone")}


class TestRunTool:
    """Bounded subprocess execution."""

    def test_success(self, monkeypatch):
        """A zero exit returns the completed process."""
        done = subprocess.CompletedProcess(["tool"], 0, stdout=b"ok", stderr=b"")
        monkeypatch.setattr("phrase_tts.tts.engine.subprocess.run", lambda *a, **k: done)
        assert run_tool(["tool"], 1.0, SynthesisFailure) is done

    def test_timeout(self, monkeypatch):
        """TimeoutExpired becomes the failure type with code TIMEOUT."""
        def slow(*args, **kwargs):
            raise subprocess.TimeoutExpired(cmd="tool", timeout=1.0)

        monkeypatch.setattr("phrase_tts.tts.engine.subprocess.run", slow)
        with pytest.raises(ConversionFailure) as exc:
            run_tool(["tool"], 1.0, ConversionFailure)
        assert exc.value.code == ErrorCode.TIMEOUT

    def test_missing_binary(self, monkeypatch):
        """An OSError starting the tool is a failure."""
        def missing(*args, **kwargs):
            raise FileNotFoundError("no such file")

        monkeypatch.setattr("phrase_tts.tts.engine.subprocess.run", missing)
        with pytest.raises(SynthesisFailure) as exc:
            run_tool(["tool"], 1.0, SynthesisFailure)
        assert exc.value.code == ErrorCode.SYNTHESIS_FAILED

    def test_nonzero_exit(self, monkeypatch):
        """A non-zero exit carries the stderr tail."""
        done = subprocess.CompletedProcess(["tool"], 3, stdout=b"", stderr=b"voice not found")
        monkeypatch.setattr("phrase_tts.tts.engine.subprocess.run", lambda *a, **k: done)
        with pytest.raises(SynthesisFailure) as exc:
            run_tool(["tool"], 1.0, SynthesisFailure)
        assert exc.value.details["returncode"] == 3
        assert exc.value.details["stderr"] == "voice not found"


class TestFestival:
    """text2wave wrapper."""

    def test_build_command(self):
        """Voice and duration stretch are passed as -eval expressions."""
        synth = FestivalSynthesizer(LANGS)
        cmd = synth.build_command("en", 1.5, Path("/tmp/out.wav"))
        assert cmd == [
            "text2wave",
            "-eval", "(voice_kal_diphone)",
            "-eval", "(Parameter.set 'Duration_Stretch 1.5)",
            "-o", "/tmp/out.wav",
        ]

    def test_generate_feeds_stdin(self, monkeypatch):
        """The phrase goes to stdin and the output file is returned."""
        seen = {}

        def fake_run_tool(args, timeout, failure, input=None):
            seen["input"] = input
            Path(args[args.index("-o") + 1]).write_bytes(b"RIFF-festival")

        monkeypatch.setattr("phrase_tts.tts.engines.festival_engine.run_tool", fake_run_tool)
        data = FestivalSynthesizer(LANGS).generate("hello world", "en", 1.0)
        assert data == b"RIFF-festival"
        assert seen["input"] == b"hello world"

    def test_empty_output(self, monkeypatch):
        """An empty wav is a synthesis failure."""
        def fake_run_tool(args, timeout, failure, input=None):
            Path(args[args.index("-o") + 1]).write_bytes(b"")

        monkeypatch.setattr("phrase_tts.tts.engines.festival_engine.run_tool", fake_run_tool)
        with pytest.raises(SynthesisFailure):
            FestivalSynthesizer(LANGS).generate("hello", "en", 1.0)

    def test_unknown_language(self):
        """A language with no voice fails."""
        with pytest.raises(SynthesisFailure):
            FestivalSynthesizer(LANGS).build_command("xx", 1.0, Path("out.wav"))


class TestFlite:
    """flite wrapper."""

    def test_build_command(self):
        """Voice, stretch, text and output are passed as arguments."""
        synth = FliteSynthesizer(LANGS, binary="/usr/bin/flite")
        cmd = synth.build_command("hello", "en", 2.0, Path("/tmp/out.wav"))
        assert cmd == [
            "/usr/bin/flite",
            "-voice", "voice_kal_diphone",
            "--setf", "duration_stretch=2",
            "-t", "hello",
            "-o", "/tmp/out.wav",
        ]

    def test_generate(self, monkeypatch):
        """The output file content is returned."""
        def fake_run_tool(args, timeout, failure, input=None):
            Path(args[args.index("-o") + 1]).write_bytes(b"RIFF-flite")

        monkeypatch.setattr("phrase_tts.tts.engines.flite_engine.run_tool", fake_run_tool)
        assert FliteSynthesizer(LANGS).generate("hi", "en", 1.0) == b"RIFF-flite"


class TestFactory:
    """create_synthesizer() selection."""

    def test_festival_default(self):
        """Festival is the default engine."""
        synth = create_synthesizer(ServiceConfig.from_settings(Settings(raw={})))
        assert isinstance(synth, FestivalSynthesizer)
        assert synth.base_format == "wav"

    def test_flite_with_binary(self):
        """Engine type and binary come from settings."""
        raw = {"engine": {"engine": "flite", "binaries": {"flite": "/opt/flite"}, "synth_timeout_s": 4}}
        synth = create_synthesizer(ServiceConfig.from_settings(Settings(raw=raw)))
        assert isinstance(synth, FliteSynthesizer)
        assert synth.binary == "/opt/flite"
        assert synth.timeout_s == 4.0

    def test_unknown_engine(self):
        """An engine type outside the registry raises ValueError."""
        config = ServiceConfig.from_settings(Settings(raw={}))
        config.engine.engine = "espeak"
        with pytest.raises(ValueError):
            create_synthesizer(config)

    def test_availability_uses_path(self, monkeypatch):
        """is_available() looks the binary up on PATH."""
        monkeypatch.setattr("phrase_tts.tts.engine.shutil.which", lambda name: None)
        assert FestivalSynthesizer(LANGS).is_available() is False
        monkeypatch.setattr("phrase_tts.tts.engine.shutil.which", lambda name: "/usr/bin/" + name)
        assert FestivalSynthesizer(LANGS).is_available() is True


@pytest.mark.slow
def test_festival_real_binary():
    """Synthesize with the real text2wave when it is installed."""
    synth = FestivalSynthesizer(LANGS, timeout_s=60)
    if not synth.is_available():
        pytest.skip("text2wave not on PATH")
    data = synth.generate("hello world", "en", 1.0)
    assert data[:4] == b"RIFF"
    assert data[8:12] == b"WAVE"
