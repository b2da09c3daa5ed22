"""
Flite Synthesizer.

Shells out to CMU Flite:

    flite -voice kal --setf duration_stretch=1.0 -t "phrase" -o out.wav

The language's engine_code names the Flite voice (a built-in name or a
path to a .flitevox file).
"""
from __future__ import annotations

import tempfile
from pathlib import Path

from phrase_tts.core.errors import SynthesisFailure
from phrase_tts.core.logging import debug
from phrase_tts.tts.engine import SpeechSynthesizer, run_tool


class FliteSynthesizer(SpeechSynthesizer):
    name = "flite"
    base_format = "wav"
    default_binary = "flite"

    def build_command(self, phrase: str, language: str, speed: float, out_path: Path) -> list[str]:
        return [
            self.binary,
            "-voice", self.engine_code(language),
            "--setf", f"duration_stretch={speed:g}",
            "-t", phrase,
            "-o", str(out_path),
        ]

    def generate(self, phrase: str, language: str, speed: float) -> bytes:
        with tempfile.TemporaryDirectory(prefix="phrase-tts-flite-") as tmp:
            out_path = Path(tmp) / "out.wav"
            cmd = self.build_command(phrase, language, speed, out_path)
            debug(self.logger, "flite_run", language=language, speed=speed)
            run_tool(cmd, self.timeout_s, SynthesisFailure)
            try:
                data = out_path.read_bytes()
            except OSError as e:
                raise SynthesisFailure("flite produced no output", {"error": str(e)})
        if not data:
            raise SynthesisFailure("flite produced an empty file")
        return data
