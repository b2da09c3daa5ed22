"""
Festival Synthesizer.

Shells out to Festival's text2wave:

    text2wave -eval "(voice_kal_diphone)" \
              -eval "(Parameter.set 'Duration_Stretch 1.0)" \
              -o out.wav  < phrase

The voice expression comes from the language's engine_code. Festival
treats Duration_Stretch as a multiplier on segment durations, so the
quantized request speed is passed through unchanged.
"""
from __future__ import annotations

import tempfile
from pathlib import Path

from phrase_tts.core.errors import SynthesisFailure
from phrase_tts.core.logging import debug
from phrase_tts.tts.engine import SpeechSynthesizer, run_tool


class FestivalSynthesizer(SpeechSynthesizer):
    name = "festival"
    base_format = "wav"
    default_binary = "text2wave"

    def build_command(self, language: str, speed: float, out_path: Path) -> list[str]:
        return [
            self.binary,
            "-eval", f"({self.engine_code(language)})",
            "-eval", f"(Parameter.set 'Duration_Stretch {speed:g})",
            "-o", str(out_path),
        ]

    def generate(self, phrase: str, language: str, speed: float) -> bytes:
        with tempfile.TemporaryDirectory(prefix="phrase-tts-festival-") as tmp:
            out_path = Path(tmp) / "out.wav"
            cmd = self.build_command(language, speed, out_path)
            debug(self.logger, "festival_run", language=language, speed=speed)
            run_tool(cmd, self.timeout_s, SynthesisFailure, input=phrase.encode("utf-8"))
            try:
                data = out_path.read_bytes()
            except OSError as e:
                raise SynthesisFailure("text2wave produced no output", {"error": str(e)})
        if not data:
            raise SynthesisFailure("text2wave produced an empty file")
        return data
