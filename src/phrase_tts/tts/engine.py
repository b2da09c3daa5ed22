"""
Speech Synthesizer Base Class and Factory.

This module provides:
    - SpeechSynthesizer: Base class for all synthesizers
    - run_tool(): Bounded subprocess execution shared by engines and converters
    - create_synthesizer(): Factory selecting the configured engine

Engine Selection:
    The engine is selected via PHRASE_TTS_ENGINE environment variable or
    settings engine.engine. Supported engines:
        - festival: Festival's text2wave (default)
        - flite: CMU Flite

Both engines produce WAV, which is the pipeline's base format; any other
requested format goes through the converter chain (tts/converter.py).

Implementing a New Engine:
    1. Create engines/<name>_engine.py
    2. Inherit from SpeechSynthesizer
    3. Implement generate()
    4. Register in create_synthesizer() and config.ENGINE_TYPES
"""
from __future__ import annotations

import shutil
import subprocess
from typing import Dict, Optional, Sequence, Type

from phrase_tts.core.config import ENGINE_TYPES, LanguageConfig, ServiceConfig
from phrase_tts.core.errors import ErrorCode, PipelineError, SynthesisFailure
from phrase_tts.core.logging import get_logger

# How much of a failing tool's stderr ends up in error details
_STDERR_TAIL_CHARS = 500


def run_tool(
    args: Sequence[str],
    timeout: float,
    failure: Type[PipelineError],
    input: Optional[bytes] = None,
) -> subprocess.CompletedProcess:
    """
    Run an external tool with a hard timeout.

    Args:
        args: Command line, binary first.
        timeout: Seconds before the process is killed.
        failure: Exception class raised on any failure (SynthesisFailure or
            ConversionFailure).
        input: Bytes fed to stdin.

    Raises:
        failure: Tool missing, non-zero exit, or timeout (code TIMEOUT).
    """
    tool = args[0]
    try:
        proc = subprocess.run(
            list(args),
            input=input,
            capture_output=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        raise failure(
            f"{tool} timed out after {timeout:g}s",
            {"tool": tool, "timeout_s": timeout},
            code=ErrorCode.TIMEOUT,
        )
    except OSError as e:
        raise failure(f"Failed to start {tool}", {"tool": tool, "error": str(e)})

    if proc.returncode != 0:
        stderr = proc.stderr.decode("utf-8", errors="replace")[-_STDERR_TAIL_CHARS:]
        raise failure(
            f"{tool} exited with status {proc.returncode}",
            {"tool": tool, "returncode": proc.returncode, "stderr": stderr},
        )
    return proc


class SpeechSynthesizer:
    """
    Base class for speech synthesizers.

    Subclasses implement generate(), returning audio in `base_format`.

    Attributes:
        name: Engine identifier (e.g., "festival", "flite").
        base_format: Format of the bytes generate() returns.
        binary: Executable the engine shells out to.
    """
    name: str = "base"
    base_format: str = "wav"
    default_binary: str = ""

    def __init__(
        self,
        languages: Dict[str, LanguageConfig],
        timeout_s: float = 30.0,
        binary: Optional[str] = None,
    ):
        self.languages = languages
        self.timeout_s = timeout_s
        self.binary = binary or self.default_binary
        self.logger = get_logger(f"phrase-tts.engine.{self.name}")

    def engine_code(self, language: str) -> str:
        """Voice/engine code configured for a language."""
        lang = self.languages.get(language)
        if lang is None:
            raise SynthesisFailure(
                f"No voice configured for language ({language})",
                {"language": language},
            )
        return lang.engine_code

    def is_available(self) -> bool:
        """Check whether the engine binary can be found on PATH."""
        return shutil.which(self.binary) is not None

    def generate(self, phrase: str, language: str, speed: float) -> bytes:
        """
        Synthesize a phrase.

        Args:
            phrase: Canonical phrase text.
            language: Language code (a key of `languages`).
            speed: Quantized speed (1.0 = normal).

        Returns:
            Audio bytes in base_format.

        Raises:
            SynthesisFailure: Engine error or timeout.
        """
        raise NotImplementedError


def create_synthesizer(config: ServiceConfig) -> SpeechSynthesizer:
    """
    Create the synthesizer selected by configuration.

    Raises:
        ValueError: Unknown engine type.
    """
    engine_type = config.engine.engine
    languages = config.request.languages
    binary = config.engine.binaries.get(engine_type)

    if engine_type == "festival":
        from phrase_tts.tts.engines.festival_engine import FestivalSynthesizer
        return FestivalSynthesizer(languages, timeout_s=config.engine.synth_timeout_s, binary=binary)
    if engine_type == "flite":
        from phrase_tts.tts.engines.flite_engine import FliteSynthesizer
        return FliteSynthesizer(languages, timeout_s=config.engine.synth_timeout_s, binary=binary)

    raise ValueError(f"Unknown engine type: {engine_type} (expected one of {', '.join(ENGINE_TYPES)})")
