"""
Audio Format Conversion.

Synthesizers produce WAV; callers may ask for any format in
request.allowed_formats. Conversion is delegated to external tools wrapped
as FormatConverter implementations and combined in a ConverterChain.

Components:
    - FormatConverter: Base class (convert, is_supported, supported_outputs)
    - FfmpegConverter: ffmpeg -y -i in.<from> -vn out.<to>
    - ConverterChain: Tries each converter that supports the target format,
      in configured order, until one succeeds

Usage:
    chain = create_converter(config)
    if chain.is_supported("mp3"):
        mp3 = chain.convert(wav_bytes, "wav", "mp3")
"""
from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from typing import FrozenSet, List, Optional, Sequence

from phrase_tts.core.config import ServiceConfig
from phrase_tts.core.errors import ConversionFailure
from phrase_tts.core.logging import debug, get_logger, warn
from phrase_tts.tts.engine import run_tool

# Module-level logger
_LOG = get_logger("phrase-tts.converter")


class FormatConverter:
    """
    Base class for audio format converters.

    Attributes:
        name: Converter identifier used in configuration.
    """
    name: str = "base"

    def supported_outputs(self) -> FrozenSet[str]:
        raise NotImplementedError

    def is_supported(self, fmt: str) -> bool:
        return fmt.lower() in self.supported_outputs()

    def convert(self, data: bytes, from_fmt: str, to_fmt: str) -> bytes:
        """
        Re-encode audio bytes.

        Raises:
            ConversionFailure: Tool error, timeout or unsupported format.
        """
        raise NotImplementedError


class FfmpegConverter(FormatConverter):
    """ffmpeg wrapper. Video streams are stripped (-vn)."""
    name = "ffmpeg"

    _OUTPUTS = frozenset({"mp3", "wav", "flac", "m4a", "wma", "aac", "aif"})

    def __init__(self, binary: Optional[str] = None, timeout_s: float = 30.0):
        self.binary = binary or "ffmpeg"
        self.timeout_s = timeout_s

    def supported_outputs(self) -> FrozenSet[str]:
        return self._OUTPUTS

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def convert(self, data: bytes, from_fmt: str, to_fmt: str) -> bytes:
        if from_fmt == to_fmt:
            return data
        if not self.is_supported(to_fmt):
            raise ConversionFailure(f"ffmpeg cannot produce {to_fmt}", {"format": to_fmt})

        with tempfile.TemporaryDirectory(prefix="phrase-tts-ffmpeg-") as tmp:
            src = Path(tmp) / f"in.{from_fmt}"
            dst = Path(tmp) / f"out.{to_fmt}"
            src.write_bytes(data)
            run_tool(
                [self.binary, "-y", "-i", str(src), "-vn", str(dst)],
                self.timeout_s,
                ConversionFailure,
            )
            try:
                return dst.read_bytes()
            except OSError as e:
                raise ConversionFailure("ffmpeg produced no output", {"error": str(e)})


class ConverterChain(FormatConverter):
    """
    Ordered list of converters acting as one.

    A target format is supported if any member supports it. Conversion
    tries each supporting member in order and returns the first success.
    """
    name = "chain"

    def __init__(self, converters: Sequence[FormatConverter]):
        self._converters: List[FormatConverter] = list(converters)

    @property
    def converters(self) -> List[FormatConverter]:
        return list(self._converters)

    def supported_outputs(self) -> FrozenSet[str]:
        outputs: set[str] = set()
        for c in self._converters:
            outputs |= c.supported_outputs()
        return frozenset(outputs)

    def convert(self, data: bytes, from_fmt: str, to_fmt: str) -> bytes:
        if from_fmt == to_fmt:
            return data

        candidates = [c for c in self._converters if c.is_supported(to_fmt)]
        if not candidates:
            raise ConversionFailure(
                f"Requested format ({to_fmt}) is not available on this api",
                {"format": to_fmt},
            )

        last: Optional[ConversionFailure] = None
        for converter in candidates:
            try:
                out = converter.convert(data, from_fmt, to_fmt)
            except ConversionFailure as e:
                warn(_LOG, "converter_failed", converter=converter.name, to=to_fmt, code=e.code, error=e.message)
                last = e
                continue
            debug(_LOG, "converted", converter=converter.name, to=to_fmt, bytes=len(out))
            return out

        assert last is not None
        # Last failure's code is kept so a timeout still maps to 504
        raise ConversionFailure(
            "Unable to convert file to desired format due to internal error, try again with request as wav",
            {"format": to_fmt, "attempts": len(candidates), "last_error": last.message},
            code=last.code,
        )


def create_converter(config: ServiceConfig) -> ConverterChain:
    """
    Build the converter chain from engine.converters.

    Raises:
        ValueError: Unknown converter name.
    """
    members: List[FormatConverter] = []
    for name in config.engine.converters:
        if name == "ffmpeg":
            members.append(
                FfmpegConverter(
                    binary=config.engine.binaries.get("ffmpeg"),
                    timeout_s=config.engine.convert_timeout_s,
                )
            )
        else:
            raise ValueError(f"Unknown converter: {name}")
    return ConverterChain(members)
