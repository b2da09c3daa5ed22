"""
Request Validation and Canonicalization.

RequestNormalizer turns a raw generation request into a GenerationKey, the
canonical fingerprint used for cache lookups. Validation happens first in
the request pipeline to:
    - Reject invalid requests before any cache or rate-limit work
    - Provide clear, actionable error messages
    - Make equivalent requests share one cache entry

Validation Order (first failure wins):
    1. Speed: finite number; quantized down to speed_step, then clamped
       to [speed_min, speed_max] (policy "clamp") or rejected when out of
       range (policy "reject")
    2. Language: one of the enabled languages
    3. Format: lowercased, leading dot stripped, one of allowed_formats
    4. Phrase: whitespace collapsed and trimmed; non-empty; at most
       word_length_limit characters; no blacklisted phrase; only
       allowed characters

Error Handling:
    Every failure raises ValidationError whose code names the violated
    constraint (SPEED_INVALID, LANGUAGE_UNSUPPORTED, PHRASE_TOO_LONG, ...).

Usage:
    from phrase_tts.services.validators import RequestNormalizer

    normalizer = RequestNormalizer(config.request)
    key = normalizer.normalize({"phrase": "Hello  World", "language": "en",
                                "speed": 1.2, "format": "WAV"})
    # GenerationKey(phrase='hello world', language='en', speed=1.0, fmt='wav')

See Also:
    - api/schemas.py: Pydantic request model (wire shape only)
    - tts/storage.py: GenerationKey and its digest
"""
from __future__ import annotations

import math
import unicodedata
from dataclasses import dataclass
from typing import Any, Mapping, Union

from phrase_tts.core.config import RequestConfig
from phrase_tts.core.errors import ErrorCode, ValidationError
from phrase_tts.core.logging import debug, get_logger
from phrase_tts.tts.storage import GenerationKey
from phrase_tts.utils.text import canonical_phrase, collapse_whitespace

# Module-level logger
_LOG = get_logger("phrase-tts.validators")


@dataclass(frozen=True)
class GenerationRequest:
    """A raw request as received from a caller, before validation."""
    phrase: str
    language: str
    speed: float = 1.0
    format: str = "wav"


RawRequest = Union[GenerationRequest, Mapping[str, Any]]

# Field names accepted in mappings; the short forms are the legacy wire names
_FIELD_ALIASES = {
    "phrase": ("phrase", "word"),
    "language": ("language", "lang"),
    "speed": ("speed",),
    "format": ("format", "fmt"),
}
_FIELD_DEFAULTS = {"phrase": "", "language": "", "speed": 1.0, "format": "wav"}


def _coerce(raw: RawRequest) -> GenerationRequest:
    if isinstance(raw, GenerationRequest):
        return raw
    if not isinstance(raw, Mapping):
        raise ValidationError("Request must be an object", ErrorCode.INVALID_INPUT)

    values = {}
    for name, aliases in _FIELD_ALIASES.items():
        values[name] = _FIELD_DEFAULTS[name]
        for alias in aliases:
            if raw.get(alias) is not None:
                values[name] = raw[alias]
                break
    return GenerationRequest(**values)


class RequestNormalizer:
    """
    Validates raw requests and builds canonical GenerationKeys.

    Stateless apart from its RequestConfig, so one instance is shared by
    every request thread.
    """

    def __init__(self, config: RequestConfig):
        self._config = config
        self._languages = config.enabled_languages()
        self._formats = frozenset(config.allowed_formats)
        self._allowed_chars = frozenset(config.allowed_chars)
        self._blacklist = [
            unicodedata.normalize("NFC", p).casefold()
            for p in config.blacklisted_phrases if p.strip()
        ]

    @property
    def config(self) -> RequestConfig:
        return self._config

    def normalize(self, raw: RawRequest) -> GenerationKey:
        """
        Validate a request and return its canonical key.

        Raises:
            ValidationError: If any field violates its constraint.
        """
        req = _coerce(raw)
        speed = self.normalize_speed(req.speed)
        language = self.validate_language(req.language)
        fmt = self.normalize_format(req.format)
        phrase = self.validate_phrase(req.phrase)

        key = GenerationKey(
            phrase=canonical_phrase(phrase),
            language=language,
            speed=speed,
            fmt=fmt,
        )
        debug(_LOG, "normalized", language=language, speed=speed, fmt=fmt, chars=len(key.phrase))
        return key

    def normalize_speed(self, value: Any) -> float:
        """
        Quantize and bound a speed value.

        Speeds are floored to a multiple of speed_step (1.2 -> 1.0 with the
        default step of 0.5) and kept inside [speed_min, speed_max].
        """
        cfg = self._config
        if isinstance(value, bool):
            raise ValidationError("Speed must be a number!", ErrorCode.SPEED_INVALID)
        try:
            speed = float(value)
        except (TypeError, ValueError):
            raise ValidationError("Speed must be a number!", ErrorCode.SPEED_INVALID)
        if not math.isfinite(speed):
            raise ValidationError("Speed must be a finite number!", ErrorCode.SPEED_INVALID)

        if cfg.speed_policy == "reject" and not (cfg.speed_min <= speed <= cfg.speed_max):
            raise ValidationError(
                f"Speed ({speed}) must be between {cfg.speed_min} and {cfg.speed_max}!",
                ErrorCode.SPEED_OUT_OF_RANGE,
                {"speed": speed, "min": cfg.speed_min, "max": cfg.speed_max},
            )

        # Bounded before flooring so huge values cannot overflow the division
        speed = min(max(speed, cfg.speed_min), cfg.speed_max)
        speed = math.floor(speed / cfg.speed_step) * cfg.speed_step
        return round(min(max(speed, cfg.speed_min), cfg.speed_max), 6)

    def validate_language(self, language: Any) -> str:
        code = str(language or "").strip()
        if code not in self._languages:
            raise ValidationError(
                f"Provided lang ({code}) is not supported by this api!",
                ErrorCode.LANGUAGE_UNSUPPORTED,
                {"supported": sorted(self._languages)},
            )
        return code

    def normalize_format(self, fmt: Any) -> str:
        value = str(fmt or "").strip().lower().lstrip(".")
        if value not in self._formats:
            raise ValidationError(
                f"Requested format ({value}) is not supported by this api!",
                ErrorCode.FORMAT_UNSUPPORTED,
                {"supported": sorted(self._formats)},
            )
        return value

    def validate_phrase(self, phrase: Any) -> str:
        """
        Validate phrase content.

        Returns:
            The NFC, whitespace-collapsed phrase (case preserved).
        """
        cfg = self._config
        if not isinstance(phrase, str):
            raise ValidationError("Phrase must be a string!", ErrorCode.INVALID_INPUT)

        text = collapse_whitespace(unicodedata.normalize("NFC", phrase))
        if not text:
            raise ValidationError("No phrase provided!", ErrorCode.PHRASE_REQUIRED)

        if len(text) > cfg.word_length_limit:
            raise ValidationError(
                f"Phrase is too long! Greater than {cfg.word_length_limit} chars",
                ErrorCode.PHRASE_TOO_LONG,
                {"length": len(text), "limit": cfg.word_length_limit},
            )

        # Padded so blacklist entries written as " word " match whole words
        # at the start and end of the phrase too
        match_phrase = f" {text} ".casefold()
        for banned in self._blacklist:
            if banned in match_phrase:
                raise ValidationError(
                    f"Blacklisted word! Phrase ({banned.strip()}) is not allowed!",
                    ErrorCode.PHRASE_BLACKLISTED,
                )

        if self._allowed_chars:
            for c in text:
                if c not in self._allowed_chars:
                    raise ValidationError(
                        f"Char ({c}) is not allowed to be sent to this api! Please try again.",
                        ErrorCode.PHRASE_INVALID_CHAR,
                    )

        return text
