"""
API Request/Response Schemas.

This module defines Pydantic models for the HTTP API. These schemas check
the wire shape only (types and presence); the content rules (length
limits, allowed languages, speed bounds, ...) are enforced by
RequestNormalizer so every violation gets a specific error code.

Models:
    ConvertRequest: Input schema for POST /v1/convert
    LanguagesResponse: Output schema for GET /v1/languages

Example Request:
    {
        "phrase": "Hello, world!",
        "language": "en",
        "speed": 1.0,
        "format": "mp3"
    }

    The short field names "word", "lang" and "fmt" are accepted as well.
"""
from __future__ import annotations

from typing import Dict, List

from pydantic import AliasChoices, BaseModel, Field


class ConvertRequest(BaseModel):
    """
    Conversion request for POST /v1/convert.

    Attributes:
        phrase: Text to speak.
        language: Language code, one of GET /v1/languages.
        speed: Playback speed; floored to a 0.5 step and bounded.
        format: Output audio format (e.g., "wav", "mp3").
    """
    phrase: str = Field(
        ...,
        validation_alias=AliasChoices("phrase", "word"),
        description="Text to synthesize",
    )
    language: str = Field(
        ...,
        validation_alias=AliasChoices("language", "lang"),
        description="Language code (e.g., 'en')",
    )
    speed: float = Field(default=1.0, description="Speech speed (1.0 = normal)")
    format: str = Field(
        default="wav",
        validation_alias=AliasChoices("format", "fmt"),
        description="Output audio format",
    )

    def to_raw(self) -> Dict[str, object]:
        return {
            "phrase": self.phrase,
            "language": self.language,
            "speed": self.speed,
            "format": self.format,
        }


class LanguagesResponse(BaseModel):
    """Enabled languages and the formats callers may request."""
    languages: Dict[str, str]
    formats: List[str]
