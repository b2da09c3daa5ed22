"""
Phrase Canonicalization Utilities.

Requests that differ only in whitespace or letter case must land on the same
cache entry, so every phrase is reduced to a canonical form before it is
hashed into a GenerationKey.

Canonicalization Steps:
    1. Unicode NFC normalization
    2. Collapse runs of whitespace to a single space
    3. Strip leading/trailing whitespace
    4. Case-fold

The phrase handed to the synthesizer keeps the case-folded form as well, so
two requests sharing a key always produce the same audio.

Version Tracking:
    KEY_VERSION is mixed into every cache key digest. When canonicalization
    changes, bump it to orphan old artifacts (the size sweep reclaims them).

Example:
    >>> from phrase_tts.utils.text import canonical_phrase
    >>> canonical_phrase("  Hello \\t  World ")
    'hello world'
"""
from __future__ import annotations

import re
import unicodedata

# Version string mixed into cache key digests
KEY_VERSION = "v1"

_WS_RE = re.compile(r"\s+")


def collapse_whitespace(text: str) -> str:
    """Collapse whitespace runs to one space and trim the ends."""
    return _WS_RE.sub(" ", text).strip()


def canonical_phrase(text: str) -> str:
    """
    Reduce a phrase to the form used in cache keys and synthesis.

    Args:
        text: Raw phrase as received from the caller.

    Returns:
        NFC-normalized, whitespace-collapsed, trimmed, case-folded phrase.
    """
    return collapse_whitespace(unicodedata.normalize("NFC", text)).casefold()


def preview(text: str, limit: int) -> str:
    """Shorten text for log lines, marking truncation with an ellipsis."""
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
