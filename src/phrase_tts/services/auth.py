"""
Bearer Token Authentication.

The pipeline only ever sees a resolved caller identity; turning a token
into that identity happens here, at the API edge.

Configuration (settings.yaml):
    auth:
      enabled: true
      tokens:
        "s3cr3t-token": alice
        "another-token": bob

With auth disabled every caller is mapped to `anonymous_identity`, which
then shares a single rate-limit record.
"""
from __future__ import annotations

import hmac
from typing import Dict, Optional

from phrase_tts.core.config import AuthConfig
from phrase_tts.core.errors import UnauthorizedError


class Authenticator:
    """Resolves a credential to a caller identity."""

    def validate(self, token: Optional[str]) -> str:
        """
        Return the identity for `token`.

        Raises:
            UnauthorizedError: Missing or unknown credentials.
        """
        raise NotImplementedError


class StaticTokenAuthenticator(Authenticator):
    """Token table from configuration."""

    def __init__(
        self,
        tokens: Dict[str, str],
        enabled: bool = True,
        anonymous_identity: str = "anonymous",
    ):
        self._tokens = dict(tokens)
        self._enabled = enabled
        self._anonymous = anonymous_identity

    @classmethod
    def from_config(cls, config: AuthConfig) -> "StaticTokenAuthenticator":
        return cls(config.tokens, enabled=config.enabled, anonymous_identity=config.anonymous_identity)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def validate(self, token: Optional[str]) -> str:
        if not self._enabled:
            return self._anonymous
        if not token:
            raise UnauthorizedError()
        # Constant-time comparison against every known token
        identity = None
        for known, owner in self._tokens.items():
            if hmac.compare_digest(known.encode("utf-8"), token.encode("utf-8")):
                identity = owner
        if identity is None:
            raise UnauthorizedError()
        return identity


def parse_bearer(header: Optional[str]) -> Optional[str]:
    """Extract the token from an `Authorization: Bearer <token>` header."""
    if not header:
        return None
    scheme, _, credentials = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()
