"""Tests for bearer token resolution."""
from __future__ import annotations

import pytest

from phrase_tts.core.config import AuthConfig
from phrase_tts.core.errors import ErrorCode, UnauthorizedError
from phrase_tts.services.auth import StaticTokenAuthenticator, parse_bearer


@pytest.mark.parametrize("header,expected", [
    ("Bearer abc", "abc"),
    ("bearer   abc  ", "abc"),
    ("Basic abc", None),
    ("Bearer", None),
    ("Bearer   ", None),
    ("", None),
    (None, None),
])
def test_parse_bearer(header, expected):
    assert parse_bearer(header) == expected


class TestStaticTokenAuthenticator:
    """Token table lookups."""

    def test_known_token(self):
        auth = StaticTokenAuthenticator({"t1": "alice", "t2": "bob"})
        assert auth.validate("t2") == "bob"

    @pytest.mark.parametrize("token", [None, "", "t3", "T1"])
    def test_rejected(self, token):
        auth = StaticTokenAuthenticator({"t1": "alice"})
        with pytest.raises(UnauthorizedError) as exc:
            auth.validate(token)
        assert exc.value.code == ErrorCode.UNAUTHORIZED

    def test_disabled_maps_to_anonymous(self):
        auth = StaticTokenAuthenticator({}, enabled=False, anonymous_identity="guest")
        assert auth.enabled is False
        assert auth.validate(None) == "guest"
        assert auth.validate("whatever") == "guest"

    def test_from_config(self):
        auth = StaticTokenAuthenticator.from_config(AuthConfig(tokens={"k": "ops"}))
        assert auth.enabled is True
        assert auth.validate("k") == "ops"
