"""Tests for settings loading and ServiceConfig validation."""
from __future__ import annotations

import pytest

from phrase_tts.core.config import (
    ConfigValidationError,
    Defaults,
    ServiceConfig,
    Settings,
    load_settings,
)


class TestDefaults:
    """An empty settings file yields the documented defaults."""

    def test_empty_settings_use_defaults(self):
        """Every section falls back to Defaults."""
        cfg = ServiceConfig.from_settings(Settings(raw={}))

        assert cfg.api_name == Defaults.API_NAME
        assert cfg.cache.root == Defaults.CACHE_ROOT
        assert cfg.cache.max_size_bytes == Defaults.CACHE_MAX_SIZE_MB * 1_000_000
        assert cfg.rate_limit.threshold == 10
        assert cfg.rate_limit.window_seconds == 300.0
        assert cfg.request.word_length_limit == 200
        assert cfg.request.speed_policy == "clamp"
        assert cfg.engine.engine == "festival"
        assert cfg.auth.enabled is True
        assert "en" in cfg.request.enabled_languages()

    def test_megabytes_are_decimal(self):
        """max_size_mb converts with 1 MB = 1_000_000 bytes."""
        cfg = ServiceConfig.from_settings(Settings(raw={"cache": {"max_size_mb": 2.5}}))
        assert cfg.cache.max_size_bytes == 2_500_000

    def test_max_size_bytes_wins(self):
        """An explicit byte budget overrides max_size_mb."""
        raw = {"cache": {"max_size_mb": 100, "max_size_bytes": 1234}}
        cfg = ServiceConfig.from_settings(Settings(raw=raw))
        assert cfg.cache.max_size_bytes == 1234


class TestValidation:
    """Out-of-range values are rejected with ConfigValidationError."""

    @pytest.mark.parametrize("raw", [
        {"rate_limit": {"threshold": 0}},
        {"rate_limit": {"window_minutes": -1}},
        {"request": {"speed_policy": "bounce"}},
        {"request": {"speed_min": 2.0, "speed_max": 1.0}},
        {"request": {"allowed_formats": []}},
        {"engine": {"engine": "espeak"}},
        {"engine": {"max_workers": 0}},
        {"cache": {"max_size_bytes": -1}},
        {"logging": {"level": 9}},
    ])
    def test_invalid_values_rejected(self, raw):
        """Each invalid section raises."""
        with pytest.raises(ConfigValidationError):
            ServiceConfig.from_settings(Settings(raw=raw))

    def test_language_requires_engine_code(self):
        """A language without an engine_code is a configuration error."""
        raw = {"request": {"languages": {"fr": {"display_name": "French"}}}}
        with pytest.raises(ConfigValidationError):
            ServiceConfig.from_settings(Settings(raw=raw))

    def test_at_least_one_language_enabled(self):
        """Disabling every language is rejected."""
        raw = {"request": {"languages": {"en": {"engine_code": "kal", "enabled": False}}}}
        with pytest.raises(ConfigValidationError):
            ServiceConfig.from_settings(Settings(raw=raw))

    def test_disabled_language_kept_but_not_enabled(self):
        """Disabled languages stay configured but are not offered."""
        raw = {"request": {"languages": {
            "en": {"engine_code": "kal"},
            "es": {"engine_code": "el", "enabled": False},
        }}}
        cfg = ServiceConfig.from_settings(Settings(raw=raw))
        assert set(cfg.request.languages) == {"en", "es"}
        assert set(cfg.request.enabled_languages()) == {"en"}


class TestRateLimitExemptions:
    """Per-user rate limit opt-out."""

    def test_users_without_rate_limit_are_exempt(self):
        """apply_api_rate_limit: false adds the identity to the exempt list."""
        raw = {
            "rate_limit": {"exempt_identities": ["ops"]},
            "users": {
                "alice": {"apply_api_rate_limit": False},
                "bob": {"apply_api_rate_limit": True},
            },
        }
        cfg = ServiceConfig.from_settings(Settings(raw=raw))
        assert cfg.rate_limit.exempt_identities == ["alice", "ops"]


class TestLogLevelParsing:
    """Log levels accept names as well as numbers."""

    @pytest.mark.parametrize("value,expected", [
        ("MINIMAL", 1), ("info", 2), ("VERBOSE", 3), ("trace", 4), (3, 3),
    ])
    def test_level_names(self, value, expected):
        """Names map onto the 1-4 scale."""
        cfg = ServiceConfig.from_settings(Settings(raw={"logging": {"level": value}}))
        assert cfg.logging.level == expected


class TestLoadSettings:
    """YAML loading and environment overrides."""

    def test_missing_file_raises(self, tmp_path):
        """A nonexistent path raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_settings(str(tmp_path / "nope.yaml"))

    def test_yaml_loaded(self, tmp_path):
        """Values from the file end up in Settings.raw."""
        path = tmp_path / "settings.yaml"
        path.write_text("api_name: demo\ncache:\n  root: /srv/cache\n", encoding="utf-8")

        settings = load_settings(str(path))
        assert settings.api_name == "demo"
        assert settings.cache_root == "/srv/cache"

    def test_env_overrides(self, tmp_path, monkeypatch):
        """PHRASE_TTS_* variables override the file."""
        path = tmp_path / "settings.yaml"
        path.write_text(
            "cache:\n  root: ./a\n  max_size_bytes: 10\nengine:\n  engine: festival\n",
            encoding="utf-8",
        )
        monkeypatch.setenv("PHRASE_TTS_CACHE_ROOT", str(tmp_path / "b"))
        monkeypatch.setenv("PHRASE_TTS_MAX_CACHE_MB", "3")
        monkeypatch.setenv("PHRASE_TTS_ENGINE", "flite")

        cfg = load_settings(str(path)).get_service_config()
        assert cfg.cache.root == str(tmp_path / "b")
        assert cfg.cache.max_size_bytes == 3_000_000
        assert cfg.engine.engine == "flite"

    def test_settings_path_from_env(self, tmp_path, monkeypatch):
        """PHRASE_TTS_SETTINGS selects the file when no path is given."""
        path = tmp_path / "other.yaml"
        path.write_text("api_name: from-env\n", encoding="utf-8")
        monkeypatch.setenv("PHRASE_TTS_SETTINGS", str(path))

        assert load_settings().api_name == "from-env"

    def test_shipped_settings_are_valid(self):
        """config/settings.yaml validates."""
        from pathlib import Path

        path = Path(__file__).parent.parent / "config" / "settings.yaml"
        cfg = load_settings(str(path)).get_service_config()
        assert "en" in cfg.request.enabled_languages()
        assert "es" not in cfg.request.enabled_languages()
