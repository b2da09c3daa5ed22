"""
Configuration Management for phrase-tts.

This module provides centralized configuration handling with:
    - Default values (Defaults class)
    - Dataclass-based configuration objects, one per section
    - YAML file loading with environment variable overrides
    - Validation with meaningful error messages

Configuration Hierarchy (highest priority first):
    1. Environment variables (PHRASE_TTS_CACHE_ROOT, PHRASE_TTS_ENGINE, ...)
    2. YAML config file (config/settings.yaml)
    3. Defaults class values

Example settings.yaml:
    api_name: phrase-tts

    cache:
      root: ./cache
      max_size_mb: 512

    rate_limit:
      threshold: 10
      window_minutes: 5

    request:
      word_length_limit: 200
      speed_policy: clamp
      languages:
        en: {display_name: English, engine_code: voice_kal_diphone}

    logging:
      level: 2  # NORMAL

The resulting ServiceConfig is built once at startup and handed to every
component's constructor; nothing below the API layer reads settings on its
own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import os
import string
import yaml


class ConfigValidationError(Exception):
    """
    Raised when configuration validation fails.

    This exception is thrown when a configuration value is outside
    acceptable bounds or of the wrong type.
    """
    pass


class Defaults:
    """
    Centralized default configuration values.

    Sections:
        - Cache: Disk artifact store and eviction
        - Rate Limit: Sliding-window admission control
        - Request: Phrase/speed/language/format validation
        - Engine: Synthesizer and converter subprocesses
        - Auth: Bearer token table
        - Logging: Log level and previews
    """

    API_NAME = "phrase-tts"

    # ─────────────────────────────────────────────────────────────────────────
    # Cache Settings
    # ─────────────────────────────────────────────────────────────────────────
    CACHE_ROOT = "./cache"                  # Directory for cached artifacts
    CACHE_MAX_SIZE_MB = 512                 # Size budget (1 MB = 1_000_000 bytes)
    CACHE_SWEEP_INTERVAL_S = 30.0           # Idle time between budget checks
    CACHE_SWEEP_EVERY_MESSAGES = 100        # Budget check every N manager messages
    CACHE_FLUSH_ON_CLOSE = False            # Destroy the cache root on shutdown
    CACHE_SERVE_ON_WRITE_FAILURE = True     # Serve uncached if the insert fails

    # ─────────────────────────────────────────────────────────────────────────
    # Rate Limiting
    # ─────────────────────────────────────────────────────────────────────────
    RATE_LIMIT_ENABLED = True
    RATE_LIMIT_THRESHOLD = 10               # MAX_REQUESTS_ACC_THRESHOLD
    RATE_LIMIT_WINDOW_MINUTES = 5.0         # MAX_REQUEST_TIME_PERIOD_MINUTES

    # ─────────────────────────────────────────────────────────────────────────
    # Request Validation
    # ─────────────────────────────────────────────────────────────────────────
    REQUEST_WORD_LENGTH_LIMIT = 200
    REQUEST_SPEED_MIN = 0.5
    REQUEST_SPEED_MAX = 3.0
    REQUEST_SPEED_STEP = 0.5
    REQUEST_SPEED_POLICY = "clamp"          # clamp | reject
    REQUEST_ALLOWED_FORMATS = ("wav", "mp3")
    REQUEST_ALLOWED_CHARS = string.ascii_letters + string.digits + " .,!?'-:;\"()"
    REQUEST_LANGUAGES: Dict[str, Dict[str, Any]] = {
        "en": {"display_name": "English", "engine_code": "voice_kal_diphone", "enabled": True},
    }

    # ─────────────────────────────────────────────────────────────────────────
    # Engines
    # ─────────────────────────────────────────────────────────────────────────
    ENGINE_TYPE = "festival"                # festival | flite
    ENGINE_BASE_FORMAT = "wav"
    ENGINE_CONVERTERS = ("ffmpeg",)
    ENGINE_SYNTH_TIMEOUT_S = 30.0
    ENGINE_CONVERT_TIMEOUT_S = 30.0
    ENGINE_REQUEST_TIMEOUT_S = 90.0         # Followers waiting on a coalesced miss
    ENGINE_MAX_WORKERS = 4

    # ─────────────────────────────────────────────────────────────────────────
    # Auth
    # ─────────────────────────────────────────────────────────────────────────
    AUTH_ENABLED = True
    AUTH_ANONYMOUS_IDENTITY = "anonymous"

    # ─────────────────────────────────────────────────────────────────────────
    # Logging
    # ─────────────────────────────────────────────────────────────────────────
    LOGGING_TEXT_PREVIEW_CHARS = 40
    LOGGING_LEVEL = 2                       # 1=MINIMAL, 2=NORMAL, 3=VERBOSE, 4=DEBUG


SPEED_POLICIES = ("clamp", "reject")
ENGINE_TYPES = ("festival", "flite")


@dataclass
class CacheConfig:
    """
    Disk cache configuration.

    max_size_bytes is the eviction budget. It is usually derived from
    max_size_mb (decimal megabytes) but may be set directly.
    """
    root: str = Defaults.CACHE_ROOT
    max_size_bytes: int = Defaults.CACHE_MAX_SIZE_MB * 1_000_000
    sweep_interval_s: float = Defaults.CACHE_SWEEP_INTERVAL_S
    sweep_every_messages: int = Defaults.CACHE_SWEEP_EVERY_MESSAGES
    flush_on_close: bool = Defaults.CACHE_FLUSH_ON_CLOSE
    serve_on_write_failure: bool = Defaults.CACHE_SERVE_ON_WRITE_FAILURE


@dataclass
class RateLimitConfig:
    """
    Sliding-window rate limit configuration.

    An identity may start at most `threshold` new syntheses within any
    trailing window of `window_minutes`. Identities listed in
    `exempt_identities` are never limited.
    """
    enabled: bool = Defaults.RATE_LIMIT_ENABLED
    threshold: int = Defaults.RATE_LIMIT_THRESHOLD
    window_minutes: float = Defaults.RATE_LIMIT_WINDOW_MINUTES
    exempt_identities: List[str] = field(default_factory=list)

    @property
    def window_seconds(self) -> float:
        return self.window_minutes * 60.0


@dataclass
class LanguageConfig:
    """A language the service can synthesize, keyed by its ISO code."""
    code: str
    display_name: str
    engine_code: str
    enabled: bool = True


@dataclass
class RequestConfig:
    """
    Request validation configuration.

    Attributes:
        word_length_limit: Maximum phrase length in characters.
        speed_min / speed_max: Inclusive speed bounds.
        speed_step: Quantization step; speeds are floored to a multiple.
        speed_policy: "clamp" pulls out-of-range speeds to the nearest bound,
            "reject" fails the request instead.
        allowed_formats: Output formats callers may ask for.
        allowed_chars: Characters a phrase may contain (empty = anything).
        blacklisted_phrases: Phrases refused anywhere in the input.
        languages: Supported languages keyed by ISO code.
    """
    word_length_limit: int = Defaults.REQUEST_WORD_LENGTH_LIMIT
    speed_min: float = Defaults.REQUEST_SPEED_MIN
    speed_max: float = Defaults.REQUEST_SPEED_MAX
    speed_step: float = Defaults.REQUEST_SPEED_STEP
    speed_policy: str = Defaults.REQUEST_SPEED_POLICY
    allowed_formats: List[str] = field(default_factory=lambda: list(Defaults.REQUEST_ALLOWED_FORMATS))
    allowed_chars: str = Defaults.REQUEST_ALLOWED_CHARS
    blacklisted_phrases: List[str] = field(default_factory=list)
    languages: Dict[str, LanguageConfig] = field(default_factory=lambda: _parse_languages(Defaults.REQUEST_LANGUAGES))

    def enabled_languages(self) -> Dict[str, LanguageConfig]:
        """Languages that are switched on, keyed by ISO code."""
        return {code: lang for code, lang in self.languages.items() if lang.enabled}


@dataclass
class EngineConfig:
    """
    Synthesizer and converter configuration.

    Timeouts bound every external call; a call that overruns is reported
    as a failure and never produces a cache entry.
    """
    engine: str = Defaults.ENGINE_TYPE
    base_format: str = Defaults.ENGINE_BASE_FORMAT
    converters: List[str] = field(default_factory=lambda: list(Defaults.ENGINE_CONVERTERS))
    synth_timeout_s: float = Defaults.ENGINE_SYNTH_TIMEOUT_S
    convert_timeout_s: float = Defaults.ENGINE_CONVERT_TIMEOUT_S
    request_timeout_s: float = Defaults.ENGINE_REQUEST_TIMEOUT_S
    max_workers: int = Defaults.ENGINE_MAX_WORKERS
    binaries: Dict[str, str] = field(default_factory=dict)


@dataclass
class AuthConfig:
    """Bearer token table. Tokens map to caller identities."""
    enabled: bool = Defaults.AUTH_ENABLED
    tokens: Dict[str, str] = field(default_factory=dict)
    anonymous_identity: str = Defaults.AUTH_ANONYMOUS_IDENTITY


@dataclass
class LoggingConfig:
    """
    Logging configuration.

    Log levels:
        1 = MINIMAL: Startup, shutdown, critical errors only
        2 = NORMAL: Request lifecycle, cache status (default)
        3 = VERBOSE: Per-stage timing, detailed flow
        4 = DEBUG: Internal state, full tracing
    """
    text_preview_chars: int = Defaults.LOGGING_TEXT_PREVIEW_CHARS
    level: int = Defaults.LOGGING_LEVEL


def _parse_languages(raw: Dict[str, Any]) -> Dict[str, LanguageConfig]:
    """Build LanguageConfig entries from the `request.languages` mapping."""
    languages: Dict[str, LanguageConfig] = {}
    for code, entry in (raw or {}).items():
        entry = entry or {}
        if not isinstance(entry, dict):
            raise ConfigValidationError(f"request.languages.{code} must be a mapping")
        engine_code = entry.get("engine_code") or entry.get("festival_code")
        if not engine_code:
            raise ConfigValidationError(f"request.languages.{code}.engine_code is required")
        languages[str(code)] = LanguageConfig(
            code=str(code),
            display_name=str(entry.get("display_name", code)),
            engine_code=str(engine_code),
            enabled=bool(entry.get("enabled", True)),
        )
    return languages


@dataclass
class ServiceConfig:
    """
    Validated configuration for the whole service.

    This is the main configuration object created from Settings. It is
    constructed once and passed into each component.

    Usage:
        settings = load_settings("config/settings.yaml")
        config = ServiceConfig.from_settings(settings)
        print(config.cache.max_size_bytes)
    """
    api_name: str = Defaults.API_NAME
    cache: CacheConfig = field(default_factory=CacheConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    request: RequestConfig = field(default_factory=RequestConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ServiceConfig":
        """
        Create ServiceConfig from Settings with validation.

        Args:
            settings: Raw Settings object loaded from YAML.

        Returns:
            Validated ServiceConfig instance.

        Raises:
            ConfigValidationError: If any value fails validation.
        """
        raw = settings.raw

        # ─────────────────────────────────────────────────────────────────────
        # Cache configuration
        # ─────────────────────────────────────────────────────────────────────
        cache_raw = raw.get("cache", {}) or {}
        if cache_raw.get("max_size_bytes") is not None:
            max_size_bytes = int(cache_raw["max_size_bytes"])
        else:
            max_size_bytes = int(float(cache_raw.get("max_size_mb", Defaults.CACHE_MAX_SIZE_MB)) * 1_000_000)
        cache = CacheConfig(
            root=str(cache_raw.get("root", Defaults.CACHE_ROOT)),
            max_size_bytes=max_size_bytes,
            sweep_interval_s=float(cache_raw.get("sweep_interval_s", Defaults.CACHE_SWEEP_INTERVAL_S)),
            sweep_every_messages=int(cache_raw.get("sweep_every_messages", Defaults.CACHE_SWEEP_EVERY_MESSAGES)),
            flush_on_close=bool(cache_raw.get("flush_on_close", Defaults.CACHE_FLUSH_ON_CLOSE)),
            serve_on_write_failure=bool(
                cache_raw.get("serve_on_write_failure", Defaults.CACHE_SERVE_ON_WRITE_FAILURE)
            ),
        )
        cls._validate_non_negative("cache.max_size_bytes", cache.max_size_bytes)
        cls._validate_positive("cache.sweep_interval_s", cache.sweep_interval_s)
        cls._validate_positive("cache.sweep_every_messages", cache.sweep_every_messages)

        # ─────────────────────────────────────────────────────────────────────
        # Rate limit configuration
        # ─────────────────────────────────────────────────────────────────────
        rl_raw = raw.get("rate_limit", {}) or {}
        exempt = list(rl_raw.get("exempt_identities", []) or [])
        # Per-user settings in the style of users.toml: apply_api_rate_limit = false
        for identity, user in (raw.get("users", {}) or {}).items():
            if isinstance(user, dict) and user.get("apply_api_rate_limit") is False:
                exempt.append(str(identity))
        rate_limit = RateLimitConfig(
            enabled=bool(rl_raw.get("enabled", Defaults.RATE_LIMIT_ENABLED)),
            threshold=int(rl_raw.get("threshold", Defaults.RATE_LIMIT_THRESHOLD)),
            window_minutes=float(rl_raw.get("window_minutes", Defaults.RATE_LIMIT_WINDOW_MINUTES)),
            exempt_identities=sorted(set(exempt)),
        )
        cls._validate_positive("rate_limit.threshold", rate_limit.threshold)
        cls._validate_positive("rate_limit.window_minutes", rate_limit.window_minutes)

        # ─────────────────────────────────────────────────────────────────────
        # Request configuration
        # ─────────────────────────────────────────────────────────────────────
        req_raw = raw.get("request", {}) or {}
        languages_raw = req_raw.get("languages")
        request = RequestConfig(
            word_length_limit=int(req_raw.get("word_length_limit", Defaults.REQUEST_WORD_LENGTH_LIMIT)),
            speed_min=float(req_raw.get("speed_min", Defaults.REQUEST_SPEED_MIN)),
            speed_max=float(req_raw.get("speed_max", Defaults.REQUEST_SPEED_MAX)),
            speed_step=float(req_raw.get("speed_step", Defaults.REQUEST_SPEED_STEP)),
            speed_policy=str(req_raw.get("speed_policy", Defaults.REQUEST_SPEED_POLICY)).lower(),
            allowed_formats=[
                str(f).lower().lstrip(".")
                for f in req_raw.get("allowed_formats", Defaults.REQUEST_ALLOWED_FORMATS)
            ],
            allowed_chars=str(req_raw.get("allowed_chars", Defaults.REQUEST_ALLOWED_CHARS)),
            blacklisted_phrases=[str(p) for p in req_raw.get("blacklisted_phrases", []) or []],
            languages=_parse_languages(
                languages_raw if languages_raw is not None else Defaults.REQUEST_LANGUAGES
            ),
        )
        cls._validate_positive("request.word_length_limit", request.word_length_limit)
        cls._validate_positive("request.speed_min", request.speed_min)
        cls._validate_positive("request.speed_step", request.speed_step)
        cls._validate_range("request.speed_max", request.speed_max, request.speed_min, float("inf"))
        cls._validate_choice("request.speed_policy", request.speed_policy, SPEED_POLICIES)
        if not request.allowed_formats:
            raise ConfigValidationError("request.allowed_formats must not be empty")
        if not request.enabled_languages():
            raise ConfigValidationError("request.languages must enable at least one language")

        # ─────────────────────────────────────────────────────────────────────
        # Engine configuration
        # ─────────────────────────────────────────────────────────────────────
        engine_raw = raw.get("engine", {}) or {}
        engine = EngineConfig(
            engine=str(engine_raw.get("engine", Defaults.ENGINE_TYPE)).lower(),
            base_format=str(engine_raw.get("base_format", Defaults.ENGINE_BASE_FORMAT)).lower(),
            converters=[str(c).lower() for c in engine_raw.get("converters", Defaults.ENGINE_CONVERTERS)],
            synth_timeout_s=float(engine_raw.get("synth_timeout_s", Defaults.ENGINE_SYNTH_TIMEOUT_S)),
            convert_timeout_s=float(engine_raw.get("convert_timeout_s", Defaults.ENGINE_CONVERT_TIMEOUT_S)),
            request_timeout_s=float(engine_raw.get("request_timeout_s", Defaults.ENGINE_REQUEST_TIMEOUT_S)),
            max_workers=int(engine_raw.get("max_workers", Defaults.ENGINE_MAX_WORKERS)),
            binaries={str(k): str(v) for k, v in (engine_raw.get("binaries", {}) or {}).items()},
        )
        cls._validate_choice("engine.engine", engine.engine, ENGINE_TYPES)
        cls._validate_positive("engine.synth_timeout_s", engine.synth_timeout_s)
        cls._validate_positive("engine.convert_timeout_s", engine.convert_timeout_s)
        cls._validate_positive("engine.request_timeout_s", engine.request_timeout_s)
        cls._validate_positive("engine.max_workers", engine.max_workers)

        # ─────────────────────────────────────────────────────────────────────
        # Auth configuration
        # ─────────────────────────────────────────────────────────────────────
        auth_raw = raw.get("auth", {}) or {}
        auth = AuthConfig(
            enabled=bool(auth_raw.get("enabled", Defaults.AUTH_ENABLED)),
            tokens={str(k): str(v) for k, v in (auth_raw.get("tokens", {}) or {}).items()},
            anonymous_identity=str(auth_raw.get("anonymous_identity", Defaults.AUTH_ANONYMOUS_IDENTITY)),
        )

        # ─────────────────────────────────────────────────────────────────────
        # Logging configuration
        # ─────────────────────────────────────────────────────────────────────
        logging_raw = raw.get("logging", {}) or {}
        log_level_raw = logging_raw.get("level", Defaults.LOGGING_LEVEL)

        # Handle string log levels (e.g., "INFO", "DEBUG")
        if isinstance(log_level_raw, str):
            level_map = {
                "MINIMAL": 1, "1": 1,
                "NORMAL": 2, "INFO": 2, "2": 2,
                "VERBOSE": 3, "3": 3,
                "DEBUG": 4, "TRACE": 4, "4": 4,
            }
            log_level = level_map.get(log_level_raw.upper(), Defaults.LOGGING_LEVEL)
        else:
            log_level = int(log_level_raw)

        logging_cfg = LoggingConfig(
            text_preview_chars=int(logging_raw.get("text_preview_chars", Defaults.LOGGING_TEXT_PREVIEW_CHARS)),
            level=log_level,
        )
        cls._validate_non_negative("logging.text_preview_chars", logging_cfg.text_preview_chars)
        cls._validate_range("logging.level", logging_cfg.level, 1, 4)

        return cls(
            api_name=str(raw.get("api_name", Defaults.API_NAME)),
            cache=cache,
            rate_limit=rate_limit,
            request=request,
            engine=engine,
            auth=auth,
            logging=logging_cfg,
        )

    @staticmethod
    def _validate_positive(name: str, value: int | float) -> None:
        """Validate that a value is positive (> 0)."""
        if value <= 0:
            raise ConfigValidationError(f"{name} must be positive, got {value}")

    @staticmethod
    def _validate_non_negative(name: str, value: int | float) -> None:
        """Validate that a value is non-negative (>= 0)."""
        if value < 0:
            raise ConfigValidationError(f"{name} must be non-negative, got {value}")

    @staticmethod
    def _validate_range(name: str, value: int | float, min_val: int | float, max_val: int | float) -> None:
        """Validate that a value is within a range [min_val, max_val]."""
        if not (min_val <= value <= max_val):
            raise ConfigValidationError(f"{name} must be between {min_val} and {max_val}, got {value}")

    @staticmethod
    def _validate_choice(name: str, value: str, choices: tuple) -> None:
        """Validate that a value is one of a fixed set of choices."""
        if value not in choices:
            raise ConfigValidationError(f"{name} must be one of {', '.join(choices)}, got {value!r}")


@dataclass(frozen=True)
class Settings:
    """
    Immutable settings container loaded from YAML.

    This is the raw settings object before validation. Use
    get_service_config() to get the validated ServiceConfig.

    Attributes:
        raw: Dictionary of raw configuration values.
    """
    raw: Dict[str, Any]

    @property
    def api_name(self) -> str:
        """Get the public name of this deployment."""
        return str(self.raw.get("api_name", Defaults.API_NAME))

    @property
    def engine_type(self) -> str:
        """Get the synthesizer type (festival or flite)."""
        return str((self.raw.get("engine", {}) or {}).get("engine", Defaults.ENGINE_TYPE))

    @property
    def cache_root(self) -> str:
        """Get the cache root directory."""
        return str((self.raw.get("cache", {}) or {}).get("root", Defaults.CACHE_ROOT))

    def get_service_config(self) -> ServiceConfig:
        """
        Get validated ServiceConfig from these settings.

        Raises:
            ConfigValidationError: If validation fails.
        """
        return ServiceConfig.from_settings(self)


def load_settings(path: Optional[str] = None) -> Settings:
    """
    Load settings from a YAML configuration file.

    Environment variable overrides:
        - PHRASE_TTS_SETTINGS: Settings file path (when `path` is None)
        - PHRASE_TTS_CACHE_ROOT: Override cache.root
        - PHRASE_TTS_MAX_CACHE_MB: Override cache.max_size_mb
        - PHRASE_TTS_ENGINE: Override engine.engine

    Args:
        path: Path to the YAML configuration file.

    Returns:
        Settings object with loaded configuration.

    Raises:
        FileNotFoundError: If the settings file doesn't exist.
    """
    p = Path(path or os.getenv("PHRASE_TTS_SETTINGS", "config/settings.yaml"))
    if not p.exists():
        raise FileNotFoundError(f"settings file not found: {p.resolve()}")

    with p.open("r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    # Apply environment variable overrides
    cache_root = os.getenv("PHRASE_TTS_CACHE_ROOT")
    if cache_root:
        raw.setdefault("cache", {})["root"] = cache_root
    max_cache_mb = os.getenv("PHRASE_TTS_MAX_CACHE_MB")
    if max_cache_mb:
        cache_raw = raw.setdefault("cache", {})
        cache_raw.pop("max_size_bytes", None)
        cache_raw["max_size_mb"] = float(max_cache_mb)
    engine = os.getenv("PHRASE_TTS_ENGINE")
    if engine:
        raw.setdefault("engine", {})["engine"] = engine

    return Settings(raw=raw)
