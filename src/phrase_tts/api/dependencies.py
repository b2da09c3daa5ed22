"""
FastAPI Dependency Injection Providers.

Dependencies are functions injected into route handlers with Depends().

Architecture:
    The dependency system follows this hierarchy:
        1. get_settings() - Loads and caches application configuration
        2. get_pipeline_dep() - Creates/returns the singleton SynthesisPipeline
        3. get_authenticator() - Token table built from the same settings

    Tests replace any of these through app.dependency_overrides.

Lifecycle:
    1. Application startup (main.py lifespan)
       └── start_pipeline() → get_pipeline_dep() → get_settings()
           └── pipeline.start(): cache scan, cache manager thread
    2. Request handling
       └── Route handlers receive the same pipeline via Depends()
    3. Shutdown
       └── stop_pipeline() → pipeline.close()
"""
from __future__ import annotations

from functools import lru_cache

from phrase_tts.core.config import Settings, load_settings
from phrase_tts.core.logging import get_logger, warn
from phrase_tts.services.auth import Authenticator, StaticTokenAuthenticator
from phrase_tts.services.pipeline import SynthesisPipeline, get_pipeline, reset_pipeline

_LOG = get_logger("phrase-tts.api")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Load and cache application settings.

    The path comes from PHRASE_TTS_SETTINGS (default config/settings.yaml).
    If the file doesn't exist, default values are used.
    """
    try:
        return load_settings()
    except FileNotFoundError as e:
        warn(_LOG, "settings_missing", error=str(e))
        return Settings(raw={})


def get_pipeline_dep() -> SynthesisPipeline:
    """Get the singleton SynthesisPipeline instance."""
    return get_pipeline(get_settings())


@lru_cache(maxsize=1)
def get_authenticator() -> Authenticator:
    """Get the bearer token authenticator built from settings."""
    return StaticTokenAuthenticator.from_config(get_settings().get_service_config().auth)


def start_pipeline() -> None:
    """Create the pipeline and recover the cache. Called at app startup."""
    get_pipeline_dep().start()


def stop_pipeline() -> None:
    """Close the pipeline. Called at app shutdown."""
    reset_pipeline()
