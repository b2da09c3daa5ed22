"""Tests for pyproject.toml and package installation."""
from __future__ import annotations

from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent


class TestPackageInstallation:
    """The package imports without extra path setup."""

    def test_package_importable(self):
        import phrase_tts
        assert phrase_tts is not None

    def test_version_defined(self):
        """Package has a non-empty __version__ string."""
        import phrase_tts
        assert isinstance(phrase_tts.__version__, str)
        assert phrase_tts.__version__

    def test_core_modules_importable(self):
        """Every layer imports cleanly."""
        from phrase_tts.api import routes, schemas
        from phrase_tts.core import config, errors, logging
        from phrase_tts.services import pipeline, rate_limiter, validators
        from phrase_tts.tts import cache_manager, converter, engine, storage

        for module in (routes, schemas, config, errors, logging, pipeline,
                       rate_limiter, validators, cache_manager, converter, engine, storage):
            assert module is not None


class TestPyprojectMetadata:
    """pyproject.toml declares what the code imports."""

    @pytest.fixture(scope="class")
    def project(self):
        tomllib = pytest.importorskip("tomllib")
        with open(ROOT / "pyproject.toml", "rb") as f:
            return tomllib.load(f)["project"]

    def test_name(self, project):
        assert project["name"] == "phrase-tts"

    def test_runtime_dependencies(self, project):
        """Web stack and YAML loader are required at runtime."""
        deps = " ".join(project["dependencies"])
        for name in ("fastapi", "uvicorn", "pydantic", "pyyaml"):
            assert name in deps

    def test_optional_extras(self, project):
        extras = project["optional-dependencies"]
        assert any("prometheus_client" in d for d in extras["metrics"])
        assert any("pytest" in d for d in extras["test"])
        assert any("httpx" in d for d in extras["test"])

    def test_cli_entry_point(self, project):
        assert project["scripts"]["phrase-tts"] == "phrase_tts.cli:main"

    def test_version_matches_package(self, project):
        import phrase_tts
        assert project["version"] == phrase_tts.__version__
