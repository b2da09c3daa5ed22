"""
Command-Line Interface for phrase-tts.

This module runs the synthesis pipeline without the HTTP server. Requests
go through the same normalization, cache and rate limiting as the API.

Usage Examples:
    # Single phrase synthesis
    phrase-tts "Hello world" --out hello.wav

    # Other format, language and speed
    phrase-tts "Hello world" --format mp3 --speed 1.5 --language en --out hello.mp3

    # Dry-run mode (validate, print the cache key and whether it is cached)
    phrase-tts "Hello world" --dry-run --json

    # Cache maintenance
    phrase-tts --cache-info
    phrase-tts --flush-cache

Exit Codes:
    0 - success
    1 - synthesis, conversion, cache or configuration failure
    2 - the request was rejected (validation or rate limit)

Environment Variables:
    PHRASE_TTS_SETTINGS: Settings file (default config/settings.yaml)
    PHRASE_TTS_CACHE_ROOT: Cache root override
    PHRASE_TTS_ENGINE: Engine override (festival, flite)
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from phrase_tts.core.config import ConfigValidationError, Settings, load_settings
from phrase_tts.core.errors import PipelineError, RateLimitedError, ValidationError
from phrase_tts.core.logging import configure_logging, get_logger, info, set_request_id
from phrase_tts.services.validators import GenerationRequest, RequestNormalizer
from phrase_tts.tts.storage import CacheStore, artifact_path

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_REJECTED = 2


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="phrase-tts CLI (serverless synth)")

    parser.add_argument("phrase", nargs="?", help="Phrase to synthesize")
    parser.add_argument("--language", default="en", help="Language code (default: en)")
    parser.add_argument("--speed", type=float, default=1.0, help="Speech speed (default: 1.0)")
    parser.add_argument("--format", dest="fmt", default="wav", help="Output format (default: wav)")
    parser.add_argument("--out", help="Output path (default: output.<format>)")
    parser.add_argument("--identity", default="cli",
                        help="Identity charged by the rate limiter (default: cli)")
    parser.add_argument("--settings", help="Settings file (default: PHRASE_TTS_SETTINGS or config/settings.yaml)")

    # Execution modes
    parser.add_argument("--dry-run", action="store_true",
                        help="Validate and print the cache key without synthesis")
    parser.add_argument("--json", action="store_true",
                        help="Print JSON summary")

    # Cache maintenance
    parser.add_argument("--cache-info", action="store_true",
                        help="Scan the cache root and print its statistics")
    parser.add_argument("--flush-cache", action="store_true",
                        help="Delete every cached artifact")

    return parser.parse_args(argv)


def _load(path: Optional[str]) -> Settings:
    """Load settings, falling back to defaults when no file exists."""
    try:
        return load_settings(path)
    except FileNotFoundError:
        if path:
            raise
        return Settings(raw={})


def _emit(payload: Dict[str, Any], as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, ensure_ascii=False))
    else:
        print(payload)


def _cache_command(settings: Settings, args: argparse.Namespace) -> int:
    """Handle --cache-info and --flush-cache."""
    store = CacheStore(settings.get_service_config().cache.root)
    if args.flush_cache:
        store.destroy()
        _emit({"ok": True, "flushed": str(store.root)}, args.json)
        return EXIT_OK

    store.scan()
    _emit({"ok": True, **store.stats()}, args.json)
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Orchestrates the CLI workflow:
        1. Parse arguments and configure logging
        2. Load settings
        3. Handle cache maintenance commands
        4. Handle dry-run mode (normalize only)
        5. Run the pipeline and write the artifact

    Returns:
        Exit code (see module docstring).
    """
    args = _parse_args(argv)

    configure_logging()
    log = get_logger("phrase-tts.cli")
    set_request_id(str(uuid4())[:12])

    try:
        settings = _load(args.settings)
        config = settings.get_service_config()
    except (FileNotFoundError, ConfigValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FAILED

    if args.cache_info or args.flush_cache:
        try:
            return _cache_command(settings, args)
        except PipelineError as e:
            _emit({"ok": False, **e.to_dict()}, args.json)
            return EXIT_FAILED

    if args.phrase is None:
        print("Provide a phrase to synthesize.", file=sys.stderr)
        return EXIT_REJECTED

    request = GenerationRequest(
        phrase=args.phrase,
        language=args.language,
        speed=args.speed,
        format=args.fmt,
    )

    # Dry run: validation and key only, the cache root is never created
    if args.dry_run:
        try:
            key = RequestNormalizer(config.request).normalize(request)
        except ValidationError as e:
            _emit(e.to_dict(), args.json)
            return EXIT_REJECTED
        payload = {
            "ok": True,
            "dry_run": True,
            "key": key.digest,
            "phrase": key.phrase,
            "language": key.language,
            "speed": key.speed,
            "format": key.fmt,
            "cached": artifact_path(config.cache.root, key.digest, key.fmt).is_file(),
        }
        if not args.json:
            info(log, "dry_run", key=key.digest[:8], language=key.language, speed=key.speed, fmt=key.fmt)
        _emit(payload, args.json)
        print("DRY_RUN_OK")
        return EXIT_OK

    from phrase_tts.services.pipeline import SynthesisPipeline

    try:
        pipeline = SynthesisPipeline.from_settings(settings)
    except PipelineError as e:
        _emit(e.to_dict(), args.json)
        return EXIT_FAILED

    pipeline.start()
    try:
        result = pipeline.produce(request, identity=args.identity)
    except (ValidationError, RateLimitedError) as e:
        _emit(e.to_dict(), args.json)
        return EXIT_REJECTED
    except PipelineError as e:
        _emit(e.to_dict(), args.json)
        return EXIT_FAILED
    finally:
        pipeline.close()

    out_path = Path(args.out or f"output.{result.fmt}")
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(result.data)

    _emit(
        {
            "ok": True,
            "out": str(out_path),
            "bytes": len(result.data),
            "cache": result.cache_status,
            "key": result.key.digest,
            "seconds": round(result.total_seconds, 3),
        },
        args.json,
    )
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
