"""
Timing Utilities for Performance Measurement.

Timing data feeds the per-stage `stage` log lines, the `timings` field of
every ProduceResult and the request duration histogram.

Two interfaces are provided:
    1. Context manager (timeit): For measuring a single code block
    2. StageTimings: Collects named stages of one request into a dict

Precision:
    Uses time.perf_counter() for high-resolution timing.

Example Usage:
    with timeit("synth") as t:
        data = synthesizer.generate(phrase, "en", 1.0)
    print(f"Took {t.timing.seconds:.3f}s")

    stages = StageTimings(logger=_LOG)
    with stages.measure("lookup"):
        entry = store.lookup(key)
    stages.as_dict()  # {"lookup": 0.0001}
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Dict, Iterator, Optional

from phrase_tts.core.logging import verbose


@dataclass
class Timing:
    """
    Timing measurement result.

    Attributes:
        name: Identifier for what was timed (e.g., "synth", "insert").
        seconds: Duration in seconds (float, high precision).
        meta: Optional metadata dictionary for additional context.
    """
    name: str
    seconds: float
    meta: Optional[Dict[str, Any]] = None


class timeit:
    """
    Context manager for timing code blocks.

    The timing is recorded even when the block raises, so failed stages
    still show up in logs.

    Example:
        with timeit("convert", meta={"to": "mp3"}) as t:
            data = converter.convert(data, "wav", "mp3")
        # t.timing.meta == {"to": "mp3"}
    """

    def __init__(self, name: str, meta: Optional[Dict[str, Any]] = None):
        self.name = name
        self.meta = meta
        self._t0: float | None = None
        self.timing: Timing | None = None

    def __enter__(self) -> "timeit":
        """Start timing."""
        self._t0 = perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        """Stop timing and store result."""
        t1 = perf_counter()
        assert self._t0 is not None
        self.timing = Timing(name=self.name, seconds=(t1 - self._t0), meta=self.meta)


class StageTimings:
    """
    Per-request stage timer.

    Each measured stage is stored under its name and, when a logger is
    given, reported through a verbose `stage` log line.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger
        self._timings: Dict[str, float] = {}

    @contextmanager
    def measure(self, name: str) -> Iterator[None]:
        timer = timeit(name)
        try:
            with timer:
                yield
        finally:
            self._record(name, timer.timing.seconds if timer.timing else -1.0)

    def _record(self, name: str, seconds: float) -> None:
        self._timings[name] = seconds
        if self._logger is not None:
            verbose(self._logger, "stage", event=name, seconds=round(seconds, 4))

    def as_dict(self) -> Dict[str, float]:
        return dict(self._timings)
