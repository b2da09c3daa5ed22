"""
Cache Manager: Size Budget and Lifecycle for the CacheStore.

The manager is a single background thread that owns the recency updates
and the eviction sweep of one CacheStore. Everything else talks to it by
putting CacheAction messages on its queue.

Actions:
    Used(digest, at)  - refresh last_used_at after a cache hit
    Sweep()           - check the size budget now (sent after inserts)
    Close(flush)      - drain and stop; optionally destroy the store

Sweep Triggers:
    1. No message for sweep_interval_s seconds (queue get timeout)
    2. A Sweep action
    3. Every sweep_every_messages processed messages
    4. Close without flush

Eviction Order:
    Least recently used first, ties broken by oldest creation time. A sweep
    stops as soon as current_size() is within max_size_bytes or no entries
    remain. A failure on one entry is logged and the sweep moves on.

Lifecycle:
    CREATED --start()--> RUNNING --Close--> DRAINING --> STOPPED

    While DRAINING, pending Used messages are applied and, if requested,
    the whole cache root is removed. After STOPPED, new messages are
    dropped.

Usage:
    manager = CacheManager(store, max_size_bytes=512_000_000)
    manager.start()
    ...
    manager.request_sweep()
    manager.close(flush=False)
"""
from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from phrase_tts.core.config import CacheConfig, Defaults
from phrase_tts.core.errors import CacheIoError, EvictionError
from phrase_tts.core.logging import debug, error, get_logger, info, success, warn
from phrase_tts.core.metrics import metrics
from phrase_tts.tts.storage import CacheStore
from phrase_tts.utils.timeit import timeit

# Module-level logger
_LOG = get_logger("phrase-tts.cache-manager")


class ManagerState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Used:
    """A cache hit on `digest` at wall-clock time `at`."""
    digest: str
    at: float


@dataclass(frozen=True)
class Sweep:
    """Request an immediate size-budget check."""


@dataclass(frozen=True)
class Close:
    """Stop the manager; destroy the store first when `flush` is set."""
    flush: bool = False


CacheAction = Union[Used, Sweep, Close]


class CacheManager:
    """
    Background owner of a CacheStore's size budget and lifecycle.

    Thread-safe: used(), request_sweep() and close() may be called from any
    thread. sweep() may also be called directly (tests, CLI); the store
    serializes the underlying evictions.
    """

    def __init__(
        self,
        store: CacheStore,
        max_size_bytes: int,
        sweep_interval_s: float = Defaults.CACHE_SWEEP_INTERVAL_S,
        sweep_every_messages: int = Defaults.CACHE_SWEEP_EVERY_MESSAGES,
        flush_on_close: bool = Defaults.CACHE_FLUSH_ON_CLOSE,
    ):
        self._store = store
        self._max_size = max_size_bytes
        self._sweep_interval_s = sweep_interval_s
        self._sweep_every = max(1, sweep_every_messages)
        self._flush_on_close = flush_on_close

        self._queue: "queue.Queue[CacheAction]" = queue.Queue()
        self._state = ManagerState.CREATED
        self._state_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._messages = 0

        # Stats
        self._stats_lock = threading.Lock()
        self._sweeps = 0
        self._total_evicted = 0
        self._total_bytes_freed = 0
        self._total_errors = 0

    @classmethod
    def from_config(cls, store: CacheStore, config: CacheConfig) -> "CacheManager":
        return cls(
            store,
            max_size_bytes=config.max_size_bytes,
            sweep_interval_s=config.sweep_interval_s,
            sweep_every_messages=config.sweep_every_messages,
            flush_on_close=config.flush_on_close,
        )

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def max_size_bytes(self) -> int:
        return self._max_size

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the manager thread and route store hits through the queue."""
        with self._state_lock:
            if self._state is not ManagerState.CREATED:
                return
            self._store.set_on_used(self.used)
            self._thread = threading.Thread(
                target=self._run,
                daemon=True,
                name="cache-manager",
            )
            self._state = ManagerState.RUNNING
            self._thread.start()
        info(
            _LOG, "cache_manager_started",
            max_size_bytes=self._max_size,
            interval_s=self._sweep_interval_s,
        )

    def close(self, flush: Optional[bool] = None, timeout: float = 10.0) -> None:
        """
        Send Close and wait for the manager thread to finish.

        Args:
            flush: Destroy the cache root while draining. None uses the
                configured cache.flush_on_close.
            timeout: Seconds to wait for the thread to exit.
        """
        do_flush = self._flush_on_close if flush is None else flush
        with self._state_lock:
            if self._state is ManagerState.CREATED:
                # Never started: nothing to drain
                self._state = ManagerState.STOPPED
                thread = None
            else:
                thread = self._thread
                if self._state is ManagerState.RUNNING:
                    self._queue.put(Close(flush=do_flush))

        if thread is None:
            if do_flush:
                self._store.destroy()
            return

        thread.join(timeout)
        if thread.is_alive():
            warn(_LOG, "cache_manager_join_timeout", timeout=timeout)
        self._store.set_on_used(None)

    # =========================================================================
    # Messages
    # =========================================================================

    def used(self, digest: str, at: Optional[float] = None) -> None:
        """Queue a recency update. Non-blocking."""
        self._send(Used(digest=digest, at=time.time() if at is None else at))

    def request_sweep(self) -> None:
        """Queue a budget check. Non-blocking."""
        self._send(Sweep())

    def _send(self, action: CacheAction) -> None:
        if self._state is ManagerState.STOPPED:
            debug(_LOG, "action_dropped", action=type(action).__name__)
            return
        self._queue.put(action)

    def _run(self) -> None:
        while True:
            try:
                action = self._queue.get(timeout=self._sweep_interval_s)
            except queue.Empty:
                self._safe_sweep("interval")
                continue

            if isinstance(action, Close):
                self._drain(action)
                return

            self._messages += 1
            if isinstance(action, Used):
                self._store.touch(action.digest, action.at)
            elif isinstance(action, Sweep):
                self._safe_sweep("requested")

            if self._messages % self._sweep_every == 0:
                self._safe_sweep("message_count")

    def _drain(self, action: Close) -> None:
        with self._state_lock:
            self._state = ManagerState.DRAINING
        info(_LOG, "cache_manager_draining", flush=action.flush)

        while True:
            try:
                pending = self._queue.get_nowait()
            except queue.Empty:
                break
            if isinstance(pending, Used):
                self._store.touch(pending.digest, pending.at)

        if action.flush:
            try:
                self._store.destroy()
            except CacheIoError as e:
                error(_LOG, "cache_flush_failed", error=str(e))
        else:
            self._safe_sweep("close")

        with self._state_lock:
            self._state = ManagerState.STOPPED
        success(_LOG, "cache_manager_stopped", flushed=action.flush)

    # =========================================================================
    # Eviction
    # =========================================================================

    def _safe_sweep(self, reason: str) -> None:
        # The manager thread must outlive any single bad sweep
        try:
            self.sweep(reason=reason)
        except Exception as e:
            error(_LOG, "sweep_failed", reason=reason, error=str(e), error_type=type(e).__name__)

    def sweep(self, reason: str = "manual") -> Dict[str, int]:
        """
        Evict least recently used entries until the store fits the budget.

        Returns:
            Dict with 'evicted', 'bytes_freed' and 'errors'.
        """
        result = {"evicted": 0, "bytes_freed": 0, "errors": 0}
        size = self._store.current_size()
        if size <= self._max_size:
            metrics.set_cache_size(size)
            return result

        with timeit("sweep") as t:
            for entry in self._store.eviction_candidates():
                if self._store.current_size() <= self._max_size:
                    break
                try:
                    freed = self._store.evict(entry.digest)
                except EvictionError as e:
                    result["errors"] += 1
                    warn(_LOG, "evict_failed", key=entry.digest[:8], error=e.details.get("error", e.message))
                    continue
                if freed:
                    result["evicted"] += 1
                    result["bytes_freed"] += freed

        remaining = self._store.current_size()
        metrics.record_eviction(count=result["evicted"], bytes_freed=result["bytes_freed"])
        metrics.set_cache_size(remaining)

        with self._stats_lock:
            self._sweeps += 1
            self._total_evicted += result["evicted"]
            self._total_bytes_freed += result["bytes_freed"]
            self._total_errors += result["errors"]

        info(
            _LOG, "sweep",
            reason=reason,
            evicted=result["evicted"],
            bytes_freed=result["bytes_freed"],
            errors=result["errors"],
            size_bytes=remaining,
            seconds=round(t.timing.seconds, 4),
        )
        return result

    def stats(self) -> Dict[str, Any]:
        """Get manager statistics."""
        with self._stats_lock:
            return {
                "state": self._state.value,
                "max_size_bytes": self._max_size,
                "size_bytes": self._store.current_size(),
                "sweeps": self._sweeps,
                "total_evicted": self._total_evicted,
                "total_bytes_freed": self._total_bytes_freed,
                "total_errors": self._total_errors,
            }
