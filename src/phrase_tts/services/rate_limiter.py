"""
Sliding-Window Rate Limiting.

The RateLimiter gates new synthesis work per caller identity. An identity
may start at most `threshold` syntheses within any trailing window of
`window_s` seconds.

Algorithm:
    1. Load the identity's most recent request timestamps from the
       AccountHistory collaborator (oldest first)
    2. Count timestamps t with now - window <= t (inclusive boundary)
    3. count >= threshold: Denied(retry_after = oldest_counted + window - now)
       otherwise: Allowed, and the request is logged to the history

    Negative waits (clock skew) are floored to zero. The limiter keeps no
    history of its own; timestamps that fall out of the window simply stop
    being counted.

Thread Safety:
    Check-and-record is atomic per identity. Different identities never
    contend with each other.

Usage:
    limiter = RateLimiter(threshold=10, window_s=300)

    decision = limiter.check("alice")
    if isinstance(decision, Denied):
        raise RateLimitedError(decision.retry_after)
"""
from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Union

from phrase_tts.core.config import RateLimitConfig
from phrase_tts.core.logging import get_logger, verbose

# Module-level logger
_LOG = get_logger("phrase-tts.rate-limiter")


@dataclass(frozen=True)
class Allowed:
    """Admission granted; the request has been recorded."""


@dataclass(frozen=True)
class Denied:
    """Admission refused; retry in `retry_after` seconds."""
    retry_after: float


Decision = Union[Allowed, Denied]


class AccountHistory:
    """
    Storage of per-identity request timestamps.

    The default in-memory implementation is enough for a single node; a
    database-backed history implements the same two methods.
    """

    def load_recent_requests(self, identity: str, limit: int) -> List[float]:
        """Return up to `limit` most recent timestamps, oldest first."""
        raise NotImplementedError

    def log_request(self, identity: str, request: Any, at: float) -> None:
        """Record that `identity` started a request at `at`."""
        raise NotImplementedError


class InMemoryAccountHistory(AccountHistory):
    """
    Process-local history: one deque of timestamps per identity.

    Entries older than `retention_s` are pruned whenever an identity's
    history is loaded, so memory stays bounded by recent traffic.
    """

    def __init__(self, retention_s: float):
        self._retention_s = retention_s
        self._records: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def load_recent_requests(self, identity: str, limit: int) -> List[float]:
        with self._lock:
            record = self._records.get(identity)
            if not record:
                return []
            # Prune against the newest entry rather than a clock so the
            # history stays independent of the limiter's time source
            cutoff = record[-1] - self._retention_s
            while record and record[0] < cutoff:
                record.popleft()
            if limit <= 0:
                return []
            return list(record)[-limit:]

    def log_request(self, identity: str, request: Any, at: float) -> None:
        with self._lock:
            self._records[identity].append(at)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


class RateLimiter:
    """
    Per-identity sliding-window admission control.

    Attributes:
        threshold: Requests allowed per window (MAX_REQUESTS_ACC_THRESHOLD).
        window_s: Window length in seconds.
    """

    def __init__(
        self,
        threshold: int,
        window_s: float,
        history: Optional[AccountHistory] = None,
        exempt: Iterable[str] = (),
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        if window_s <= 0:
            raise ValueError("window_s must be positive")
        self.threshold = threshold
        self.window_s = window_s
        self._history = history or InMemoryAccountHistory(retention_s=window_s)
        self._exempt = frozenset(exempt)
        self._enabled = enabled
        self._clock = clock

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: RateLimitConfig,
        history: Optional[AccountHistory] = None,
        clock: Callable[[], float] = time.time,
    ) -> "RateLimiter":
        return cls(
            threshold=config.threshold,
            window_s=config.window_seconds,
            history=history,
            exempt=config.exempt_identities,
            enabled=config.enabled,
            clock=clock,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _identity_lock(self, identity: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(identity)
            if lock is None:
                lock = self._locks[identity] = threading.Lock()
            return lock

    def check(self, identity: str, request: Any = None) -> Decision:
        """
        Decide whether `identity` may start a new synthesis now.

        An Allowed decision has already been recorded in the history; the
        caller must not log the request again.
        """
        if not self._enabled or identity in self._exempt:
            return Allowed()

        with self._identity_lock(identity):
            now = self._clock()
            window_start = now - self.window_s
            recent = self._history.load_recent_requests(identity, limit=self.threshold)
            counted = [t for t in recent if window_start <= t]

            if len(counted) >= self.threshold:
                retry_after = max(0.0, counted[0] + self.window_s - now)
                verbose(
                    _LOG, "rate_limit_denied",
                    identity=identity,
                    count=len(counted),
                    retry_after=round(retry_after, 3),
                )
                return Denied(retry_after=retry_after)

            self._history.log_request(identity, request, at=now)
            verbose(_LOG, "rate_limit_allowed", identity=identity, count=len(counted) + 1)
            return Allowed()
