"""
Disk Artifact Store for Synthesized Phrases.

The CacheStore is a content-addressed mapping from a GenerationKey digest to
an audio file on disk, with an in-memory index that is the single source of
truth for what is cached and how many bytes it occupies.

Features:
    - Sharded directory structure (prevents filesystem limits)
    - Atomic publication (temp file + fsync + os.replace)
    - Live size accounting that never drifts from the files on disk
    - Startup scan that rebuilds the index after a restart or crash

File Organization:
    {root}/
        .tmp/                 in-flight writes, cleared by scan()
        ab/
            ab12...ef.wav
            ab98...01.mp3
        cd/
            cd45...9a.wav

    The first 2 characters of the digest name the shard directory. Files
    are named <64 hex digest>.<format>; anything else in the tree is
    ignored.

Cache Key Generation:
    Digests are SHA256 hashes of:
        - Key version (utils/text.py KEY_VERSION)
        - Language code
        - Quantized speed
        - Output format
        - Canonical phrase

Concurrency:
    Lookups take the index lock only long enough for a dict read. All
    mutations of one digest (insert, evict, drop) are serialized by a
    striped per-key lock, and filesystem work happens outside the index
    lock so a slow unlink never blocks unrelated lookups.

Usage:
    from phrase_tts.tts.storage import CacheStore, GenerationKey

    store = CacheStore("./cache")
    store.scan()

    key = GenerationKey(phrase="hello world", language="en", speed=1.0, fmt="wav")
    data = store.read(key)
    if data is None:
        data = synthesize(...)
        store.insert(key, data)

See Also:
    - cache_manager.py: Size budget enforcement and lifecycle
    - services/pipeline.py: Request orchestration on top of the store
"""
from __future__ import annotations

import hashlib
import os
import re
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from phrase_tts.core.errors import CacheInitError, CacheIoError, EvictionError
from phrase_tts.core.logging import debug, get_logger, info, verbose, warn
from phrase_tts.utils.text import KEY_VERSION
from phrase_tts.utils.timeit import timeit

# Module-level logger for storage operations
_LOG = get_logger("phrase-tts.storage")

_TMP_DIRNAME = ".tmp"
_FILE_RE = re.compile(r"^([0-9a-f]{64})\.([a-z0-9]{1,8})$")
_LOCK_STRIPES = 64


def make_key(phrase: str, language: str, speed: float, fmt: str, version: str = KEY_VERSION) -> str:
    """
    Generate the digest for a canonical generation request.

    Args:
        phrase: Canonical phrase (see utils/text.py canonical_phrase).
        language: Language code (e.g., "en").
        speed: Quantized speed.
        fmt: Lowercase output format.
        version: Key version (cache invalidation).

    Returns:
        64-character hex string (SHA256 hash).
    """
    h = hashlib.sha256()
    # Concatenate all parameters with | separators
    h.update(version.encode("utf-8"))
    h.update(b"|")
    h.update(language.encode("utf-8"))
    h.update(b"|")
    h.update(f"{float(speed):.3f}".encode("ascii"))
    h.update(b"|")
    h.update(fmt.encode("utf-8"))
    h.update(b"|")
    h.update(phrase.encode("utf-8"))
    return h.hexdigest()


@dataclass(frozen=True)
class GenerationKey:
    """
    Canonical fingerprint of a generation request.

    Built only by RequestNormalizer, so `phrase` is already canonical and
    `speed` already quantized.
    """
    phrase: str
    language: str
    speed: float
    fmt: str

    @property
    def digest(self) -> str:
        return make_key(self.phrase, self.language, self.speed, self.fmt)


@dataclass
class CacheEntry:
    """
    One published artifact.

    Attributes:
        digest: GenerationKey digest (index key and file stem).
        path: Final location of the artifact.
        size: Bytes on disk.
        created_at: Publication time (epoch seconds).
        last_used_at: Most recent hit; the only field mutated after creation.
        fmt: Audio format, also the file extension.
    """
    digest: str
    path: Path
    size: int
    created_at: float
    last_used_at: float
    fmt: str


KeyLike = Union[GenerationKey, str]
UsedCallback = Callable[[str, float], None]


def _digest_of(key: KeyLike) -> str:
    return key.digest if isinstance(key, GenerationKey) else key


def artifact_path(root: str | Path, digest: str, fmt: str) -> Path:
    """
    Sharded location of an artifact under a cache root.

    Example:
        >>> artifact_path("cache", "ab12...", "wav")
        PosixPath('cache/ab/ab12....wav')
    """
    return Path(root) / digest[:2] / f"{digest}.{fmt}"


class CacheStore:
    """
    Content-addressed artifact store with a size-accounted index.

    Invariants:
        - current_size() equals the sum of sizes of indexed entries, which
          equals the bytes of published artifacts on disk.
        - An entry is indexed only after its file exists in final form.
        - At most one artifact is published per digest.
    """

    def __init__(
        self,
        root: str | Path,
        on_used: Optional[UsedCallback] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Open (and create if needed) the cache root.

        Args:
            root: Cache root directory.
            on_used: Called with (digest, timestamp) on every hit. Must not
                block; the CacheManager passes a queue put.
            clock: Wall-clock source for entry timestamps.

        Raises:
            CacheInitError: If the root or its temp directory can't be created.
        """
        self._root = Path(root)
        self._tmp_dir = self._root / _TMP_DIRNAME
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            self._tmp_dir.mkdir(exist_ok=True)
        except OSError as e:
            raise CacheInitError(
                f"Cannot open cache root {self._root}",
                {"root": str(self._root), "error": str(e)},
            ) from e

        self._on_used = on_used
        self._clock = clock
        self._index: Dict[str, CacheEntry] = {}
        self._size = 0
        self._lock = threading.RLock()
        self._destroyed = False
        # Striped locks: every mutation of one digest goes through the same lock
        self._key_locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    @property
    def root(self) -> Path:
        return self._root

    def set_on_used(self, callback: Optional[UsedCallback]) -> None:
        """Install the hit callback (done by CacheManager on start)."""
        self._on_used = callback

    def _key_lock(self, digest: str) -> threading.Lock:
        return self._key_locks[int(digest[:4], 16) % _LOCK_STRIPES]

    def _path_for(self, digest: str, fmt: str) -> Path:
        return artifact_path(self._root, digest, fmt)

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)

    # =========================================================================
    # Reads
    # =========================================================================

    def lookup(self, key: KeyLike) -> Optional[CacheEntry]:
        """
        Index-only lookup; never touches the filesystem.

        A hit reports recency through the on_used callback instead of
        updating the entry inline.
        """
        digest = _digest_of(key)
        with self._lock:
            entry = self._index.get(digest)
        if entry is None:
            return None
        if self._on_used is not None:
            self._on_used(digest, self._clock())
        return entry

    def read(self, key: KeyLike) -> Optional[bytes]:
        """
        Lookup plus file read.

        If the file vanished underneath the index (manual deletion, disk
        trouble), the stale entry is dropped and None is returned so the
        caller treats it as a miss.

        Raises:
            CacheIoError: The file exists but can't be read.
        """
        entry = self.lookup(key)
        if entry is None:
            return None
        try:
            return entry.path.read_bytes()
        except FileNotFoundError:
            warn(_LOG, "stale_entry_dropped", key=entry.digest[:8])
            self._drop(entry)
            return None
        except OSError as e:
            raise CacheIoError(
                "Failed to read cached artifact",
                {"key": entry.digest[:8], "error": str(e)},
            ) from e

    def _drop(self, entry: CacheEntry) -> None:
        with self._key_lock(entry.digest):
            with self._lock:
                if self._index.get(entry.digest) is entry:
                    del self._index[entry.digest]
                    self._size -= entry.size

    # =========================================================================
    # Mutations
    # =========================================================================

    def insert(self, key: GenerationKey, data: bytes) -> CacheEntry:
        """
        Publish an artifact under `key`.

        The bytes are written to a temp file first, then moved into place
        with os.replace. If another writer already published the digest,
        this writer's temp file is discarded and the existing entry is
        returned; losing a race is not an error.

        Returns:
            The entry now indexed for `key` (this writer's or the winner's).

        Raises:
            CacheIoError: Write or publish failed, or the store was
                destroyed. The index is unchanged and no file is left under
                the final name.
        """
        digest = key.digest
        final = self._path_for(digest, key.fmt)
        self._check_open(digest)

        with timeit("cache_insert") as t:
            try:
                tmp = self._write_temp(data)
            except OSError as e:
                raise CacheIoError(
                    "Failed to write cache artifact",
                    {"key": digest[:8], "error": str(e)},
                ) from e

            with self._key_lock(digest):
                with self._lock:
                    destroyed = self._destroyed
                    existing = self._index.get(digest)
                if destroyed:
                    self._discard(tmp)
                    self._check_open(digest)
                if existing is not None:
                    self._discard(tmp)
                    debug(_LOG, "insert_lost_race", key=digest[:8])
                    return existing

                try:
                    final.parent.mkdir(exist_ok=True)
                    os.replace(tmp, final)
                except OSError as e:
                    self._discard(tmp)
                    raise CacheIoError(
                        "Failed to publish cache artifact",
                        {"key": digest[:8], "error": str(e)},
                    ) from e

                try:
                    size = final.stat().st_size
                except OSError as e:
                    # Roll back rather than index a size we can't account for
                    self._discard(final)
                    raise CacheIoError(
                        "Failed to stat published artifact",
                        {"key": digest[:8], "error": str(e)},
                    ) from e

                now = self._clock()
                entry = CacheEntry(
                    digest=digest,
                    path=final,
                    size=size,
                    created_at=now,
                    last_used_at=now,
                    fmt=key.fmt,
                )
                with self._lock:
                    if self._destroyed:
                        self._discard(final)
                        self._check_open(digest)
                    self._index[digest] = entry
                    self._size += size

        info(_LOG, "saved", key=digest[:8], bytes=size, seconds=round(t.timing.seconds, 4))
        return entry

    def _check_open(self, digest: str) -> None:
        if self._destroyed:
            raise CacheIoError("Cache store has been destroyed", {"key": digest[:8]})

    def _write_temp(self, data: bytes) -> Path:
        """Write bytes to a unique, fsynced temp file under the root."""
        self._tmp_dir.mkdir(exist_ok=True)
        fd, name = tempfile.mkstemp(dir=self._tmp_dir, prefix="ins-", suffix=".part")
        tmp = Path(name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError:
            self._discard(tmp)
            raise
        return tmp

    def _discard(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            warn(_LOG, "discard_failed", path=str(path), error=str(e))

    def evict(self, key: KeyLike) -> int:
        """
        Remove an entry and its file.

        The entry leaves the index (and the size total) before the unlink,
        which runs outside the index lock. A file that is already gone is
        logged and the eviction still counts as done.

        Returns:
            Bytes freed (0 if the digest was not indexed).

        Raises:
            EvictionError: Unlink failed; the entry and its size are restored.
        """
        digest = _digest_of(key)
        with self._key_lock(digest):
            with self._lock:
                entry = self._index.pop(digest, None)
                if entry is None:
                    return 0
                self._size -= entry.size

            try:
                entry.path.unlink()
            except FileNotFoundError:
                warn(_LOG, "evict_missing_file", key=digest[:8])
            except OSError as e:
                with self._lock:
                    self._index[digest] = entry
                    self._size += entry.size
                raise EvictionError(
                    "Failed to remove cached artifact",
                    {"key": digest[:8], "error": str(e)},
                ) from e

        verbose(_LOG, "evicted", key=digest[:8], bytes=entry.size)
        return entry.size

    def touch(self, digest: str, at: float) -> None:
        """
        Record a hit.

        Signals may arrive out of order, so last_used_at only moves forward.
        """
        with self._lock:
            entry = self._index.get(digest)
            if entry is not None and at > entry.last_used_at:
                entry.last_used_at = at

    # =========================================================================
    # Accounting & maintenance
    # =========================================================================

    def current_size(self) -> int:
        """Total bytes tracked by the index."""
        with self._lock:
            return self._size

    def eviction_candidates(self) -> List[CacheEntry]:
        """
        Snapshot of entries in eviction order.

        Least recently used first; ties broken by oldest creation time, then
        digest so the order is fully deterministic.
        """
        with self._lock:
            return sorted(
                self._index.values(),
                key=lambda e: (e.last_used_at, e.created_at, e.digest),
            )

    def scan(self) -> int:
        """
        Rebuild the index from the files on disk.

        Leftover temp files (writes interrupted by a crash) are deleted
        first. Timestamps of recovered entries come from file mtime.

        Returns:
            Number of entries recovered.
        """
        index: Dict[str, CacheEntry] = {}
        total = 0
        cleared = 0

        with timeit("cache_scan") as t:
            if self._tmp_dir.exists():
                for leftover in self._tmp_dir.iterdir():
                    if leftover.is_file():
                        self._discard(leftover)
                        cleared += 1

            for shard in self._root.iterdir():
                if not shard.is_dir() or shard.name.startswith("."):
                    continue
                for f in shard.iterdir():
                    m = _FILE_RE.match(f.name)
                    if m is None or not f.is_file():
                        continue
                    digest, fmt = m.group(1), m.group(2)
                    if digest[:2] != shard.name:
                        continue
                    try:
                        st = f.stat()
                    except OSError as e:
                        warn(_LOG, "scan_stat_failed", path=str(f), error=str(e))
                        continue
                    index[digest] = CacheEntry(
                        digest=digest,
                        path=f,
                        size=st.st_size,
                        created_at=st.st_mtime,
                        last_used_at=st.st_mtime,
                        fmt=fmt,
                    )
                    total += st.st_size

            with self._lock:
                self._index = index
                self._size = total

        info(
            _LOG, "cache_scan",
            entries=len(index),
            bytes=total,
            temp_cleared=cleared,
            seconds=round(t.timing.seconds, 4),
        )
        return len(index)

    def destroy(self) -> None:
        """
        Remove every artifact and the cache root itself.

        The store refuses further inserts afterwards.

        Raises:
            CacheIoError: The directory tree could not be removed.
        """
        with self._lock:
            self._destroyed = True
            count = len(self._index)
            self._index = {}
            self._size = 0
            try:
                shutil.rmtree(self._root)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise CacheIoError(
                    "Failed to destroy cache root",
                    {"root": str(self._root), "error": str(e)},
                ) from e
        info(_LOG, "cache_destroyed", root=str(self._root), entries=count)

    def disk_usage(self) -> int:
        """Bytes of published artifacts actually on disk."""
        total = 0
        if not self._root.exists():
            return 0
        for shard in self._root.iterdir():
            if not shard.is_dir() or shard.name.startswith("."):
                continue
            for f in shard.iterdir():
                if _FILE_RE.match(f.name) and f.is_file():
                    total += f.stat().st_size
        return total

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "root": str(self._root),
                "entries": len(self._index),
                "size_bytes": self._size,
            }
