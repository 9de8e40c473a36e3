"""
Artifact Cache - Content-addressed store of compiled units

Maps a unit fingerprint to an immutable artifact file on local storage.

Layout:
    <cache_dir>/artifacts/<fp[:2]>/<fp>.pdf    compiled artifact
    <cache_dir>/artifacts/<fp[:2]>/<fp>.json   sidecar (commit marker)

Write protocol: the artifact is written to a temp file in the same
directory, fsync'ed and renamed into place, then the sidecar is written
the same way. ``lookup`` only trusts entries whose sidecar exists and
matches the artifact, so an interrupted write is never returned.

There is no global index file and no global write lock: writers to the
same fingerprint serialize on a per-key lock, writers to different keys
never contend. The only cache-wide lock is ``<cache_dir>/.lock``, held
shared by build sessions and exclusively by prune/clear, so pruning from
one process never removes entries a build in another process relies on.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import json
import logging
import os
import shutil
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from .fingerprint import sha256_bytes

if os.name == "posix":
    import fcntl
else:  # no flock: sessions and pruning only exclude each other in-process
    fcntl = None

logger = logging.getLogger(__name__)


ARTIFACT_SUFFIX = ".pdf"
SIDECAR_SUFFIX = ".json"


class CacheConsistencyError(Exception):
    """Same fingerprint stored with different content (fingerprinting bug)."""

    def __init__(self, fingerprint: str, existing_sha256: str, new_sha256: str):
        self.fingerprint = fingerprint
        self.existing_sha256 = existing_sha256
        self.new_sha256 = new_sha256
        super().__init__(
            f"fingerprint {fingerprint[:16]} already maps to content "
            f"{existing_sha256[:12]}, refusing to store {new_sha256[:12]}"
        )


@dataclass
class CacheEntry:
    """Sidecar metadata of a cached artifact."""
    fingerprint: str
    artifact_path: str
    created_at: str
    size: int
    sha256: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(**data)


@dataclass
class CacheStats:
    """Cache statistics for the current process."""
    hits: int = 0
    misses: int = 0
    stores: int = 0
    repairs: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "hit_rate": self.hit_rate}


def _atomic_write(path: Path, data: bytes) -> None:
    """Write bytes to path via temp file + fsync + rename."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class ArtifactCache:
    """
    Persistent fingerprint -> artifact store.

    Usage:
        cache = ArtifactCache(Path("~/.fastbeam/cache").expanduser())

        path = cache.lookup(unit.fingerprint)
        if path is None:
            path = cache.store(unit.fingerprint, compiled_bytes)
    """

    DEFAULT_CACHE_DIR = Path.home() / ".fastbeam" / "cache"

    def __init__(self, cache_dir: Optional[Path] = None):
        """
        Initialize the artifact cache.

        Args:
            cache_dir: Custom cache directory. Defaults to ~/.fastbeam/cache/
        """
        self.cache_dir = Path(cache_dir) if cache_dir else self.DEFAULT_CACHE_DIR
        self.artifacts_dir = self.cache_dir / "artifacts"
        self.lock_path = self.cache_dir / ".lock"
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        self.stats = CacheStats()

        self._key_locks: Dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()
        self._stats_lock = threading.Lock()

        # Active build sessions vs. pruning
        self._sessions = 0
        self._pruning = False
        self._session_cond = threading.Condition()

    # -------------------------------------------------------------------------
    # Paths and locks
    # -------------------------------------------------------------------------

    def _shard_dir(self, fingerprint: str) -> Path:
        return self.artifacts_dir / fingerprint[:2]

    def artifact_path(self, fingerprint: str) -> Path:
        """Where the artifact for a fingerprint lives (whether or not present)."""
        return self._shard_dir(fingerprint) / f"{fingerprint}{ARTIFACT_SUFFIX}"

    def sidecar_path(self, fingerprint: str) -> Path:
        return self._shard_dir(fingerprint) / f"{fingerprint}{SIDECAR_SUFFIX}"

    def _lock_for(self, fingerprint: str) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(fingerprint)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[fingerprint] = lock
            return lock

    def _count(self, field_name: str) -> None:
        with self._stats_lock:
            setattr(self.stats, field_name, getattr(self.stats, field_name) + 1)

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    def _read_entry(self, fingerprint: str) -> Optional[CacheEntry]:
        """Load and validate a sidecar; None if absent or corrupt."""
        sidecar = self.sidecar_path(fingerprint)
        if not sidecar.exists():
            return None

        try:
            entry = CacheEntry.from_dict(json.loads(sidecar.read_text(encoding="utf-8")))
            # Resolve against this cache directory, which may have moved
            artifact = self.artifact_path(fingerprint)
            entry.artifact_path = str(artifact)
            if entry.fingerprint != fingerprint:
                raise ValueError(f"sidecar belongs to {entry.fingerprint[:16]}")
            if artifact.stat().st_size != entry.size:
                raise ValueError(f"artifact size {artifact.stat().st_size} != {entry.size}")
            return entry
        except (OSError, ValueError, TypeError, KeyError) as e:
            logger.warning(f"Corrupt cache entry {fingerprint[:16]}: {e}; treating as miss")
            self._repair(fingerprint)
            return None

    def _repair(self, fingerprint: str) -> None:
        """Drop a dangling entry so the next store can recreate it."""
        for path in (self.sidecar_path(fingerprint), self.artifact_path(fingerprint)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to remove {path}: {e}")
        self._count("repairs")

    def get_entry(self, fingerprint: str) -> Optional[CacheEntry]:
        """Get entry metadata without counting a lookup."""
        with self._lock_for(fingerprint):
            return self._read_entry(fingerprint)

    def lookup(self, fingerprint: str) -> Optional[Path]:
        """
        Find the artifact for a fingerprint.

        Args:
            fingerprint: Unit fingerprint

        Returns:
            Path to the immutable artifact, or None on miss
        """
        with self._lock_for(fingerprint):
            entry = self._read_entry(fingerprint)

        if entry is None:
            self._count("misses")
            return None
        self._count("hits")
        return Path(entry.artifact_path)

    def store(self, fingerprint: str, data: bytes) -> Path:
        """
        Store an artifact under its fingerprint.

        Idempotent for identical bytes.

        Args:
            fingerprint: Unit fingerprint
            data: Artifact bytes

        Returns:
            Path to the stored artifact

        Raises:
            CacheConsistencyError: If the fingerprint is already stored
                with different bytes
        """
        digest = sha256_bytes(data)

        with self._lock_for(fingerprint):
            existing = self._read_entry(fingerprint)
            if existing is not None:
                if existing.sha256 != digest:
                    raise CacheConsistencyError(fingerprint, existing.sha256, digest)
                return Path(existing.artifact_path)

            shard = self._shard_dir(fingerprint)
            shard.mkdir(parents=True, exist_ok=True)
            artifact = self.artifact_path(fingerprint)

            _atomic_write(artifact, data)
            entry = CacheEntry(
                fingerprint=fingerprint,
                artifact_path=str(artifact),
                created_at=datetime.now(timezone.utc).isoformat(),
                size=len(data),
                sha256=digest,
            )
            _atomic_write(
                self.sidecar_path(fingerprint),
                json.dumps(entry.to_dict(), indent=2).encode("utf-8"),
            )

        self._count("stores")
        logger.debug(f"Cached artifact {fingerprint[:16]} ({len(data)} bytes)")
        return artifact

    def iter_entries(self) -> Iterator[CacheEntry]:
        """Iterate over all committed entries."""
        if not self.artifacts_dir.exists():
            return
        for sidecar in sorted(self.artifacts_dir.glob(f"*/*{SIDECAR_SUFFIX}")):
            fingerprint = sidecar.name[: -len(SIDECAR_SUFFIX)]
            entry = self.get_entry(fingerprint)
            if entry is not None:
                yield entry

    # -------------------------------------------------------------------------
    # Sessions and pruning
    # -------------------------------------------------------------------------

    @contextmanager
    def _process_lock(self, exclusive: bool):
        """
        Advisory lock on ``<cache_dir>/.lock`` shared by every process using
        this cache: build sessions hold it shared, prune and clear exclusive.
        """
        if fcntl is None:
            yield
            return
        with open(self.lock_path, "a+b") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            try:
                yield
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    @contextmanager
    def build_session(self):
        """
        Mark an active build consulting the cache.

        Pruning (in this or another process) waits until no session is
        active; new sessions wait while a prune is running.
        """
        with self._session_cond:
            while self._pruning:
                self._session_cond.wait()
            self._sessions += 1
        try:
            with self._process_lock(exclusive=False):
                yield self
        finally:
            with self._session_cond:
                self._sessions -= 1
                self._session_cond.notify_all()

    @contextmanager
    def _maintenance(self):
        """Exclusive access for removing entries."""
        with self._session_cond:
            while self._sessions > 0 or self._pruning:
                self._session_cond.wait()
            self._pruning = True
        try:
            with self._process_lock(exclusive=True):
                yield
        finally:
            with self._session_cond:
                self._pruning = False
                self._session_cond.notify_all()

    def prune(self, keep: Iterable[str] = (), older_than: Optional[float] = None) -> int:
        """
        Remove entries not referenced by the current document.

        Args:
            keep: Fingerprints that must survive
            older_than: Only remove entries older than this many seconds

        Returns:
            Number of entries removed
        """
        with self._maintenance():
            removed = self._prune_entries(set(keep), older_than)
        if removed:
            logger.info(f"Pruned {removed} cache entries")
        return removed

    def _prune_entries(self, keep_set: Set[str], older_than: Optional[float]) -> int:
        removed = 0
        cutoff = time.time() - older_than if older_than is not None else None
        for sidecar in list(self.artifacts_dir.glob(f"*/*{SIDECAR_SUFFIX}")):
            fingerprint = sidecar.name[: -len(SIDECAR_SUFFIX)]
            if fingerprint in keep_set:
                continue
            if cutoff is not None:
                try:
                    if sidecar.stat().st_mtime > cutoff:
                        continue
                except OSError:
                    continue
            with self._lock_for(fingerprint):
                self._remove_entry(fingerprint)
            removed += 1

        # Leftovers of interrupted writes
        for tmp in self.artifacts_dir.glob("*/.*.tmp"):
            try:
                tmp.unlink()
            except OSError:
                pass
        return removed

    def _remove_entry(self, fingerprint: str) -> None:
        # Sidecar first: once it is gone the entry is no longer visible
        for path in (self.sidecar_path(fingerprint), self.artifact_path(fingerprint)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass

    def clear(self) -> int:
        """
        Clear all cached entries.

        Returns:
            Number of entries removed
        """
        with self._maintenance():
            count = self._prune_entries(set(), None)
            shutil.rmtree(self.artifacts_dir, ignore_errors=True)
            self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        return count

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics (disk usage plus process counters)."""
        entries: List[CacheEntry] = list(self.iter_entries())
        total_size = sum(e.size for e in entries)
        return {
            "entry_count": len(entries),
            "total_size_bytes": total_size,
            "total_size_mb": round(total_size / (1024 * 1024), 2),
            "cache_dir": str(self.cache_dir),
            **self.stats.to_dict(),
        }
