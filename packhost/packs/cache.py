"""
Content-Addressed Cache.

Verified artifact bytes keyed by digest, shared by every tenant.

Tiers:
    memory  cachetools TTLCache weighted by artifact size (LRU within
            max_bytes, entries older than max_age_seconds expire), plus
            an entry-count bound
    disk    optional ``{cache_dir}/{algorithm}/{value}`` files written
            atomically (temp file + rename). After each write the
            directory is swept: files older than max_age_seconds go,
            then the least recently used until under max_disk_bytes.
            Reads refresh a file's mtime.

Guarantees:
    - At most one fetch in flight per digest. Concurrent callers await
      the same future and share its result or its failure.
    - Failures are never cached; the next caller fetches again.
    - Disk entries are re-hashed on read. A corrupt file is deleted and
      the artifact fetched again; bad bytes are never returned.

Usage:
    cache = ArtifactCache(cache_dir=".packs")

    async def fetch() -> VerifiedArtifact:
        data = await resolvers.resolve(entry.locator)
        verifier.verify(data, entry.digest, entry.signature)
        return VerifiedArtifact(digest=entry.digest, data=data)

    artifact = await cache.get_or_fetch(entry.digest, fetch)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from cachetools import TTLCache

from packhost.errors import DigestMismatchError
from packhost.observability import get_metrics
from packhost.packs.models import PackDigest, VerifiedArtifact

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 256
DEFAULT_MAX_BYTES = 256 * 1024 * 1024
DEFAULT_MAX_AGE_SECONDS = 24 * 3600.0
DEFAULT_MAX_DISK_BYTES = 1024 * 1024 * 1024


@dataclass
class CacheStats:
    hits: int = 0
    disk_hits: int = 0
    misses: int = 0
    fetches: int = 0
    corruptions: int = 0
    disk_evictions: int = 0
    entries: int = 0
    bytes: int = 0


class ArtifactCache:
    """Digest-keyed artifact cache with single-flight fetches."""

    def __init__(
        self,
        cache_dir: str | Path | None = None,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_bytes: int = DEFAULT_MAX_BYTES,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        max_disk_bytes: int = DEFAULT_MAX_DISK_BYTES,
    ):
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.max_entries = max_entries
        self.max_age_seconds = max_age_seconds
        self.max_disk_bytes = max_disk_bytes
        self._memory: TTLCache[str, VerifiedArtifact] = TTLCache(
            maxsize=max_bytes,
            ttl=max_age_seconds,
            getsizeof=lambda artifact: max(artifact.size, 1),
        )
        self._inflight: dict[str, asyncio.Future[VerifiedArtifact]] = {}
        self._stats = CacheStats()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def get_or_fetch(
        self,
        digest: PackDigest,
        fetch_fn: Callable[[], Awaitable[VerifiedArtifact]],
    ) -> VerifiedArtifact:
        key = str(digest)

        artifact = self._memory.get(key)
        if artifact is not None:
            self._stats.hits += 1
            return artifact

        pending = self._inflight.get(key)
        if pending is not None:
            logger.debug(f"[cache] Joining in-flight fetch for {digest.short}")
            return await asyncio.shield(pending)

        future: asyncio.Future[VerifiedArtifact] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            artifact = await self._load(digest, fetch_fn)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Waiters re-raise it; mark retrieved so an unawaited future stays quiet.
            future.exception()
            raise
        else:
            future.set_result(artifact)
            return artifact
        finally:
            self._inflight.pop(key, None)

    def peek(self, digest: PackDigest) -> VerifiedArtifact | None:
        """Memory-tier lookup without fetching."""
        return self._memory.get(str(digest))

    def __contains__(self, digest: object) -> bool:
        return str(digest) in self._memory

    def stats(self) -> CacheStats:
        self._stats.entries = len(self._memory)
        self._stats.bytes = int(self._memory.currsize)
        return CacheStats(**vars(self._stats))

    def evict(self, digest: PackDigest) -> bool:
        """Drop a digest from both tiers. Returns True if anything was removed."""
        removed = self._memory.pop(str(digest), None) is not None
        path = self._disk_path(digest)
        if path is not None and path.exists():
            path.unlink(missing_ok=True)
            removed = True
        return removed

    def clear(self) -> None:
        """Drop the memory tier. Disk files are left for the next process."""
        self._memory.clear()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _load(
        self,
        digest: PackDigest,
        fetch_fn: Callable[[], Awaitable[VerifiedArtifact]],
    ) -> VerifiedArtifact:
        artifact = await self._read_disk(digest)
        if artifact is not None:
            self._stats.disk_hits += 1
            self._remember(artifact)
            return artifact

        self._stats.misses += 1
        self._stats.fetches += 1
        artifact = await fetch_fn()
        if artifact.digest != digest:
            raise DigestMismatchError(str(digest), str(artifact.digest))

        self._remember(artifact)
        await self._write_disk(artifact)
        logger.info(f"[cache] Stored {digest.short} ({artifact.size} bytes)")
        return artifact

    def _remember(self, artifact: VerifiedArtifact) -> None:
        try:
            self._memory[str(artifact.digest)] = artifact
        except ValueError:
            # Larger than the memory tier; served from disk instead.
            logger.debug(f"[cache] {artifact.digest.short} exceeds memory tier, not retained")
            return
        while len(self._memory) > self.max_entries:
            self._memory.popitem()

    def _disk_path(self, digest: PackDigest) -> Path | None:
        if self.cache_dir is None:
            return None
        return self.cache_dir / digest.algorithm / digest.value

    async def _read_disk(self, digest: PackDigest) -> VerifiedArtifact | None:
        path = self._disk_path(digest)
        if path is None:
            return None
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"[cache] Cannot read {path}: {e}")
            return None

        if not digest.matches(data):
            self._stats.corruptions += 1
            get_metrics().record_cache_corruption()
            logger.warning(f"[cache] Corrupt entry for {digest.short} at {path}, refetching")
            path.unlink(missing_ok=True)
            return None

        with contextlib.suppress(OSError):
            path.touch()
        return VerifiedArtifact(digest=digest, data=data)

    async def _write_disk(self, artifact: VerifiedArtifact) -> None:
        path = self._disk_path(artifact.digest)
        if path is None:
            return
        try:
            await asyncio.to_thread(_atomic_write, path, artifact.data)
        except OSError as e:
            logger.warning(f"[cache] Cannot persist {artifact.digest.short}: {e}")
            return
        await self.prune_disk(keep=path)

    async def prune_disk(self, keep: Path | None = None) -> int:
        """Apply the disk bounds now. Returns the number of files removed."""
        if self.cache_dir is None:
            return 0
        removed = await asyncio.to_thread(
            _sweep,
            self.cache_dir,
            self.max_disk_bytes,
            self.max_age_seconds,
            keep,
        )
        if removed:
            self._stats.disk_evictions += removed
            logger.info(f"[cache] Pruned {removed} file(s) from {self.cache_dir}")
        return removed


def _sweep(root: Path, max_bytes: int, max_age: float, keep: Path | None) -> int:
    entries = []
    for path in root.glob("*/*"):
        if not path.is_file() or path.name.startswith(".tmp-"):
            continue
        try:
            stat = path.stat()
        except FileNotFoundError:
            continue
        entries.append((stat.st_mtime, stat.st_size, path))

    # Oldest first
    entries.sort(key=lambda entry: entry[0])
    total = sum(size for _, size, _ in entries)
    cutoff = time.time() - max_age
    removed = 0
    for mtime, size, path in entries:
        if path == keep:
            continue
        if mtime >= cutoff and total <= max_bytes:
            continue
        path.unlink(missing_ok=True)
        total -= size
        removed += 1
    return removed


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
