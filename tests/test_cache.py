"""
Tests for the content-addressed artifact cache.
"""
import asyncio
import os
import time

import pytest

from packhost.errors import DigestMismatchError, PackUnreachableError
from packhost.observability import get_metrics
from packhost.packs.cache import ArtifactCache
from packhost.packs.models import PackDigest, VerifiedArtifact

DATA = b'{"pack_id": "demo"}'
DIGEST = PackDigest.of(DATA)


class CountingFetch:
    """fetch_fn that counts calls and optionally stalls."""

    def __init__(self, data: bytes = DATA, delay: float = 0.0):
        self.data = data
        self.delay = delay
        self.calls = 0

    async def __call__(self) -> VerifiedArtifact:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return VerifiedArtifact(digest=PackDigest.of(self.data), data=self.data)


class TestSingleFlight:
    """Concurrent callers share one fetch."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_fetch_once(self):
        cache = ArtifactCache()
        fetch = CountingFetch(delay=0.05)

        results = await asyncio.gather(*(cache.get_or_fetch(DIGEST, fetch) for _ in range(10)))

        assert fetch.calls == 1
        assert all(r.data == DATA for r in results)
        assert all(r is results[0] for r in results)

    @pytest.mark.asyncio
    async def test_memory_hit_skips_fetch(self):
        cache = ArtifactCache()
        fetch = CountingFetch()
        await cache.get_or_fetch(DIGEST, fetch)
        await cache.get_or_fetch(DIGEST, fetch)

        assert fetch.calls == 1
        assert cache.stats().hits == 1
        assert DIGEST in cache

    @pytest.mark.asyncio
    async def test_failure_shared_by_waiters_and_not_cached(self):
        cache = ArtifactCache()
        calls = 0

        async def failing():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.02)
            raise PackUnreachableError("down", retryable=True)

        results = await asyncio.gather(
            *(cache.get_or_fetch(DIGEST, failing) for _ in range(3)),
            return_exceptions=True,
        )
        assert calls == 1
        assert all(isinstance(r, PackUnreachableError) for r in results)

        fetch = CountingFetch()
        artifact = await cache.get_or_fetch(DIGEST, fetch)
        assert artifact.data == DATA
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_wrong_artifact_rejected(self):
        cache = ArtifactCache()
        with pytest.raises(DigestMismatchError):
            await cache.get_or_fetch(DIGEST, CountingFetch(data=b"other"))
        assert cache.peek(DIGEST) is None


class TestDiskTier:
    """Tests for the on-disk tier."""

    @pytest.mark.asyncio
    async def test_written_under_algorithm_and_value(self, tmp_path):
        cache = ArtifactCache(tmp_path)
        await cache.get_or_fetch(DIGEST, CountingFetch())
        assert (tmp_path / "sha256" / DIGEST.value).read_bytes() == DATA

    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path):
        await ArtifactCache(tmp_path).get_or_fetch(DIGEST, CountingFetch())

        restarted = ArtifactCache(tmp_path)
        fetch = CountingFetch()
        artifact = await restarted.get_or_fetch(DIGEST, fetch)

        assert artifact.data == DATA
        assert fetch.calls == 0
        assert restarted.stats().disk_hits == 1

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_refetched(self, tmp_path):
        await ArtifactCache(tmp_path).get_or_fetch(DIGEST, CountingFetch())
        (tmp_path / "sha256" / DIGEST.value).write_bytes(b"bit rot")

        restarted = ArtifactCache(tmp_path)
        fetch = CountingFetch()
        artifact = await restarted.get_or_fetch(DIGEST, fetch)

        assert artifact.data == DATA
        assert fetch.calls == 1
        assert restarted.stats().corruptions == 1
        assert get_metrics().cache_corruptions_total == 1
        assert (tmp_path / "sha256" / DIGEST.value).read_bytes() == DATA


class TestBounds:
    """Tests for memory bounds and eviction."""

    @pytest.mark.asyncio
    async def test_entry_count_bound(self):
        cache = ArtifactCache(max_entries=2)
        for i in range(4):
            data = f"pack-{i}".encode()
            await cache.get_or_fetch(PackDigest.of(data), CountingFetch(data=data))
        assert cache.stats().entries == 2

    @pytest.mark.asyncio
    async def test_byte_bound(self):
        cache = ArtifactCache(max_bytes=10)
        big = b"x" * 64
        artifact = await cache.get_or_fetch(PackDigest.of(big), CountingFetch(data=big))
        assert artifact.data == big
        assert cache.peek(PackDigest.of(big)) is None

    @pytest.mark.asyncio
    async def test_evict_removes_both_tiers(self, tmp_path):
        cache = ArtifactCache(tmp_path)
        await cache.get_or_fetch(DIGEST, CountingFetch())
        assert cache.evict(DIGEST)
        assert cache.peek(DIGEST) is None
        assert not (tmp_path / "sha256" / DIGEST.value).exists()
        assert not cache.evict(DIGEST)


def _disk_file(root, data):
    return root / "sha256" / PackDigest.of(data).value


def _age(path, seconds):
    stamp = time.time() - seconds
    os.utime(path, (stamp, stamp))


class TestDiskBounds:
    """Tests for the on-disk size and age sweep."""

    @pytest.mark.asyncio
    async def test_oldest_file_dropped_over_size(self, tmp_path):
        cache = ArtifactCache(tmp_path, max_disk_bytes=25)
        old, mid, new = b"a" * 10, b"b" * 10, b"c" * 10
        await cache.get_or_fetch(PackDigest.of(old), CountingFetch(data=old))
        await cache.get_or_fetch(PackDigest.of(mid), CountingFetch(data=mid))
        _age(_disk_file(tmp_path, old), 100)
        _age(_disk_file(tmp_path, mid), 50)

        await cache.get_or_fetch(PackDigest.of(new), CountingFetch(data=new))

        assert not _disk_file(tmp_path, old).exists()
        assert _disk_file(tmp_path, mid).exists()
        assert _disk_file(tmp_path, new).exists()
        assert cache.stats().disk_evictions == 1

    @pytest.mark.asyncio
    async def test_expired_files_dropped(self, tmp_path):
        cache = ArtifactCache(tmp_path, max_age_seconds=3600)
        stale, fresh = b"stale pack", b"fresh pack"
        await cache.get_or_fetch(PackDigest.of(stale), CountingFetch(data=stale))
        _age(_disk_file(tmp_path, stale), 7200)

        await cache.get_or_fetch(PackDigest.of(fresh), CountingFetch(data=fresh))

        assert not _disk_file(tmp_path, stale).exists()
        assert _disk_file(tmp_path, fresh).exists()

    @pytest.mark.asyncio
    async def test_new_file_kept_even_when_over_bound(self, tmp_path):
        cache = ArtifactCache(tmp_path, max_disk_bytes=1)
        await cache.get_or_fetch(DIGEST, CountingFetch())
        assert _disk_file(tmp_path, DATA).exists()

    @pytest.mark.asyncio
    async def test_disk_hit_refreshes_recency(self, tmp_path):
        await ArtifactCache(tmp_path).get_or_fetch(DIGEST, CountingFetch())
        path = _disk_file(tmp_path, DATA)
        _age(path, 1000)

        await ArtifactCache(tmp_path).get_or_fetch(DIGEST, CountingFetch())

        assert path.stat().st_mtime > time.time() - 100

    @pytest.mark.asyncio
    async def test_prune_without_disk_tier(self):
        assert await ArtifactCache().prune_disk() == 0
