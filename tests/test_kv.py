import asyncio
import time
from unittest.mock import patch

from tillguard.storage.kv import MemoryKV


def _advance(seconds):
    return patch("tillguard.storage.kv.MemoryKV._clock", return_value=time.monotonic() + seconds)


class TestMemoryKV:
    async def test_set_get_delete(self, kv):
        await kv.set("a", "1", 60)
        assert await kv.get("a") == "1"
        assert await kv.delete("a") is True
        assert await kv.delete("a") is False
        assert await kv.get("a") is None

    async def test_entries_expire(self, kv):
        await kv.set("a", "1", 5)
        with _advance(10):
            assert await kv.get("a") is None

    async def test_incr_keeps_first_expiry(self, kv):
        assert await kv.incr("n", 10) == 1
        with _advance(5):
            assert await kv.incr("n", 10) == 2
        with _advance(11):
            # Window opened by the first increment has closed
            assert await kv.incr("n", 10) == 1

    async def test_incr_is_atomic(self):
        kv = MemoryKV()
        results = await asyncio.gather(
            *(asyncio.to_thread(asyncio.run, kv.incr("n", 60)) for _ in range(20))
        )
        assert sorted(results) == list(range(1, 21))

    async def test_compare_and_set(self, kv):
        await kv.set("k", "old", 60)
        assert await kv.compare_and_set("k", "nope", "new", 60) is False
        assert await kv.compare_and_set("k", "old", "new", 60) is True
        assert await kv.get("k") == "new"
        assert await kv.compare_and_set("missing", "x", "y", 60) is False

    async def test_sweep_by_prefix(self, kv):
        await kv.set("csrf:a", "1", 1)
        await kv.set("blacklist:b", "1", 1)
        await kv.set("csrf:c", "1", 3600)
        with _advance(5):
            assert await kv.sweep("csrf:") == 1
        assert len(kv) == 2
