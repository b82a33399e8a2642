"""
Tests for the keyed asyncio locks guarding match, intent and dispute rows.
"""

import asyncio

import pytest

from fiesta_escrow.locks import KeyedLock, match_key


class TestKeyedLock:
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold(match_key(1)):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    async def test_different_keys_interleave(self):
        locks = KeyedLock()
        order = []

        async def worker(key):
            async with locks.hold(key):
                order.append(f"{key}-in")
                await asyncio.sleep(0)
                order.append(f"{key}-out")

        await asyncio.gather(worker("match:1"), worker("match:2"))
        assert order[:2] == ["match:1-in", "match:2-in"]

    async def test_released_locks_are_dropped(self):
        locks = KeyedLock()
        async with locks.hold("intent:pi_1", "match:1"):
            assert set(locks._locks) == {"intent:pi_1", "match:1"}
        assert locks._locks == {}
        assert locks._waiters == {}

    async def test_error_inside_releases(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("dispute:1"):
                raise RuntimeError("boom")
        async with locks.hold("dispute:1"):
            pass
        assert locks._locks == {}
