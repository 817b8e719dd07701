"""Tests for keyed locking."""

import asyncio

import pytest

from solpay.utils.locks import KeyedLock, LockTimeoutError


class TestKeyedLock:
    """Tests for the KeyedLock registry."""

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        """Critical sections on one key never overlap."""
        locks = KeyedLock("test")
        active = 0
        peak = 0

        async def worker():
            nonlocal active, peak
            async with locks.hold("deposit-1"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(5)))
        assert peak == 1

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        locks = KeyedLock("test")
        async with locks.hold("a"):
            async with locks.hold("b", timeout=0.1):
                assert locks.locked("a")
                assert locks.locked("b")

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Waiting past the timeout raises LockTimeoutError."""
        locks = KeyedLock("test", timeout=0.05)
        async with locks.hold("busy"):
            with pytest.raises(LockTimeoutError):
                async with locks.hold("busy"):
                    pass

    @pytest.mark.asyncio
    async def test_released_after_error(self):
        locks = KeyedLock("test")
        with pytest.raises(RuntimeError):
            async with locks.hold("k"):
                raise RuntimeError("boom")
        assert not locks.locked("k")

    @pytest.mark.asyncio
    async def test_idle_entries_dropped(self):
        """Keys seen once do not accumulate in the registry."""
        locks = KeyedLock("test")
        for i in range(200):
            async with locks.hold(("solana", f"tx-{i}")):
                assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_entry_kept_while_waiters_queued(self):
        locks = KeyedLock("test")
        order = []

        async def worker(n):
            async with locks.hold("shared"):
                order.append(n)
                await asyncio.sleep(0.01)
                assert len(locks) == 1

        await asyncio.gather(*(worker(n) for n in range(3)))

        assert sorted(order) == [0, 1, 2]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_timed_out_waiter_dropped(self):
        locks = KeyedLock("test", timeout=0.05)
        async with locks.hold("busy"):
            with pytest.raises(LockTimeoutError):
                async with locks.hold("busy"):
                    pass
            assert locks.locked("busy")
        assert len(locks) == 0
