"""Tests for the per-key lock registry."""

import asyncio

import pytest

from calldesk.shared.locks import KeyedLock


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_is_exclusive(self) -> None:
        locks = KeyedLock()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("call-1"):
                order.append(f"{name}:enter")
                await asyncio.sleep(0.01)
                order.append(f"{name}:exit")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a:enter", "a:exit", "b:enter", "b:exit"]

    @pytest.mark.asyncio
    async def test_different_keys_overlap(self) -> None:
        locks = KeyedLock()
        both_held = asyncio.Event()

        async def worker(key: str, other: str) -> None:
            async with locks.hold(key):
                await asyncio.sleep(0.01)
                if locks.is_held(other):
                    both_held.set()
                await asyncio.sleep(0.01)

        await asyncio.gather(worker("call-1", "call-2"), worker("call-2", "call-1"))

        assert both_held.is_set()

    @pytest.mark.asyncio
    async def test_idle_entries_are_released(self) -> None:
        locks = KeyedLock()

        async with locks.hold("call-1"):
            assert len(locks) == 1
            assert locks.is_held("call-1")

        assert len(locks) == 0
        assert not locks.is_held("call-1")

    @pytest.mark.asyncio
    async def test_released_on_error(self) -> None:
        locks = KeyedLock()

        with pytest.raises(RuntimeError):
            async with locks.hold("call-1"):
                raise RuntimeError("boom")

        assert len(locks) == 0
