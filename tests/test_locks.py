"""Tests for per-resource locking."""

import asyncio

import pytest

from vmreconciler.identity import VIRTUAL_MACHINE_RESOURCE_KIND
from vmreconciler.locks import ResourceLockManager

KIND = VIRTUAL_MACHINE_RESOURCE_KIND


class TestResourceLockManager:
    """Tests for ResourceLockManager."""

    def test_key_includes_kind(self) -> None:
        """Test that lock keys are scoped by kind."""
        assert ResourceLockManager.key("vm1", KIND) == "azurerm_virtual_machine:vm1"

    def test_release_unheld_lock(self) -> None:
        """Test that releasing a free lock raises."""
        with pytest.raises(RuntimeError):
            ResourceLockManager().release("vm1", KIND)

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self) -> None:
        """Test that the lock is released when the block raises."""
        locks = ResourceLockManager()

        with pytest.raises(ValueError):
            async with locks.hold("vm1", KIND):
                assert locks.locked("vm1", KIND)
                raise ValueError("boom")

        assert not locks.locked("vm1", KIND)

    @pytest.mark.asyncio
    async def test_same_resource_serialized(self) -> None:
        """Test that passes on one resource never overlap."""
        locks = ResourceLockManager()
        events: list[str] = []

        async def pass_(label: str) -> None:
            async with locks.hold("vm1", KIND):
                events.append(f"{label}:start")
                await asyncio.sleep(0.01)
                events.append(f"{label}:end")

        await asyncio.gather(pass_("a"), pass_("b"))

        assert events in (
            ["a:start", "a:end", "b:start", "b:end"],
            ["b:start", "b:end", "a:start", "a:end"],
        )

    @pytest.mark.asyncio
    async def test_different_kinds_do_not_contend(self) -> None:
        """Test that the same name under another kind has its own lock."""
        locks = ResourceLockManager()

        async with locks.hold("vm1", KIND):
            async with locks.hold("vm1", "azurerm_managed_disk"):
                assert locks.locked("vm1", KIND)
                assert locks.locked("vm1", "azurerm_managed_disk")

    @pytest.mark.asyncio
    async def test_released_locks_are_dropped(self) -> None:
        """Test that a lock nobody holds or waits for is forgotten."""
        locks = ResourceLockManager()

        for name in ("vm1", "vm2", "vm3"):
            async with locks.hold(name, KIND):
                assert locks.active_keys == {locks.key(name, KIND)}

        assert locks.active_keys == frozenset()

    @pytest.mark.asyncio
    async def test_lock_kept_while_a_pass_waits(self) -> None:
        """Test that releasing with a waiter queued keeps the same lock."""
        locks = ResourceLockManager()
        acquired = asyncio.Event()

        async def waiter() -> None:
            async with locks.hold("vm1", KIND):
                acquired.set()

        await locks.acquire("vm1", KIND)
        task = asyncio.create_task(waiter())
        await asyncio.sleep(0)

        locks.release("vm1", KIND)
        assert locks.active_keys == {locks.key("vm1", KIND)}

        await task
        assert acquired.is_set()
        assert locks.active_keys == frozenset()

    @pytest.mark.asyncio
    async def test_cancelled_waiter_is_forgotten(self) -> None:
        """Test that a waiter cancelled before acquiring does not leak an entry."""
        locks = ResourceLockManager()

        await locks.acquire("vm1", KIND)
        task = asyncio.create_task(locks.acquire("vm1", KIND))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        locks.release("vm1", KIND)

        assert locks.active_keys == frozenset()
