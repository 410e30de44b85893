import asyncio

import pytest

from interview_credits.services.account_locks import AccountLocks


@pytest.mark.asyncio
async def test_same_key_is_serialized():
    locks = AccountLocks()
    events = []

    async def worker(name):
        async with locks.hold("acct"):
            events.append(f"{name}-in")
            await asyncio.sleep(0.01)
            events.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert events in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])


@pytest.mark.asyncio
async def test_different_keys_do_not_block():
    locks = AccountLocks()
    entered = asyncio.Event()

    async def holder():
        async with locks.hold("acct-1"):
            await asyncio.wait_for(entered.wait(), timeout=1)

    async def other():
        async with locks.hold("acct-2"):
            entered.set()

    await asyncio.gather(holder(), other())


@pytest.mark.asyncio
async def test_idle_locks_are_released():
    locks = AccountLocks()
    async with locks.hold("acct"):
        assert len(locks) == 1
    assert len(locks) == 0

    with pytest.raises(RuntimeError):
        async with locks.hold("acct"):
            raise RuntimeError("boom")
    assert len(locks) == 0
