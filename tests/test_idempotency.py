import asyncio

from restopos.middleware.idempotency import _KeyedLocks


def test_keyed_lock_dropped_after_last_holder():
    async def run():
        locks = _KeyedLocks()
        await locks.acquire("k")
        waiter = asyncio.ensure_future(locks.acquire("k"))
        await asyncio.sleep(0)
        assert locks._refs["k"] == 2

        await locks.release("k")
        await waiter
        assert "k" in locks._locks

        await locks.release("k")
        return locks

    locks = asyncio.run(run())
    assert locks._locks == {}
    assert locks._refs == {}


def test_distinct_keys_do_not_accumulate():
    async def run():
        locks = _KeyedLocks()
        for i in range(50):
            await locks.acquire(f"key-{i}")
            await locks.release(f"key-{i}")
        return locks

    locks = asyncio.run(run())
    assert locks._locks == {}
