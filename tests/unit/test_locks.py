"""Unit tests for per-key locks."""

import asyncio

from rag_orchestrator.orchestration.locks import KeyedLocks


class TestKeyedLocks:
    def test_lock_is_dropped_after_release(self) -> None:
        locks = KeyedLocks()

        async def scenario() -> tuple[bool, int]:
            async with locks.hold("t1"):
                held = "t1" in locks
            return held, len(locks)

        assert asyncio.run(scenario()) == (True, 0)

    def test_waiters_share_one_lock(self) -> None:
        locks = KeyedLocks()
        log: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("t1"):
                log.append(f"{name} in")
                await asyncio.sleep(0)
                log.append(f"{name} out")

        async def scenario() -> int:
            await asyncio.gather(worker("a"), worker("b"), worker("c"))
            return len(locks)

        assert asyncio.run(scenario()) == 0
        assert log == ["a in", "a out", "b in", "b out", "c in", "c out"]

    def test_distinct_keys_do_not_block_each_other(self) -> None:
        locks = KeyedLocks()

        async def scenario() -> int:
            async with locks.hold("t1"):
                async with locks.hold("t2"):
                    return len(locks)

        assert asyncio.run(scenario()) == 2
