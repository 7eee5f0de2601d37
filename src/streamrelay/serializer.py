"""Per-key FIFO serialization for conversation threads."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Hashable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import anyio


@dataclass(slots=True)
class _KeySlot:
    gate: anyio.Semaphore = field(default_factory=lambda: anyio.Semaphore(1))
    users: int = 0


class ThreadSerializer:
    """Run work for one key strictly one-at-a-time in arrival order.

    Different keys never block each other. A key's slot exists only while
    someone holds or waits for it, so long-running bots do not accumulate
    one entry per thread ever seen.
    """

    def __init__(self) -> None:
        self._slots: dict[Hashable, _KeySlot] = {}

    def __len__(self) -> int:
        return len(self._slots)

    def is_busy(self, key: Hashable) -> bool:
        return key in self._slots

    def waiting(self, key: Hashable) -> int:
        slot = self._slots.get(key)
        if slot is None:
            return 0
        return max(0, slot.users - 1)

    async def acquire(self, key: Hashable) -> None:
        slot = self._slots.get(key)
        if slot is None:
            slot = _KeySlot()
            self._slots[key] = slot
        slot.users += 1
        try:
            await slot.gate.acquire()
        except BaseException:
            self._drop_user(key, slot)
            raise

    def release(self, key: Hashable) -> None:
        slot = self._slots.get(key)
        if slot is None:
            raise RuntimeError(f"release of unheld key {key!r}")
        slot.gate.release()
        self._drop_user(key, slot)

    def _drop_user(self, key: Hashable, slot: _KeySlot) -> None:
        slot.users -= 1
        if slot.users <= 0 and self._slots.get(key) is slot:
            del self._slots[key]

    @asynccontextmanager
    async def lock(self, key: Hashable) -> AsyncIterator[None]:
        await self.acquire(key)
        try:
            yield
        finally:
            self.release(key)

    async def with_lock[T](
        self,
        key: Hashable,
        fn: Callable[..., Awaitable[T]],
        *args: object,
    ) -> T:
        async with self.lock(key):
            return await fn(*args)
