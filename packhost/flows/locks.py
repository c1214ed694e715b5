"""
Per-key mutual exclusion.

One asyncio.Lock per active key, created on first use and dropped when
the last holder or waiter leaves, so idle sessions cost nothing.
Serializes work within one process; unrelated keys never contend.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


@dataclass
class _Slot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    refs: int = 0


class KeyedLock:
    def __init__(self) -> None:
        self._slots: dict[str, _Slot] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = _Slot()
        slot.refs += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.refs -= 1
            if slot.refs == 0:
                del self._slots[key]

    def locked(self, key: str) -> bool:
        slot = self._slots.get(key)
        return slot is not None and slot.lock.locked()

    def __len__(self) -> int:
        return len(self._slots)
