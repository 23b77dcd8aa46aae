"""Per-key fill permits."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class _Slot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    refs: int = 0
    epoch: int = 0
    published: Any = None


class Permit:
    """Exclusive right to fill one key.

    ``inherited`` holds whatever the previous holder published while this
    permit's owner was queued, or None when nothing finished in between.
    """

    __slots__ = ("key", "inherited", "_manager", "_slot", "_released")

    def __init__(self, manager: "KeyLockManager", key: str, slot: _Slot, inherited: Any) -> None:
        self.key = key
        self.inherited = inherited
        self._manager = manager
        self._slot = slot
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def publish(self, value: Any) -> None:
        """Record an outcome for the waiters queued behind this permit."""
        if self._released:
            raise RuntimeError(f"permit for {self.key!r} already released")
        self._slot.epoch += 1
        self._slot.published = value

    def release(self) -> None:
        self._manager.release(self)


class KeyLockManager:
    """Grants at most one permit per key.

    Entries exist only while a key has a holder or waiters, so the table
    never grows beyond the number of keys being filled. Waiting is
    cancellable: a cancelled waiter leaves the queue without ever holding
    the permit and without disturbing the current holder.
    """

    def __init__(self) -> None:
        self._slots: dict[str, _Slot] = {}

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, key: object) -> bool:
        return key in self._slots

    def waiters(self, key: str) -> int:
        slot = self._slots.get(key)
        return slot.refs if slot else 0

    def locked(self, key: str) -> bool:
        slot = self._slots.get(key)
        return bool(slot and slot.lock.locked())

    async def acquire(self, key: str) -> Permit:
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = _Slot()
        slot.refs += 1
        seen = slot.epoch
        try:
            await slot.lock.acquire()
        except BaseException:
            self._drop(key, slot)
            raise
        inherited: Optional[Any] = slot.published if slot.epoch != seen else None
        return Permit(self, key, slot, inherited)

    def release(self, permit: Permit) -> None:
        if permit._released:
            raise RuntimeError(f"permit for {permit.key!r} already released")
        permit._released = True
        permit._slot.lock.release()
        self._drop(permit.key, permit._slot)

    def _drop(self, key: str, slot: _Slot) -> None:
        slot.refs -= 1
        if slot.refs <= 0 and self._slots.get(key) is slot:
            del self._slots[key]
