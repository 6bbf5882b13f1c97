from __future__ import annotations

import uuid
from typing import Protocol


class SlotLock(Protocol):
    """
    Short-lived mutual exclusion per key.

    Purely a contention optimisation: the conditional slot update stays the
    source of truth, so every caller must behave correctly with `NullSlotLock`.
    """

    async def try_acquire(self, key: str, ttl_seconds: int) -> str | None:
        """Return a holder token, or None when someone else holds the key."""
        ...

    async def release(self, key: str, token: str) -> None:
        """Delete the key only if it is still held with `token`."""
        ...


class NullSlotLock:
    async def try_acquire(self, key: str, ttl_seconds: int) -> str | None:
        return uuid.uuid4().hex

    async def release(self, key: str, token: str) -> None:
        return None


def slot_lock_key(slot_id: int) -> str:
    return f"lock:slot:{slot_id}"
