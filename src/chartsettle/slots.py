from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass


class SlotTimeout(TimeoutError):
    pass


@dataclass(slots=True, frozen=True)
class SlotHandle:
    slot: int
    token: int


class SlotManager:
    """Bounded pool of ``capacity`` renderer slots.

    The lowest free slot index is handed out first. Handles are single use:
    releasing one that is not currently held raises ``ValueError``.
    """

    def __init__(self, capacity: int = 1) -> None:
        if capacity < 1:
            raise ValueError("slot capacity must be >= 1")
        self.capacity = capacity
        self._cond = threading.Condition()
        self._held: dict[int, SlotHandle] = {}
        self._tokens = itertools.count(1)
        self.peak_active = 0

    @property
    def active_count(self) -> int:
        with self._cond:
            return len(self._held)

    def _take(self) -> SlotHandle:
        slot = min(index for index in range(self.capacity) if index not in self._held)
        handle = SlotHandle(slot=slot, token=next(self._tokens))
        self._held[slot] = handle
        self.peak_active = max(self.peak_active, len(self._held))
        return handle

    def try_acquire(self) -> SlotHandle | None:
        with self._cond:
            if len(self._held) >= self.capacity:
                return None
            return self._take()

    def acquire(self, timeout: float | None = None) -> SlotHandle:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while len(self._held) >= self.capacity:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise SlotTimeout(f"no free slot within {timeout}s")
                self._cond.wait(remaining)
            return self._take()

    def release(self, handle: SlotHandle) -> None:
        with self._cond:
            if self._held.get(handle.slot) != handle:
                raise ValueError(f"slot {handle.slot} is not held by this handle")
            del self._held[handle.slot]
            self._cond.notify()
