"""A simulated process data segment with a movable program break.

The segment is a flat byte array laid out as::

    F pppp...pppp L
    | |          |
    | start_brk  start_mmap
    memory start

``F`` and ``L`` are one-page guard fences filled with random bytes. A copy
of the ``L`` fence also sits on the first page boundary at or after the
current break, and is moved every time :meth:`SimulatedMemory.sbrk` moves
the break. Addresses are byte offsets into the array.
"""

from __future__ import annotations

import random
import threading
import time

PAGE_SIZE = 4096
PAGE_FENCE = 1
PAGES_AVAILABLE = 16384

FIRST_FENCE_DAMAGED = 0x01
BRK_FENCE_DAMAGED = 0x02
LAST_FENCE_DAMAGED = 0x04

_FENCE_STATE = {True: "ok", False: "DAMAGED"}


class OutOfMemory(MemoryError):
    """The requested break lies beyond the available pages."""


class FenceCorruptedError(RuntimeError):
    """A guard fence around the data segment has been overwritten."""


def _round_to_next_page(address: int) -> int:
    return -(-address // PAGE_SIZE) * PAGE_SIZE


class SimulatedMemory:
    """A data segment grown and shrunk with :meth:`sbrk`, guarded by fences."""

    def __init__(self, pages_available: int = PAGES_AVAILABLE, seed: int | None = None) -> None:
        if pages_available < 1:
            raise ValueError("pages_available must be at least 1")
        rng = random.Random(seed)
        self._first_fence = rng.randbytes(PAGE_SIZE)
        self._last_fence = rng.randbytes(PAGE_SIZE)

        self._memory = bytearray(PAGE_SIZE * (pages_available + 2 * PAGE_FENCE))
        self.start_brk = PAGE_FENCE * PAGE_SIZE
        self.brk = self.start_brk
        self.start_mmap = (PAGE_FENCE + pages_available) * PAGE_SIZE

        self._put_fence(0, self._first_fence)
        self._put_fence(self.start_mmap, self._last_fence)
        self._put_fence(self.brk, self._last_fence)

        self._lock = threading.RLock()
        self._started = time.monotonic()
        self.sbrk_executions = 0

    def _put_fence(self, address: int, fence: bytes) -> None:
        self._memory[address:address + PAGE_SIZE] = fence

    def _fence_intact(self, address: int, fence: bytes) -> bool:
        return self._memory[address:address + PAGE_SIZE] == fence

    def _fences(self) -> tuple[bool, bool, bool]:
        return (
            self._fence_intact(0, self._first_fence),
            self._fence_intact(_round_to_next_page(self.brk), self._last_fence),
            self._fence_intact(self.start_mmap, self._last_fence),
        )

    def sbrk(self, delta: int) -> int:
        """Move the break by ``delta`` bytes and return the previous break.

        A move below the start of the segment leaves the break where it is.
        Raises :class:`OutOfMemory` when the new break would reach the end
        of the segment and :class:`FenceCorruptedError` when a fence is damaged.
        """
        with self._lock:
            if not all(self._fences()):
                raise FenceCorruptedError("heap fences have been damaged")
            try:
                current = self.brk
                if current + delta < self.start_brk:
                    return current
                if current + delta >= self.start_mmap:
                    raise OutOfMemory(f"cannot move the break by {delta} bytes")
                self.brk = current + delta
                self._put_fence(_round_to_next_page(self.brk), self._last_fence)
                return current
            finally:
                self.sbrk_executions += 1

    def check_fences_integrity(self) -> int:
        """Return 0 if all fences are intact, else a mask of ``*_FENCE_DAMAGED`` bits."""
        with self._lock:
            ok_first, ok_brk, ok_last = self._fences()
        status = 0
        if not ok_first:
            status |= FIRST_FENCE_DAMAGED
        if not ok_brk:
            status |= BRK_FENCE_DAMAGED
        if not ok_last:
            status |= LAST_FENCE_DAMAGED
        return status

    def reserved_memory(self) -> int:
        """Number of bytes currently obtained through :meth:`sbrk`."""
        with self._lock:
            return self.brk - self.start_brk

    def _check_range(self, address: int, size: int) -> None:
        if size < 0 or address < 0 or address + size > len(self._memory):
            raise IndexError(f"range {address}+{size} lies outside the simulated memory")

    def read(self, address: int, size: int) -> bytes:
        """Return ``size`` bytes starting at ``address``."""
        self._check_range(address, size)
        return bytes(self._memory[address:address + size])

    def write(self, address: int, data: bytes) -> None:
        """Store ``data`` starting at ``address``."""
        data = bytes(data)
        self._check_range(address, len(data))
        self._memory[address:address + len(data)] = data

    def summary(self) -> str:
        """Return a report on the fences, the reservation and sbrk usage."""
        with self._lock:
            ok_first, ok_brk, ok_last = self._fences()
            elapsed = time.monotonic() - self._started
            lines = [
                "### Heap fences:",
                f"    Start fence ........: [{_FENCE_STATE[ok_first]}]",
                f"    Fence at brk .......: [{_FENCE_STATE[ok_brk]}]",
                f"    End fence ..........: [{_FENCE_STATE[ok_last]}]",
                "### Summary:",
                f"    Total available memory: {self.start_mmap - self.start_brk} bytes",
                f"    Reserved by sbrk .....: {self.brk - self.start_brk} bytes",
                f"    Elapsed time .........: {elapsed:.3f} seconds",
                f"    sbrk calls ...........: {self.sbrk_executions}",
            ]
        return "\n".join(lines) + "\n"