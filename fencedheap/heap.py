"""A first-fit heap allocator living inside a :class:`SimulatedMemory`.

Every block starts with a packed control header followed by a fence, the
user data and a second fence::

    | header (36 B) | fence (16 B) | data (size B) | fence (16 B) |

Headers form a doubly linked list and carry a magic number and a byte-sum
checksum so that :meth:`Heap.validate` can detect damage. Pointers are byte
addresses in the simulated memory; ``None`` plays the part of a null pointer.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator, Optional

from .sbrk import OutOfMemory, SimulatedMemory

_HEADER = struct.Struct("<QiQQIi")

HEADER_SIZE = _HEADER.size
FENCE_SIZE = 16
FENCE_BYTE = 0xDE
MAGIC = 0xCAFEBABE

HEAP_OK = 0
HEAP_FENCES_DAMAGED = 1
HEAP_NOT_INITIALISED = 2
HEAP_CORRUPTED = 3

_FENCE = bytes([FENCE_BYTE]) * FENCE_SIZE
_OVERHEAD = HEADER_SIZE + 2 * FENCE_SIZE
_HASHED_BYTES = HEADER_SIZE - 4


class PointerType(IntEnum):
    """Classification of an address with respect to the heap."""

    NULL = 0
    HEAP_CORRUPTED = 1
    CONTROL_BLOCK = 2
    INSIDE_FENCES = 3
    INSIDE_DATA_BLOCK = 4
    UNALLOCATED = 5
    VALID = 6


def _compute_hash(raw: bytes) -> int:
    """Sum of the header bytes before the checksum, taken as signed chars."""
    return sum(b - 256 if b >= 128 else b for b in raw[:_HASHED_BYTES])


@dataclass
class _Header:
    address: int
    size: int = 0
    free: int = 0
    next: Optional[int] = None
    prev: Optional[int] = None
    magic: int = MAGIC
    code: int = 0

    @property
    def fence_start(self) -> int:
        return self.address + HEADER_SIZE

    @property
    def user(self) -> int:
        return self.address + HEADER_SIZE + FENCE_SIZE


class Heap:
    """A heap allocator with guard fences and checksummed control blocks."""

    def __init__(self, memory: SimulatedMemory | None = None) -> None:
        self.memory = memory if memory is not None else SimulatedMemory()
        self.heap_start: Optional[int] = None
        self.heap_size = 0
        self.first_block: Optional[int] = None

    # -- header access -------------------------------------------------

    def _load(self, address: int) -> _Header:
        size, free, nxt, prev, magic, code = _HEADER.unpack(self.memory.read(address, HEADER_SIZE))
        return _Header(address, size, free, nxt or None, prev or None, magic, code)

    def _store(self, block: _Header) -> None:
        fields = (block.size, block.free, block.next or 0, block.prev or 0, block.magic)
        raw = _HEADER.pack(*fields, 0)
        block.code = _compute_hash(raw)
        self.memory.write(block.address, _HEADER.pack(*fields, block.code))

    def _set_fences(self, block: _Header) -> None:
        self.memory.write(block.fence_start, _FENCE)
        self.memory.write(block.user + block.size, _FENCE)

    def _block_of(self, pointer: int) -> _Header:
        return self._load(pointer - FENCE_SIZE - HEADER_SIZE)

    def _header_in_heap(self, address: int) -> bool:
        start = self.heap_start
        return start <= address and address + HEADER_SIZE <= start + self.heap_size

    def _blocks(self) -> Iterator[_Header]:
        address = self.first_block
        while address is not None:
            block = self._load(address)
            yield block
            address = block.next

    # -- lifecycle -----------------------------------------------------

    def setup(self) -> None:
        """Anchor the heap at the current program break."""
        self.heap_start = self.memory.sbrk(0)
        self.heap_size = 0
        self.first_block = None

    def clean(self) -> None:
        """Return all heap memory to the segment and forget every block."""
        if self.heap_start is not None:
            self.memory.sbrk(-self.heap_size)
        self.heap_start = None
        self.heap_size = 0
        self.first_block = None

    # -- allocation ----------------------------------------------------

    def _request_space(self, size: int) -> Optional[_Header]:
        total = _OVERHEAD + size
        try:
            self.memory.sbrk(total)
        except OutOfMemory:
            return None
        block = _Header(self.heap_start + self.heap_size, size=size)
        if self.first_block is None:
            self.first_block = block.address
        else:
            last = None
            for last in self._blocks():
                pass
            last.next = block.address
            self._store(last)
            block.prev = last.address
        self._store(block)
        self.heap_size += total
        self._set_fences(block)
        return block

    def _find_fit(self, size: int) -> Optional[_Header]:
        return next((b for b in self._blocks() if b.free and b.size >= size), None)

    def malloc(self, size: int) -> Optional[int]:
        """Allocate ``size`` bytes; return the data address or ``None``."""
        if size <= 0 or self.validate() != HEAP_OK:
            return None
        block = self._find_fit(size)
        if block is None:
            block = self._request_space(size)
            if block is None:
                return None
        else:
            block.free = 0
            block.size = size
            self._store(block)
            self._set_fences(block)
        return block.user

    def calloc(self, nmemb: int, size: int) -> Optional[int]:
        """Allocate ``nmemb * size`` zeroed bytes; return the address or ``None``."""
        if nmemb <= 0 or size <= 0 or self.validate() != HEAP_OK:
            return None
        total = nmemb * size
        pointer = self.malloc(total)
        if pointer is not None:
            self.memory.write(pointer, bytes(total))
        return pointer

    def _merge_with_next(self, block: _Header) -> None:
        if block.next is None:
            return
        nxt = self._load(block.next)
        if not nxt.free:
            return
        block.size += _OVERHEAD + nxt.size
        block.next = nxt.next
        self._store(block)
        if nxt.next is not None:
            follower = self._load(nxt.next)
            follower.prev = block.address
            self._store(follower)
        self._set_fences(block)

    def _merge_with_prev(self, block: _Header) -> None:
        if block.prev is None:
            return
        prev = self._load(block.prev)
        if not prev.free:
            return
        prev.size += _OVERHEAD + block.size
        prev.next = block.next
        self._store(prev)
        if block.next is not None:
            follower = self._load(block.next)
            follower.prev = prev.address
            self._store(follower)
        self._set_fences(prev)

    def free(self, pointer: Optional[int]) -> None:
        """Release a block; invalid pointers and a damaged heap are ignored."""
        if self.validate() != HEAP_OK or pointer is None:
            return
        if self.get_pointer_type(pointer) is not PointerType.VALID:
            return
        block = self._block_of(pointer)
        if block.free:
            return
        block.free = 1
        if block.next is not None:
            true_size = block.next - (block.address + _OVERHEAD)
            if true_size > block.size:
                block.size = true_size
        self._store(block)
        self._merge_with_next(block)
        self._merge_with_prev(block)

    def realloc(self, pointer: Optional[int], size: int) -> Optional[int]:
        """Resize a block, in place when possible; return its address or ``None``."""
        if self.validate() != HEAP_OK:
            return None
        if pointer is None:
            return None if size <= 0 else self.malloc(size)
        if self.get_pointer_type(pointer) is not PointerType.VALID:
            return None
        if size < 0:
            return None

        block = self._block_of(pointer)
        if size == 0:
            self.free(pointer)
            return None
        if size == block.size:
            return pointer
        if size < block.size:
            block.size = size
            self._store(block)
            self._set_fences(block)
            return pointer

        needed = size - block.size
        if block.next is not None:
            nxt = self._load(block.next)
            if nxt.free:
                fits_in_next = nxt.size >= needed
                fits_before_follower = (
                    nxt.next is not None and nxt.next - block.user - FENCE_SIZE >= size
                )
                if fits_in_next or fits_before_follower:
                    block.next = nxt.next
                    block.free = 0
                    block.size = size
                    self._store(block)
                    if nxt.next is not None:
                        follower = self._load(nxt.next)
                        follower.prev = block.address
                        self._store(follower)
                    self._set_fences(block)
                    return pointer
        else:
            try:
                self.memory.sbrk(needed + FENCE_SIZE)
            except OutOfMemory:
                return None
            self.heap_size += needed + FENCE_SIZE
            block.size = size
            self._store(block)
            self._set_fences(block)
            return pointer

        new_pointer = self.malloc(size)
        if new_pointer is None:
            return None
        self.memory.write(new_pointer, self.memory.read(pointer, block.size))
        self.free(pointer)
        return new_pointer

    # -- inspection ----------------------------------------------------

    def validate(self) -> int:
        """Check the heap.

        Returns ``HEAP_OK`` (0), ``HEAP_FENCES_DAMAGED`` (1),
        ``HEAP_NOT_INITIALISED`` (2) or ``HEAP_CORRUPTED`` (3).
        """
        if self.heap_start is None:
            return HEAP_NOT_INITIALISED
        address = self.first_block
        while address is not None:
            if not self._header_in_heap(address):
                return HEAP_CORRUPTED
            curr = self._load(address)
            if curr.prev is not None:
                if not self._header_in_heap(curr.prev):
                    return HEAP_CORRUPTED
                if curr.magic != MAGIC:
                    return HEAP_CORRUPTED
                if curr.code != _compute_hash(self.memory.read(address, HEADER_SIZE)):
                    return HEAP_CORRUPTED
                if self._load(curr.prev).next != address:
                    return HEAP_CORRUPTED
            if curr.next is not None:
                if not self._header_in_heap(curr.next):
                    return HEAP_CORRUPTED
                if self._load(curr.next).prev != address:
                    return HEAP_CORRUPTED
            if not curr.free:
                try:
                    before = self.memory.read(curr.fence_start, FENCE_SIZE)
                    after = self.memory.read(curr.user + curr.size, FENCE_SIZE)
                except IndexError:
                    return HEAP_FENCES_DAMAGED
                if before != _FENCE or after != _FENCE:
                    return HEAP_FENCES_DAMAGED
            address = curr.next
        return HEAP_OK

    def _internal_pointer_type(self, pointer: int) -> PointerType:
        if self.heap_start is None:
            return PointerType.UNALLOCATED
        start = self.heap_start
        if not start <= pointer < start + self.heap_size:
            return PointerType.UNALLOCATED
        address = self.first_block
        while address is not None and self._header_in_heap(address):
            curr = self._load(address)
            user_end = curr.user + curr.size
            if address <= pointer < curr.fence_start:
                return PointerType.CONTROL_BLOCK
            if curr.fence_start <= pointer < curr.user or user_end <= pointer < user_end + FENCE_SIZE:
                return PointerType.UNALLOCATED if curr.free else PointerType.INSIDE_FENCES
            if curr.user <= pointer < user_end:
                if curr.free:
                    return PointerType.UNALLOCATED
                return PointerType.VALID if pointer == curr.user else PointerType.INSIDE_DATA_BLOCK
            address = curr.next
        return PointerType.UNALLOCATED

    def get_pointer_type(self, pointer: Optional[int]) -> PointerType:
        """Classify ``pointer`` against the current heap layout."""
        status = self.validate()
        if pointer is None:
            return PointerType.NULL
        if status == HEAP_FENCES_DAMAGED:
            return PointerType.HEAP_CORRUPTED
        if status == HEAP_NOT_INITIALISED:
            return PointerType.UNALLOCATED
        kind = self._internal_pointer_type(pointer)
        if status == HEAP_CORRUPTED:
            if kind in (
                PointerType.VALID,
                PointerType.INSIDE_DATA_BLOCK,
                PointerType.CONTROL_BLOCK,
                PointerType.INSIDE_FENCES,
            ):
                return PointerType.HEAP_CORRUPTED
            return PointerType.UNALLOCATED
        return kind

    def largest_used_block_size(self) -> int:
        """Size of the largest allocated block, or 0 if none or the heap is damaged."""
        if self.heap_start is None or self.validate() != HEAP_OK:
            return 0
        return max((b.size for b in self._blocks() if not b.free), default=0)