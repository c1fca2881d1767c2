import random

import pytest

from fencedheap.heap import (
    FENCE_BYTE,
    FENCE_SIZE,
    HEADER_SIZE,
    HEAP_CORRUPTED,
    HEAP_FENCES_DAMAGED,
    HEAP_NOT_INITIALISED,
    HEAP_OK,
    Heap,
    PointerType,
)
from fencedheap.sbrk import PAGE_SIZE, SimulatedMemory

PAGES = 16


@pytest.fixture
def memory():
    return SimulatedMemory(pages_available=PAGES, seed=7)


@pytest.fixture
def heap(memory):
    h = Heap(memory)
    h.setup()
    yield h
    h.clean()


def test_uninitialised_heap(memory):
    h = Heap(memory)
    assert h.validate() == HEAP_NOT_INITIALISED
    assert h.malloc(10) is None
    assert h.get_pointer_type(PAGE_SIZE) is PointerType.UNALLOCATED
    assert h.largest_used_block_size() == 0


def test_setup_gives_valid_empty_heap(heap, memory):
    assert heap.validate() == HEAP_OK
    assert heap.heap_start == memory.start_brk
    assert memory.reserved_memory() == 0


def test_malloc_zero_and_negative(heap):
    assert heap.malloc(0) is None
    assert heap.malloc(-5) is None


def test_first_pointer_layout(heap, memory):
    p = heap.malloc(100)
    assert p == heap.heap_start + HEADER_SIZE + FENCE_SIZE
    assert memory.reserved_memory() == HEADER_SIZE + 2 * FENCE_SIZE + 100
    assert memory.read(p - FENCE_SIZE, FENCE_SIZE) == bytes([FENCE_BYTE]) * FENCE_SIZE
    assert memory.read(p + 100, FENCE_SIZE) == bytes([FENCE_BYTE]) * FENCE_SIZE


def test_pointer_types(heap):
    p = heap.malloc(100)
    assert heap.get_pointer_type(None) is PointerType.NULL
    assert heap.get_pointer_type(p) is PointerType.VALID
    assert heap.get_pointer_type(p + 1) is PointerType.INSIDE_DATA_BLOCK
    assert heap.get_pointer_type(p + 99) is PointerType.INSIDE_DATA_BLOCK
    assert heap.get_pointer_type(p - 1) is PointerType.INSIDE_FENCES
    assert heap.get_pointer_type(p + 100) is PointerType.INSIDE_FENCES
    assert heap.get_pointer_type(p - FENCE_SIZE - 1) is PointerType.CONTROL_BLOCK
    assert heap.get_pointer_type(heap.heap_start) is PointerType.CONTROL_BLOCK
    assert heap.get_pointer_type(p + 100 + FENCE_SIZE) is PointerType.UNALLOCATED


def test_data_round_trip(heap, memory):
    p = heap.malloc(11)
    memory.write(p, b"hello world")
    assert memory.read(p, 11) == b"hello world"
    assert heap.validate() == HEAP_OK


def test_overflow_damages_fence(heap, memory):
    p = heap.malloc(32)
    memory.write(p + 32, b"\x00")
    assert heap.validate() == HEAP_FENCES_DAMAGED
    assert heap.get_pointer_type(p) is PointerType.HEAP_CORRUPTED
    assert heap.malloc(10) is None
    assert heap.largest_used_block_size() == 0


def test_underflow_damages_fence(heap, memory):
    p = heap.malloc(32)
    memory.write(p - 1, b"\x01")
    assert heap.validate() == HEAP_FENCES_DAMAGED


def test_damaged_control_block_magic(heap, memory):
    heap.malloc(20)
    q = heap.malloc(20)
    header = q - FENCE_SIZE - HEADER_SIZE
    memory.write(header + 28, b"\x00")
    assert heap.validate() == HEAP_CORRUPTED
    assert heap.get_pointer_type(q) is PointerType.HEAP_CORRUPTED
    assert heap.get_pointer_type(heap.heap_start + heap.heap_size + 10) is PointerType.UNALLOCATED


def test_damaged_control_block_checksum(heap, memory):
    heap.malloc(20)
    q = heap.malloc(20)
    header = q - FENCE_SIZE - HEADER_SIZE
    memory.write(header + 1, b"\x05")
    assert heap.validate() == HEAP_CORRUPTED
    assert heap.realloc(q, 40) is None


def test_free_and_reuse(heap):
    p1 = heap.malloc(100)
    heap.malloc(100)
    heap.free(p1)
    assert heap.get_pointer_type(p1) is PointerType.UNALLOCATED
    p3 = heap.malloc(50)
    assert p3 == p1
    assert heap.validate() == HEAP_OK


def test_free_merges_neighbours(heap, memory):
    p1 = heap.malloc(100)
    p2 = heap.malloc(100)
    heap.malloc(100)
    reserved = memory.reserved_memory()
    heap.free(p1)
    heap.free(p2)
    assert heap.validate() == HEAP_OK
    p4 = heap.malloc(200)
    assert p4 == p1
    assert memory.reserved_memory() == reserved


def test_double_free_and_invalid_free(heap):
    p = heap.malloc(64)
    heap.free(p + 1)
    assert heap.get_pointer_type(p) is PointerType.VALID
    heap.free(p)
    heap.free(p)
    heap.free(None)
    assert heap.validate() == HEAP_OK
    assert heap.get_pointer_type(p) is PointerType.UNALLOCATED


def test_calloc_zeroes_reused_memory(heap, memory):
    p = heap.malloc(40)
    heap.malloc(8)
    memory.write(p, b"\xff" * 40)
    heap.free(p)
    q = heap.calloc(10, 4)
    assert q == p
    assert memory.read(q, 40) == bytes(40)


def test_calloc_rejects_zero(heap):
    assert heap.calloc(0, 5) is None
    assert heap.calloc(5, 0) is None


def test_out_of_memory(heap, memory):
    assert heap.malloc(PAGES * PAGE_SIZE) is None
    assert heap.validate() == HEAP_OK
    assert memory.reserved_memory() == 0
    assert heap.malloc(16) is not None
    assert heap.largest_used_block_size() == 16


def test_realloc_null_allocates(heap):
    p = heap.realloc(None, 30)
    assert heap.get_pointer_type(p) is PointerType.VALID
    assert heap.realloc(None, 0) is None


def test_realloc_zero_frees(heap):
    p = heap.malloc(30)
    heap.malloc(30)
    assert heap.realloc(p, 0) is None
    assert heap.get_pointer_type(p) is PointerType.UNALLOCATED


def test_realloc_invalid_pointer(heap):
    p = heap.malloc(30)
    assert heap.realloc(p + 3, 60) is None
    assert heap.get_pointer_type(p) is PointerType.VALID


def test_realloc_shrink_in_place(heap, memory):
    p = heap.malloc(100)
    memory.write(p, bytes(range(100)))
    assert heap.realloc(p, 40) == p
    assert heap.validate() == HEAP_OK
    assert heap.get_pointer_type(p + 40) is PointerType.INSIDE_FENCES
    assert memory.read(p, 40) == bytes(range(40))
    assert heap.realloc(p, 40) == p


def test_realloc_grow_last_block(heap, memory):
    p = heap.malloc(50)
    memory.write(p, b"x" * 50)
    before = memory.reserved_memory()
    assert heap.realloc(p, 500) == p
    assert memory.reserved_memory() > before
    assert memory.read(p, 50) == b"x" * 50
    assert heap.largest_used_block_size() == 500
    assert heap.validate() == HEAP_OK


def test_realloc_grow_into_free_next(heap, memory):
    p = heap.malloc(50)
    q = heap.malloc(200)
    heap.malloc(10)
    memory.write(p, b"y" * 50)
    heap.free(q)
    assert heap.realloc(p, 150) == p
    assert memory.read(p, 50) == b"y" * 50
    assert heap.validate() == HEAP_OK
    assert heap.get_pointer_type(q) is PointerType.INSIDE_DATA_BLOCK


def test_realloc_grow_moves_when_blocked(heap, memory):
    p = heap.malloc(50)
    heap.malloc(50)
    memory.write(p, b"z" * 50)
    r = heap.realloc(p, 300)
    assert r != p
    assert memory.read(r, 50) == b"z" * 50
    assert heap.get_pointer_type(p) is PointerType.UNALLOCATED
    assert heap.get_pointer_type(r) is PointerType.VALID


def test_largest_used_block_size(heap):
    assert heap.largest_used_block_size() == 0
    heap.malloc(10)
    big = heap.malloc(300)
    heap.malloc(50)
    assert heap.largest_used_block_size() == 300
    heap.free(big)
    assert heap.largest_used_block_size() == 50


def test_clean_returns_memory(heap, memory):
    heap.malloc(1000)
    heap.clean()
    assert heap.validate() == HEAP_NOT_INITIALISED
    assert memory.reserved_memory() == 0
    assert memory.check_fences_integrity() == 0


def test_random_operations_keep_heap_consistent(heap, memory):
    rng = random.Random(1234)
    live = {}
    lost_data = []
    allocations = 0
    for _ in range(400):
        op = rng.random()
        if op < 0.45 or not live:
            size = rng.randint(1, 600)
            p = heap.malloc(size)
            if p is not None:
                allocations += 1
                data = bytes(rng.randrange(256) for _ in range(size))
                memory.write(p, data)
                live[p] = data
        elif op < 0.75:
            p = rng.choice(list(live))
            heap.free(p)
            del live[p]
        else:
            p = rng.choice(list(live))
            size = rng.randint(1, 800)
            r = heap.realloc(p, size)
            if r is not None:
                old = live.pop(p)
                kept = old[:size]
                if memory.read(r, len(kept)) != kept:
                    lost_data.append((p, r, size))
                data = bytes(rng.randrange(256) for _ in range(size))
                memory.write(r, data)
                live[r] = data
        assert heap.validate() == HEAP_OK
        assert all(heap.get_pointer_type(p) is PointerType.VALID for p in live)
        assert {p: memory.read(p, len(d)) for p, d in live.items()} == live
        expected = max((len(d) for d in live.values()), default=0)
        assert heap.largest_used_block_size() == expected
    assert lost_data == []
    assert allocations > 0
    assert memory.check_fences_integrity() == 0