import pytest

from fencedheap.sbrk import (
    BRK_FENCE_DAMAGED,
    FIRST_FENCE_DAMAGED,
    LAST_FENCE_DAMAGED,
    PAGE_SIZE,
    FenceCorruptedError,
    OutOfMemory,
    SimulatedMemory,
)


@pytest.fixture
def memory():
    return SimulatedMemory(pages_available=4, seed=1)


def test_fresh_memory_is_intact_and_empty(memory):
    assert memory.check_fences_integrity() == 0
    assert memory.reserved_memory() == 0


def test_sbrk_zero_returns_start_of_segment(memory):
    assert memory.sbrk(0) == PAGE_SIZE
    assert memory.reserved_memory() == 0


def test_sbrk_returns_previous_break(memory):
    start = memory.sbrk(0)
    assert memory.sbrk(100) == start
    assert memory.reserved_memory() == 100
    assert memory.sbrk(0) == start + 100


def test_shrinking_moves_break_back(memory):
    start = memory.sbrk(0)
    memory.sbrk(100)
    assert memory.sbrk(-50) == start + 100
    assert memory.reserved_memory() == 50
    assert memory.check_fences_integrity() == 0


def test_shrinking_below_start_leaves_break(memory):
    memory.sbrk(10)
    before = memory.sbrk(0)
    assert memory.sbrk(-1000) == before
    assert memory.reserved_memory() == 10


def test_growing_to_end_raises_out_of_memory(memory):
    total = memory.start_mmap - memory.start_brk
    with pytest.raises(OutOfMemory):
        memory.sbrk(total)
    assert memory.reserved_memory() == 0


def test_growing_just_below_end_succeeds(memory):
    total = memory.start_mmap - memory.start_brk
    memory.sbrk(total - 1)
    assert memory.reserved_memory() == total - 1
    assert memory.check_fences_integrity() == 0


def test_out_of_memory_is_a_memory_error(memory):
    with pytest.raises(MemoryError):
        memory.sbrk(10 * PAGE_SIZE)


def test_write_inside_reservation_keeps_fences(memory):
    start = memory.sbrk(2 * PAGE_SIZE)
    payload = b"\xab" * (2 * PAGE_SIZE)
    memory.write(start, payload)
    assert memory.read(start, len(payload)) == payload
    assert memory.check_fences_integrity() == 0


def test_slack_up_to_page_boundary_is_not_fenced(memory):
    start = memory.sbrk(10)
    memory.write(start, bytes(PAGE_SIZE))
    assert memory.check_fences_integrity() == 0


def test_damaging_brk_fence_is_detected(memory):
    start = memory.sbrk(10)
    original = memory.read(start + PAGE_SIZE, 1)
    memory.write(start + PAGE_SIZE, bytes([original[0] ^ 0xFF]))
    assert memory.check_fences_integrity() == BRK_FENCE_DAMAGED
    with pytest.raises(FenceCorruptedError):
        memory.sbrk(1)


def test_damaging_first_fence_is_detected(memory):
    original = memory.read(0, 1)
    memory.write(0, bytes([original[0] ^ 0x01]))
    assert memory.check_fences_integrity() == FIRST_FENCE_DAMAGED


def test_damaging_first_and_last_fence(memory):
    first = memory.read(0, 1)
    memory.write(0, bytes([first[0] ^ 0x01]))
    last = memory.read(memory.start_mmap + 5, 1)
    memory.write(memory.start_mmap + 5, bytes([last[0] ^ 0x01]))
    assert memory.check_fences_integrity() == FIRST_FENCE_DAMAGED | LAST_FENCE_DAMAGED


def test_moving_break_restores_fence_at_new_position(memory):
    start = memory.sbrk(0)
    memory.write(start + PAGE_SIZE, bytes(PAGE_SIZE))
    memory.sbrk(PAGE_SIZE - 1)
    assert memory.check_fences_integrity() == 0
    assert memory.read(start, PAGE_SIZE) == memory.read(memory.start_mmap, PAGE_SIZE)


def test_same_seed_gives_same_fences():
    a = SimulatedMemory(pages_available=2, seed=7)
    b = SimulatedMemory(pages_available=2, seed=7)
    assert a.read(0, PAGE_SIZE) == b.read(0, PAGE_SIZE)
    assert a.read(a.start_mmap, PAGE_SIZE) == b.read(b.start_mmap, PAGE_SIZE)


def test_read_outside_memory_raises(memory):
    with pytest.raises(IndexError):
        memory.read(memory.start_mmap + PAGE_SIZE, 1)
    with pytest.raises(IndexError):
        memory.write(-1, b"x")


def test_invalid_page_count_raises():
    with pytest.raises(ValueError):
        SimulatedMemory(pages_available=0)


def test_summary_reports_calls_and_reservation(memory):
    memory.sbrk(100)
    with pytest.raises(OutOfMemory):
        memory.sbrk(10 * PAGE_SIZE)
    report = memory.summary()
    assert memory.sbrk_executions == 2
    assert "sbrk calls ...........: 2" in report
    assert "Reserved by sbrk .....: 100 bytes" in report
    assert "DAMAGED" not in report


def test_summary_reports_damage(memory):
    original = memory.read(0, 1)
    memory.write(0, bytes([original[0] ^ 0x01]))
    assert "Start fence ........: [DAMAGED]" in memory.summary()