"""Bookkeeping of tracked resources: fenced memory blocks and open streams.

Every tracked resource is described by a :class:`Resource` record guarded by
two magic numbers and a checksum. Memory blocks additionally carry a 32-byte
fence before and after the user data, so that writes outside a block can be
detected by :meth:`Resource.validate`.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Iterator, Optional

MAGIC1 = 0xC8FCCDB505C6AC13
MAGIC2 = 0xECE706D3D0533953

BLOCK_FENCE_SIZE = 32
HEAD_FENCE = bytes(range(1, BLOCK_FENCE_SIZE + 1))
TAIL_FENCE = bytes(range(BLOCK_FENCE_SIZE, 0, -1))

SIZE_MAX = (1 << 64) - 1
HEAP_UNLIMITED = SIZE_MAX >> 1
UNKNOWN_POINTER = SIZE_MAX >> 1


class HeapFunction(IntEnum):
    """Library functions whose calls are tracked."""

    MALLOC = 1
    FREE = 2
    CALLOC = 3
    REALLOC = 4
    STRDUP = 5
    STRNDUP = 6
    EXIT = 7
    FOPEN = 8
    FCLOSE = 9

    @property
    def is_allocation(self) -> bool:
        """True for the functions that hand out memory blocks."""
        return self in _ALLOCATION_FUNCTIONS


_ALLOCATION_FUNCTIONS = frozenset(
    {
        HeapFunction.MALLOC,
        HeapFunction.CALLOC,
        HeapFunction.REALLOC,
        HeapFunction.STRDUP,
        HeapFunction.STRNDUP,
    }
)


class Severity(IntEnum):
    """Severity of a report; reports below the configured level are silent."""

    QUIET = 0
    INFORMATION = 1
    WARNING = 2
    FAILURE = 3

    @property
    def label(self) -> str:
        return _SEVERITY_LABELS[self]


_SEVERITY_LABELS = {
    Severity.QUIET: "<quiet>",
    Severity.INFORMATION: "Information",
    Severity.WARNING: "Warning",
    Severity.FAILURE: "FAILURE",
}


class ResourceKind(IntEnum):
    """What a tracked resource is."""

    MEMORY = 0
    STREAM = 1


class ValidationError(IntEnum):
    """Outcome of checking one resource record."""

    SUCCESS = 0
    INVALID_MAGIC1 = 1
    INVALID_MAGIC2 = 2
    INVALID_CHECKSUM = 3
    INVALID_HEAD_FENCE = 4
    INVALID_TAIL_FENCE = 5

    @property
    def description(self) -> str:
        return _VALIDATION_DESCRIPTIONS[self]


_VALIDATION_DESCRIPTIONS = {
    ValidationError.SUCCESS: "Ok (SUCCESS)",
    ValidationError.INVALID_MAGIC1: "Start of the resource descriptor overwritten (INVALID_MAGIC1)",
    ValidationError.INVALID_MAGIC2: "End of the resource descriptor overwritten (INVALID_MAGIC2)",
    ValidationError.INVALID_CHECKSUM: "Checksum of the resource descriptor overwritten (INVALID_CHECKSUM)",
    ValidationError.INVALID_HEAD_FENCE: (
        "Memory before the allocated block has been modified (INVALID_HEAD_FENCE)"
    ),
    ValidationError.INVALID_TAIL_FENCE: (
        "Memory after the allocated block has been modified (INVALID_TAIL_FENCE)"
    ),
}


def checksum(data: bytes) -> int:
    """Rolling 32-bit checksum used to guard resource records."""
    chk = 0
    for byte in data:
        carry = 0 if chk & 0x80000000 else 1
        chk = (((chk ^ byte) << 1) & 0xFFFFFFFF) ^ carry
    return chk


def _only_name(path: str) -> str:
    return path.rsplit("/", 1)[-1]


def source_location(source_name: Optional[str], source_line: int) -> str:
    """Format ``file:line`` with the directory stripped, or ``""`` if unknown."""
    if source_name is None or source_line == -1:
        return ""
    return f"{_only_name(source_name)}:{source_line}"


def _ident(obj: Any) -> int:
    return 0 if obj is None else id(obj)


def _text_bytes(text: Optional[str]) -> bytes:
    if text is None:
        return struct.pack("<i", -1)
    encoded = text.encode("utf-8")
    return struct.pack("<i", len(encoded)) + encoded


@dataclass(eq=False)
class Resource:
    """A tracked memory block or stream, with its integrity guards."""

    kind: ResourceKind
    source_file: Optional[str] = None
    source_line: int = -1
    size: int = 0
    base_pointer: Optional[bytearray] = None
    allocated_by: Optional[HeapFunction] = None
    head_fence: bytes = HEAD_FENCE
    tail_fence: bytes = TAIL_FENCE
    name: Optional[str] = None
    mode: Optional[str] = None
    stream: Any = None
    user_pointer: Optional[memoryview] = None
    magic1: int = MAGIC1
    magic2: int = MAGIC2
    checksum: int = field(default=0)

    def _packed(self) -> bytes:
        allocated = 0 if self.allocated_by is None else int(self.allocated_by)
        parts = [
            struct.pack(
                "<QiQQi",
                self.magic1 & 0xFFFFFFFFFFFFFFFF,
                int(self.kind),
                self.size & 0xFFFFFFFFFFFFFFFF,
                _ident(self.base_pointer),
                allocated,
            ),
            bytes(self.head_fence),
            bytes(self.tail_fence),
            _text_bytes(self.source_file),
            _text_bytes(self.name),
            _text_bytes(self.mode),
            struct.pack(
                "<qQQ",
                self.source_line,
                _ident(self.stream),
                self.magic2 & 0xFFFFFFFFFFFFFFFF,
            ),
        ]
        return b"".join(parts)

    def update_checksum(self) -> None:
        """Recompute the checksum over the current record contents."""
        self.checksum = checksum(self._packed())

    def place_fences(self) -> memoryview:
        """Write both fences into the block buffer and return the user-data view."""
        if self.kind is not ResourceKind.MEMORY or self.base_pointer is None:
            raise ValueError("only memory resources with a buffer carry fences")
        needed = self.size + 2 * BLOCK_FENCE_SIZE
        if len(self.base_pointer) < needed:
            raise ValueError(f"buffer holds {len(self.base_pointer)} bytes, {needed} needed")
        tail = BLOCK_FENCE_SIZE + self.size
        self.base_pointer[:BLOCK_FENCE_SIZE] = self.head_fence
        self.base_pointer[tail:tail + BLOCK_FENCE_SIZE] = self.tail_fence
        self.user_pointer = memoryview(self.base_pointer)[BLOCK_FENCE_SIZE:tail]
        return self.user_pointer

    def validate(self) -> ValidationError:
        """Check the magic numbers, the checksum and, for memory, the fences."""
        if self.magic1 != MAGIC1:
            return ValidationError.INVALID_MAGIC1
        if self.magic2 != MAGIC2:
            return ValidationError.INVALID_MAGIC2
        if checksum(self._packed()) != self.checksum:
            return ValidationError.INVALID_CHECKSUM
        if self.kind is ResourceKind.MEMORY and self.base_pointer is not None:
            tail = BLOCK_FENCE_SIZE + self.size
            if bytes(self.base_pointer[:BLOCK_FENCE_SIZE]) != bytes(self.head_fence):
                return ValidationError.INVALID_HEAD_FENCE
            if bytes(self.base_pointer[tail:tail + BLOCK_FENCE_SIZE]) != bytes(self.tail_fence):
                return ValidationError.INVALID_TAIL_FENCE
        return ValidationError.SUCCESS


class ResourceRegistry:
    """Ordered collection of tracked resources with heap usage statistics."""

    def __init__(self) -> None:
        self._resources: list[Resource] = []
        self.current_heap_size = 0
        self.top_heap_size = 0

    def __iter__(self) -> Iterator[Resource]:
        return iter(list(self._resources))

    def __len__(self) -> int:
        return len(self._resources)

    def add(self, resource: Resource) -> None:
        """Append a resource; memory blocks count towards the heap statistics."""
        resource.update_checksum()
        self._resources.append(resource)
        if resource.kind is ResourceKind.MEMORY:
            self.current_heap_size += resource.size
            self.top_heap_size = max(self.current_heap_size, self.top_heap_size)

    def remove(self, resource: Resource) -> None:
        """Drop a resource; raises ValueError if it is not registered."""
        for position, candidate in enumerate(self._resources):
            if candidate is resource:
                del self._resources[position]
                return
        raise ValueError("resource is not registered")

    def find(self, kind: ResourceKind, handle: Any) -> Optional[Resource]:
        """Return the first resource of ``kind`` whose handle is ``handle``."""
        for resource in self._resources:
            if resource.kind is not kind:
                continue
            if kind is ResourceKind.MEMORY and resource.base_pointer is handle:
                return resource
            if kind is ResourceKind.STREAM and resource.stream is handle:
                return resource
        return None

    def validate(self) -> Optional[tuple[Resource, ValidationError]]:
        """Return the first damaged resource and its error, or ``None``."""
        for resource in self._resources:
            error = resource.validate()
            if error is not ValidationError.SUCCESS:
                return resource, error
        return None

    def leak_size(self) -> int:
        """Total size of all memory blocks still registered."""
        return sum(r.size for r in self._resources if r.kind is ResourceKind.MEMORY)

    def block_size(self, pointer: Any) -> int:
        """Size of the block whose user data starts at ``pointer``, else UNKNOWN_POINTER."""
        for resource in self._resources:
            if resource.kind is ResourceKind.MEMORY and resource.user_pointer is pointer:
                return resource.size
        return UNKNOWN_POINTER