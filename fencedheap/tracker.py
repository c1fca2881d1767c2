"""Tracked heap functions with call limits, fences and leak accounting.

:class:`ResourceTracker` stands in for ``malloc``, ``calloc``, ``realloc``,
``free``, ``strdup`` and ``strndup``. Every block it hands out is a
``memoryview`` into a buffer with a 32-byte fence on each side, and the
whole registry is checked for damage at the start of every call. Limits can
make calls fail on purpose: per-call size, cumulative size per function,
number of calls allowed to succeed, and a global heap cap.

Reports go to a text stream. A report of severity
:attr:`Severity.FAILURE` raises :class:`HeapFailure`.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional, TextIO, Union

from .resources import (
    BLOCK_FENCE_SIZE,
    HEAP_UNLIMITED,
    SIZE_MAX,
    HeapFunction,
    Resource,
    ResourceKind,
    ResourceRegistry,
    Severity,
    ValidationError,
    source_location,
)

Text = Union[str, bytes, bytearray, memoryview]


class HeapFailure(RuntimeError):
    """A tracked function was misused or the tracked heap is damaged."""

    def __init__(self, text: str, detail: Optional[str] = None) -> None:
        super().__init__(text if detail is None else f"{text} [{detail}]")
        self.text = text
        self.detail = detail


class _Outcome(Enum):
    DISABLED = auto()
    NO_MEMORY = auto()
    NO_MEMORY_DUE_LIMIT = auto()
    SINGLESHOT_LIMIT = auto()
    CUMULATIVE_LIMIT = auto()
    SUCCESS_LIMIT = auto()
    SUCCESSFUL = auto()
    NULL = auto()
    INVALID_POINTER = auto()
    FAILED = auto()
    HEAP_BROKEN = auto()
    DATA_OUT_OF_BOUNDS = auto()


_SPECIFIC_TEXTS = {
    (HeapFunction.REALLOC, _Outcome.NO_MEMORY): (
        "No free memory for realloc; the block size is unchanged"
    ),
    (HeapFunction.REALLOC, _Outcome.NO_MEMORY_DUE_LIMIT): (
        "No free memory for realloc; the block size is unchanged (heap limit)"
    ),
    (HeapFunction.MALLOC, _Outcome.SUCCESSFUL): "A memory block of the requested size has been allocated",
    (HeapFunction.CALLOC, _Outcome.SUCCESSFUL): "A memory block of the requested size has been allocated",
    (HeapFunction.REALLOC, _Outcome.SUCCESSFUL): "The memory block has been resized",
    (HeapFunction.STRDUP, _Outcome.SUCCESSFUL): "Memory for the copy of the text has been allocated",
    (HeapFunction.STRNDUP, _Outcome.SUCCESSFUL): (
        "Memory for the bounded copy of the text has been allocated"
    ),
    (HeapFunction.FREE, _Outcome.SUCCESSFUL): "The memory block has been released",
    (HeapFunction.FOPEN, _Outcome.SUCCESSFUL): "The file has been opened",
    (HeapFunction.FCLOSE, _Outcome.SUCCESSFUL): "The file has been closed",
    (HeapFunction.FREE, _Outcome.NULL): "Attempt to release a NULL pointer",
    (HeapFunction.STRDUP, _Outcome.NULL): "Attempt to duplicate a NULL string",
    (HeapFunction.STRNDUP, _Outcome.NULL): "Attempt to duplicate a NULL string",
    (HeapFunction.FCLOSE, _Outcome.NULL): "Attempt to close a stream given as NULL",
    (HeapFunction.FREE, _Outcome.INVALID_POINTER): (
        "Attempt to release a block that was never allocated (unknown pointer)"
    ),
    (HeapFunction.REALLOC, _Outcome.INVALID_POINTER): (
        "Attempt to resize a block that was never allocated (unknown pointer)"
    ),
    (HeapFunction.FCLOSE, _Outcome.INVALID_POINTER): (
        "Attempt to close a file that was never opened (unknown stream)"
    ),
    (HeapFunction.FOPEN, _Outcome.FAILED): "The file could not be opened",
}


def _message_text(function: Optional[HeapFunction], outcome: _Outcome) -> str:
    specific = _SPECIFIC_TEXTS.get((function, outcome))
    if specific is not None:
        return specific
    name = function.name.lower() if function is not None else "?"
    generic = {
        _Outcome.DISABLED: "Heap functions are disabled; do not use them",
        _Outcome.NO_MEMORY: f"No free memory for {name}",
        _Outcome.NO_MEMORY_DUE_LIMIT: f"No free memory for {name} (heap limit)",
        _Outcome.SINGLESHOT_LIMIT: f"Single allocation limit exceeded in a call to {name}()",
        _Outcome.CUMULATIVE_LIMIT: f"Cumulative allocation limit exceeded for {name}()",
        _Outcome.SUCCESS_LIMIT: (
            f"{name}() failed because the number of calls allowed to succeed is exhausted"
        ),
        _Outcome.HEAP_BROKEN: (
            "Heap damage detected. One of the earlier operations went outside its memory."
        ),
        _Outcome.DATA_OUT_OF_BOUNDS: "A memory block boundary has been violated.",
    }
    return generic.get(outcome, "Unspecified error")


@dataclass
class _Limit:
    singleshot: int = HEAP_UNLIMITED
    cumulative_limit: int = HEAP_UNLIMITED
    cumulative_sum: int = 0
    success_limit: int = HEAP_UNLIMITED
    success_counter: int = 0


def _c_string(text: Text) -> bytes:
    data = text.encode("utf-8") if isinstance(text, str) else bytes(text)
    return data.split(b"\0", 1)[0]


class ResourceTracker:
    """Heap functions that record every block and enforce configurable limits."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream if stream is not None else sys.stdout
        self.resources = ResourceRegistry()
        self.lowest_reported_severity = Severity.INFORMATION
        self.global_limit_active = False
        self.global_limit_value = 0
        self.global_disable = False
        self.limits: dict[HeapFunction, _Limit] = {}
        self.reset_limits()

    # -- settings ------------------------------------------------------

    def reset_limits(self) -> None:
        """Lift every limit and re-enable the heap functions."""
        self.global_limit_active = False
        self.global_disable = False
        self.limits = {function: _Limit() for function in HeapFunction}

    def set_global_limit(self, limit: int) -> None:
        """Cap the total tracked heap; ``HEAP_UNLIMITED`` removes the cap."""
        if limit == HEAP_UNLIMITED:
            self.global_limit_active = False
        else:
            self.global_limit_value = limit
            self.global_limit_active = True

    def disable_all_functions(self, disable: bool) -> None:
        """Make any further heap call a failure while ``disable`` is true."""
        self.global_disable = bool(disable)

    def set_singleshot_limit(self, function: HeapFunction, limit: int) -> None:
        """Largest number of bytes one call of ``function`` may allocate."""
        self.limits[HeapFunction(function)].singleshot = limit

    def set_cumulative_limit(self, function: HeapFunction, limit: int) -> None:
        """Largest number of bytes ``function`` may hold allocated at once."""
        self.limits[HeapFunction(function)].cumulative_limit = limit

    def set_success_limit(self, function: HeapFunction, limit: int) -> None:
        """Number of calls of ``function`` that may still succeed."""
        self.limits[HeapFunction(function)].success_limit = limit

    def set_reported_severity_level(self, level: Severity) -> None:
        """Report only messages of ``level`` or higher."""
        self.lowest_reported_severity = Severity(level)

    # -- reporting and checks ------------------------------------------

    def _report(
        self,
        severity: Severity,
        text: str,
        source_file: Optional[str] = None,
        source_line: int = -1,
        detail: Optional[str] = None,
    ) -> None:
        if severity >= self.lowest_reported_severity:
            location = source_location(source_file, source_line)
            where = f" for {location}" if location else ""
            suffix = f" [{detail}]" if detail is not None else ""
            self.stream.write(f"Resource analysis: {severity.label}{where}: {text}{suffix}\n")
            self.stream.flush()
        if severity is Severity.FAILURE:
            raise HeapFailure(text, detail)

    def _notify(
        self,
        severity: Severity,
        function: Optional[HeapFunction],
        outcome: _Outcome,
        source_file: Optional[str],
        source_line: int,
        detail: Optional[str] = None,
    ) -> None:
        self._report(severity, _message_text(function, outcome), source_file, source_line, detail)

    def _validate_heap(self, source_file: Optional[str], source_line: int) -> None:
        damaged = self.resources.validate()
        if damaged is None:
            return
        resource, error = damaged
        caller = source_location(source_file, source_line)
        if error in (
            ValidationError.INVALID_MAGIC1,
            ValidationError.INVALID_MAGIC2,
            ValidationError.INVALID_CHECKSUM,
        ):
            detail = (
                "The heap holds a damaged memory block. The problem was noticed while "
                f"executing {caller}. Description: {error.description}"
            )
            self._notify(Severity.FAILURE, None, _Outcome.HEAP_BROKEN, None, -1, detail)
        origin = source_location(resource.source_file, resource.source_line)
        detail = (
            f"The block allocated at {origin} has been damaged; the damage was noticed "
            f"while executing {caller}. Description: {error.description}"
        )
        self._notify(Severity.FAILURE, None, _Outcome.DATA_OUT_OF_BOUNDS, None, -1, detail)

    def _check_enabled(self, source_file: Optional[str], source_line: int) -> None:
        if self.global_disable:
            self._notify(Severity.FAILURE, None, _Outcome.DISABLED, source_file, source_line)

    def _count_success(
        self, function: HeapFunction, source_file: Optional[str], source_line: int
    ) -> bool:
        limit = self.limits[function]
        limit.success_counter += 1
        if limit.success_counter > limit.success_limit:
            self._notify(
                Severity.INFORMATION, function, _Outcome.SUCCESS_LIMIT, source_file, source_line
            )
            return False
        return True

    def _within_limits(
        self,
        function: HeapFunction,
        size: int,
        cumulative_request: int,
        source_file: Optional[str],
        source_line: int,
    ) -> bool:
        limit = self.limits[function]
        if size > limit.singleshot:
            self._notify(
                Severity.INFORMATION, function, _Outcome.SINGLESHOT_LIMIT,
                source_file, source_line, f"it is {limit.singleshot} bytes",
            )
            return False
        if cumulative_request + limit.cumulative_sum > limit.cumulative_limit:
            self._notify(
                Severity.INFORMATION, function, _Outcome.CUMULATIVE_LIMIT,
                source_file, source_line, f"it is {limit.cumulative_limit} bytes",
            )
            return False
        if self.global_limit_active and self.resources.current_heap_size + size > self.global_limit_value:
            self._notify(
                Severity.INFORMATION, function, _Outcome.NO_MEMORY_DUE_LIMIT, source_file, source_line
            )
            return False
        return True

    def _new_buffer(
        self, function: HeapFunction, size: int, source_file: Optional[str], source_line: int
    ) -> Optional[bytearray]:
        try:
            return bytearray(size + 2 * BLOCK_FENCE_SIZE)
        except MemoryError:
            self._notify(Severity.INFORMATION, function, _Outcome.NO_MEMORY, source_file, source_line)
            return None

    def _allocate(
        self, function: HeapFunction, size: int, source_file: Optional[str], source_line: int
    ) -> Optional[memoryview]:
        buffer = self._new_buffer(function, size, source_file, source_line)
        if buffer is None:
            return None
        resource = Resource(
            ResourceKind.MEMORY,
            source_file=source_file,
            source_line=source_line,
            size=size,
            base_pointer=buffer,
            allocated_by=function,
        )
        user = resource.place_fences()
        self.resources.add(resource)
        self.limits[function].cumulative_sum += size
        self._notify(Severity.INFORMATION, function, _Outcome.SUCCESSFUL, source_file, source_line)
        return user

    def _find_block(self, pointer: memoryview) -> Optional[Resource]:
        for resource in self.resources:
            if resource.kind is ResourceKind.MEMORY and resource.user_pointer is pointer:
                return resource
        return None

    # -- heap functions ------------------------------------------------

    def malloc(
        self, number: int, source_file: Optional[str] = None, source_line: int = -1
    ) -> Optional[memoryview]:
        """Allocate ``number`` bytes; return the block or ``None`` on failure."""
        function = HeapFunction.MALLOC
        self._validate_heap(source_file, source_line)
        if number < 0 or number > HEAP_UNLIMITED:
            return None
        self._check_enabled(source_file, source_line)
        if not self._count_success(function, source_file, source_line):
            return None
        if not self._within_limits(function, number, number, source_file, source_line):
            return None
        return self._allocate(function, number, source_file, source_line)

    def calloc(
        self, number: int, size: int, source_file: Optional[str] = None, source_line: int = -1
    ) -> Optional[memoryview]:
        """Allocate ``number * size`` zeroed bytes; return the block or ``None``."""
        function = HeapFunction.CALLOC
        self._validate_heap(source_file, source_line)
        total = number * size
        if total < 0 or total > HEAP_UNLIMITED:
            return None
        self._check_enabled(source_file, source_line)
        if not self._count_success(function, source_file, source_line):
            return None
        # The cumulative check is made against the element count, not the byte total.
        if not self._within_limits(function, total, number, source_file, source_line):
            return None
        return self._allocate(function, total, source_file, source_line)

    def realloc(
        self,
        pointer: Optional[memoryview],
        number: int,
        source_file: Optional[str] = None,
        source_line: int = -1,
    ) -> Optional[memoryview]:
        """Resize a block (or allocate one when ``pointer`` is ``None``)."""
        function = HeapFunction.REALLOC
        self._validate_heap(source_file, source_line)
        if number < 0 or number > HEAP_UNLIMITED:
            return None
        self._check_enabled(source_file, source_line)
        if not self._count_success(function, source_file, source_line):
            return None

        resource = self._find_block(pointer) if pointer is not None else None
        if pointer is not None and resource is None:
            self._notify(Severity.FAILURE, function, _Outcome.INVALID_POINTER, source_file, source_line)

        delta = number - resource.size if resource is not None else number
        if delta == 0:
            return pointer

        limit = self.limits[function]
        growing = resource is not None and number > resource.size
        if (resource is None and number > limit.singleshot) or (growing and delta > limit.singleshot):
            self._notify(
                Severity.INFORMATION, function, _Outcome.SINGLESHOT_LIMIT,
                source_file, source_line, f"it is {limit.singleshot} bytes",
            )
            return None
        if (resource is None and number + limit.cumulative_sum > limit.cumulative_limit) or (
            growing and delta + limit.cumulative_sum > limit.cumulative_limit
        ):
            self._notify(
                Severity.INFORMATION, function, _Outcome.CUMULATIVE_LIMIT,
                source_file, source_line, f"it is {limit.cumulative_limit} bytes",
            )
            return None
        if self.global_limit_active and self.resources.current_heap_size + delta > self.global_limit_value:
            self._notify(
                Severity.INFORMATION, function, _Outcome.NO_MEMORY_DUE_LIMIT, source_file, source_line
            )
            return None

        if resource is None:
            return self._allocate(function, number, source_file, source_line)

        buffer = self._new_buffer(function, number, source_file, source_line)
        if buffer is None:
            return None
        kept = min(len(buffer), len(resource.base_pointer))
        buffer[:kept] = resource.base_pointer[:kept]

        old_size = resource.size
        old_function = resource.allocated_by
        resource.allocated_by = function
        resource.size = number
        resource.base_pointer = buffer
        resource.source_file = source_file
        resource.source_line = source_line
        user = resource.place_fences()
        resource.update_checksum()

        self.resources.current_heap_size += number - old_size
        self.limits[old_function].cumulative_sum -= old_size
        limit.cumulative_sum += number
        self.resources.top_heap_size = max(
            self.resources.current_heap_size, self.resources.top_heap_size
        )
        self._notify(Severity.INFORMATION, function, _Outcome.SUCCESSFUL, source_file, source_line)
        return user

    def free(
        self,
        pointer: Optional[memoryview],
        source_file: Optional[str] = None,
        source_line: int = -1,
    ) -> None:
        """Release a block; an unknown pointer is a failure, ``None`` a warning."""
        function = HeapFunction.FREE
        self._validate_heap(source_file, source_line)
        self._check_enabled(source_file, source_line)
        if pointer is None:
            self._notify(Severity.WARNING, function, _Outcome.NULL, source_file, source_line)
            return None
        resource = self._find_block(pointer)
        if resource is None:
            self._notify(Severity.FAILURE, function, _Outcome.INVALID_POINTER, source_file, source_line)
        self.resources.current_heap_size -= resource.size
        self.limits[resource.allocated_by].cumulative_sum -= resource.size
        self.resources.remove(resource)
        self._notify(Severity.INFORMATION, function, _Outcome.SUCCESSFUL, source_file, source_line)
        return None

    def strdup(
        self, text: Optional[Text], source_file: Optional[str] = None, source_line: int = -1
    ) -> Optional[memoryview]:
        """Copy ``text`` with a terminating NUL into a new tracked block."""
        function = HeapFunction.STRDUP
        self._validate_heap(source_file, source_line)
        self._check_enabled(source_file, source_line)
        if text is None:
            self._notify(Severity.FAILURE, function, _Outcome.NULL, source_file, source_line)
        if not self._count_success(function, source_file, source_line):
            return None
        data = _c_string(text)
        size = len(data) + 1
        # The cumulative check for strdup counts no requested bytes.
        if not self._within_limits(function, size, 0, source_file, source_line):
            return None
        user = self._allocate(function, size, source_file, source_line)
        if user is not None:
            user[:] = data + b"\0"
        return user

    def strndup(
        self,
        text: Optional[Text],
        number: int,
        source_file: Optional[str] = None,
        source_line: int = -1,
    ) -> Optional[memoryview]:
        """Copy at most ``number`` bytes of ``text`` plus a NUL into a new block."""
        function = HeapFunction.STRNDUP
        self._validate_heap(source_file, source_line)
        self._check_enabled(source_file, source_line)
        if text is None:
            self._notify(Severity.FAILURE, function, _Outcome.NULL, source_file, source_line)
        if not self._count_success(function, source_file, source_line):
            return None
        number %= SIZE_MAX + 1
        data = _c_string(text)[:number]
        if not self._within_limits(function, len(data), number, source_file, source_line):
            return None
        user = self._allocate(function, len(data) + 1, source_file, source_line)
        if user is not None:
            user[:] = data + b"\0"
        return user

    # -- inspection ----------------------------------------------------

    def leak_size(self) -> int:
        """Total bytes in blocks that are still allocated."""
        return self.resources.leak_size()

    def block_size(self, pointer: object) -> int:
        """Size of the block starting at ``pointer``, else ``UNKNOWN_POINTER``."""
        return self.resources.block_size(pointer)