"""Helpers for reporting unit-test sessions and comparing memory.

:class:`TestSession` keeps pass, fail, warning and leak counters for a run
of numbered tests and writes a readable report. The module also offers
byte-level comparison helpers and context managers that put temporary
resource limits on the current process.
"""

from __future__ import annotations

import resource
import signal
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator, Optional, TextIO

_ROW_LENGTH = 16
_RULE = "-" * 56


class TestResult(IntEnum):
    """Outcome of a single check within a test."""

    __test__ = False

    NONE = 0
    PASSED = 1
    WARNING = 2
    FAILED = 3


@dataclass
class _Counts:
    passed: int = 0
    failed: int = 0
    warnings: int = 0
    leaks: int = 0


class TestSession:
    """Counters and report output for one session of numbered tests."""

    __test__ = False

    def __init__(
        self,
        group_id: int = 0,
        unit_test_source: str = "",
        stream: Optional[TextIO] = None,
    ) -> None:
        self.group_id = group_id
        self.unit_test_source = unit_test_source
        self.stream = stream if stream is not None else sys.stdout
        self.current_index = 0
        self.terminated = False
        self.last_result = TestResult.NONE
        self.session = _Counts()
        self.single = _Counts()

    def _write(self, text: str) -> None:
        self.stream.write(text)
        self.stream.flush()

    def title(self, text: str) -> None:
        """Write a section heading."""
        self._write(f"{_RULE}\n### {text} ###\n\n")

    def start(self, index: int, title: str, line: int = 0) -> None:
        """Begin test number ``index``; the per-test counters start from zero."""
        self.current_index = index
        self.last_result = TestResult.NONE
        self.single.passed = 0
        self.single.failed = 0
        self.single.warnings = 0
        if index > 1:
            self._write("\n")
        self._write(f"TEST {index}: {title}\n")

    def summary(self, expected_positives: int) -> str:
        """Write the session totals and return the text written."""
        totals = self.session
        rows = [
            ("Tests available", expected_positives, "AVAIL"),
            ("Executed", totals.passed + totals.failed, "DONE"),
            ("Tests passed", totals.passed, "PASSED"),
            ("Tests failed", totals.failed, "FAILED"),
            ("Warnings", totals.warnings, "WARNINGS"),
            ("Resource leaks", totals.leaks, "LEAKS"),
        ]
        text = "".join(f"{label:>17}: {value:4d} ({tag})\n" for label, value, tag in rows)
        self._write(text)
        return text

    def _where(self, line: int) -> str:
        return (
            f"       Check the test function TEST{self.current_index}(void) "
            f"in file {self.unit_test_source} at line {line}\n"
        )

    def result(self, result: TestResult, line: int = 0, message: str = "") -> None:
        """Record the outcome of a check and report it unless it is NONE."""
        result = TestResult(result)
        self.last_result = result
        if result is TestResult.NONE:
            return
        if result is TestResult.FAILED:
            self._write(f"Result: FAILURE: {message}\n" + self._where(line))
            self.single.failed += 1
            self.session.failed += 1
        elif result is TestResult.PASSED:
            self._write("Result: SUCCESS\n")
            self.single.passed += 1
            self.session.passed += 1
        else:
            self._write(f"Result: WARNING: {message}\n" + self._where(line))
            self.single.warnings += 1
            self.session.warnings += 1

    def terminate(self) -> None:
        """Mark the whole session as stopped."""
        self._write("*** Test aborted ***\n")
        self.terminated = True

    def set_leaks(self, leaks: int) -> None:
        """Record the number of leaked resources for the session."""
        self.session.leaks = leaks

    def single_has_failed(self) -> bool:
        """True if the current test has recorded a failure."""
        return self.single.failed > 0

    def fail_count(self) -> int:
        """Number of failures recorded in the whole session."""
        return self.session.failed


def find_first_difference(first: bytes, second: bytes) -> int:
    """Index of the first byte where the buffers differ, or -1 if they match.

    When one buffer is a prefix of the other, the length of the shorter one
    is the first difference.
    """
    first, second = bytes(first), bytes(second)
    for position, (a, b) in enumerate(zip(first, second)):
        if a != b:
            return position
    if len(first) != len(second):
        return min(len(first), len(second))
    return -1


def get_byte(data: bytes, pos: int) -> int:
    """Return the byte at ``pos`` as an integer."""
    if pos < 0:
        raise IndexError(f"position {pos} is negative")
    return bytes(data[pos:pos + 1])[0] if pos < len(data) else data[pos]


def _printable(byte: int) -> str:
    return chr(byte) if 0x20 <= byte < 0x7F else "."


def dump_diff(first: bytes, second: bytes, stream: Optional[TextIO] = None) -> str:
    """Write a hex and text dump of ``first``, 16 bytes per row; return it.

    ``second`` is the buffer it is compared against and must be at least as long.
    """
    first, second = bytes(first), bytes(second)
    if len(second) < len(first):
        raise ValueError("the compared buffer is shorter than the dumped one")
    rows = []
    for address in range(0, len(first), _ROW_LENGTH):
        chunk = first[address:address + _ROW_LENGTH]
        hex_part = "".join(f"{byte:02x} " for byte in chunk)
        hex_part += "   " * (_ROW_LENGTH - len(chunk))
        text_part = "".join(_printable(byte) for byte in chunk)
        rows.append(f"       {address:04x}  {hex_part} {text_part}\n")
    text = "".join(rows)
    out = stream if stream is not None else sys.stdout
    out.write(text)
    out.flush()
    return text


def compare(reference: bytes, tested: bytes, stream: Optional[TextIO] = None) -> str:
    """Write dumps of the expected and the obtained data; return the text."""
    out = stream if stream is not None else sys.stdout
    parts = ["       Memory dump (expected data):\n"]
    out.write(parts[0])
    parts.append(dump_diff(reference, tested, out))
    parts.append("       Memory dump (obtained data):\n")
    out.write(parts[-1])
    parts.append(dump_diff(tested, reference, out))
    return "".join(parts)


def _restore_limit(kind: int, previous: tuple[int, int]) -> None:
    try:
        resource.setrlimit(kind, previous)
    except ValueError:
        # A lowered hard limit cannot be raised again without privileges.
        pass


@contextmanager
def memory_limit(soft_limit: int, hard_limit: int) -> Iterator[None]:
    """Limit the process data segment while the block runs."""
    previous = resource.getrlimit(resource.RLIMIT_DATA)
    resource.setrlimit(resource.RLIMIT_DATA, (soft_limit, hard_limit))
    try:
        yield
    finally:
        _restore_limit(resource.RLIMIT_DATA, previous)


def _file_size_exceeded(signo: int, frame: object) -> None:
    sys.stderr.write(
        f"File size limit exceeded while writing ({signo}, {signal.strsignal(signo)})\n"
    )
    raise SystemExit(128 + signal.SIGXFSZ)


@contextmanager
def file_write_limit(write_limit: int) -> Iterator[None]:
    """Limit the size of files written while the block runs.

    Exceeding the limit ends the program with status ``128 + SIGXFSZ``.
    """
    previous = resource.getrlimit(resource.RLIMIT_FSIZE)
    resource.setrlimit(resource.RLIMIT_FSIZE, (write_limit, previous[1]))
    old_handler = signal.signal(signal.SIGXFSZ, _file_size_exceeded)
    try:
        yield
    finally:
        signal.signal(signal.SIGXFSZ, old_handler)
        _restore_limit(resource.RLIMIT_FSIZE, previous)