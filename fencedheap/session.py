"""A debugging session that tracks streams, program exit and leaks.

:class:`DebugSession` extends :class:`ResourceTracker` with tracked
``fopen``/``fclose``, a guarded ``exit`` and a way to run a program's
``main`` so that an ``exit`` inside it returns a status instead of ending
the process. :meth:`DebugSession.show_leaked_resources` lists every block
and stream that is still held.
"""

from __future__ import annotations

from typing import IO, Any, Callable, Optional, Sequence

from .resources import HeapFunction, Resource, ResourceKind, Severity
from .tracker import HeapFailure, ResourceTracker, _Outcome

_RULE = "-" * 44
_NAME_WIDTH = 25


class ProgramExit(Exception):
    """Raised by :meth:`DebugSession.exit` while a tracked main is running."""

    def __init__(self, status: int) -> None:
        super().__init__(f"exit({status})")
        self.status = status
        self.code = 0x0100 | (status & 0xFF)


def _as_int8(value: int) -> int:
    return ((value & 0xFF) ^ 0x80) - 0x80


def _file_name(path: Optional[str]) -> str:
    if path is None:
        return ""
    return path.rsplit("/", 1)[-1]


def _short_name(name: Optional[str]) -> str:
    name = name or ""
    if len(name) > _NAME_WIDTH:
        return name[: _NAME_WIDTH - 5] + "(...)"
    return name


class DebugSession(ResourceTracker):
    """Resource tracker that also follows files and calls to ``exit``."""

    exit_hooked: bool = False
    exit_allowed: bool = False

    # -- streams -------------------------------------------------------

    def fopen(
        self,
        name: str,
        mode: str,
        source_file: Optional[str] = None,
        source_line: int = -1,
    ) -> Optional[IO[Any]]:
        """Open a file and track it; return the stream or ``None`` on failure."""
        function = HeapFunction.FOPEN
        self._validate_heap(source_file, source_line)
        if not self._count_success(function, source_file, source_line):
            return None
        try:
            handle = open(name, mode)
        except OSError as error:
            detail = f"{error.strerror}; errno={error.errno}"
            self._notify(
                Severity.INFORMATION, function, _Outcome.FAILED, source_file, source_line, detail
            )
            return None
        except ValueError as error:
            self._notify(
                Severity.INFORMATION, function, _Outcome.FAILED, source_file, source_line, str(error)
            )
            return None

        resource = Resource(
            ResourceKind.STREAM,
            source_file=source_file,
            source_line=source_line,
            name=str(name),
            mode=mode,
            stream=handle,
        )
        self.resources.add(resource)
        self._notify(Severity.INFORMATION, function, _Outcome.SUCCESSFUL, source_file, source_line)
        return handle

    def fclose(
        self,
        stream: Optional[IO[Any]],
        source_file: Optional[str] = None,
        source_line: int = -1,
    ) -> int:
        """Close a tracked stream; ``None`` or an unknown stream is a failure."""
        function = HeapFunction.FCLOSE
        self._validate_heap(source_file, source_line)
        if stream is None:
            self._notify(Severity.FAILURE, function, _Outcome.NULL, source_file, source_line)
        resource = self.resources.find(ResourceKind.STREAM, stream)
        if resource is None:
            self._notify(
                Severity.FAILURE, function, _Outcome.INVALID_POINTER, source_file, source_line
            )
        stream.close()
        self.resources.remove(resource)
        self._notify(Severity.INFORMATION, function, _Outcome.SUCCESSFUL, source_file, source_line)
        return 0

    # -- program control -----------------------------------------------

    def exit(
        self, status: int, source_file: Optional[str] = None, source_line: int = -1
    ) -> None:
        """Leave the tracked main with ``status``.

        Inside :meth:`call_main` this raises :class:`ProgramExit`. Outside it,
        :class:`SystemExit` is raised when ``exit_allowed`` is set; otherwise
        the misuse is reported and :class:`HeapFailure` is raised.
        """
        self._validate_heap(source_file, source_line)
        if self.exit_hooked:
            raise ProgramExit(status)
        if self.exit_allowed:
            raise SystemExit(status)
        location = source_location_text(source_file, source_line)
        self.stream.write(
            f"\n*** exit(int) was used at {location}. It leaves the program at once, "
            "which prevents the tests from finishing.\n"
        )
        self.stream.write("*** Please change the code so that it does not use exit()\n")
        self.stream.write("*** If in doubt, contact the author of the test.\n")
        self.stream.flush()
        raise HeapFailure(f"exit() used at {location}")

    def call_main(
        self, main: Callable[[Sequence[str]], Optional[int]], argv: Sequence[str] = ()
    ) -> int:
        """Run ``main(argv)`` and return its status as a signed byte.

        A call to :meth:`exit` inside ``main`` ends it with that status.
        """
        self.exit_hooked = True
        try:
            result = main(list(argv))
        except ProgramExit as stop:
            return _as_int8(stop.code & 0xFF)
        finally:
            self.exit_hooked = False
        return _as_int8(result or 0)

    # -- leak report ---------------------------------------------------

    def show_leaked_resources(self, force_empty_summary: bool = False) -> int:
        """Write a report of unreleased blocks and unclosed files; return their count."""
        resources = list(self.resources)
        blocks = sum(r.kind is ResourceKind.MEMORY for r in resources)
        streams = sum(r.kind is ResourceKind.STREAM for r in resources)
        out = self.stream
        memory_leaked = 0

        if blocks:
            out.write("\nMemory leaks:\n")
            out.write(_RULE + "\n")
            out.write(" ID                Address       Source file\n")
            out.write("          Number of bytes       Line number\n")
            out.write(_RULE + "\n")
            for index, resource in enumerate(resources, start=1):
                if resource.kind is not ResourceKind.MEMORY:
                    continue
                address = hex(id(resource.base_pointer))
                out.write(f" {index:<3d}  {address:>18}       {_file_name(resource.source_file)}\n")
                out.write(f"      {resource.size:>18d}       {resource.source_line}\n")
                memory_leaked += resource.size
            out.write(_RULE + "\n")

        if blocks or force_empty_summary:
            if blocks:
                out.write(f"Unreleased memory blocks: {blocks} block(s)\n")
                out.write(f"Total size of leaked memory: {memory_leaked} byte(s)\n")
            else:
                out.write("All memory blocks have been released - no leaks.\n")

        if streams:
            out.write("\nUnclosed files:\n")
            out.write(_RULE + "\n")
            out.write(" ID  Name                      Source file\n")
            out.write("     Mode                      Line number\n")
            out.write(_RULE + "\n")
            for index, resource in enumerate(resources, start=1):
                if resource.kind is not ResourceKind.STREAM:
                    continue
                name = _short_name(resource.name)
                out.write(f" {index:<3d} {name:<25} {_file_name(resource.source_file)}\n")
                out.write(f"     {resource.mode or '':<25} {resource.source_line}\n")
            out.write(_RULE + "\n")

        if streams or force_empty_summary:
            if streams:
                out.write(f"Number of unclosed files: {streams}\n")
            else:
                out.write("All files have been closed.\n")

        if force_empty_summary:
            out.write("No heap damage detected.\n\n")
        out.flush()
        return streams + blocks


def source_location_text(source_file: Optional[str], source_line: int) -> str:
    """Location of a call as ``file:line``, or ``""`` when unknown."""
    if source_file is None or source_line == -1:
        return ""
    return f"{_file_name(source_file)}:{source_line}"