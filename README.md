# fencedheap

A small toolkit for studying and checking memory allocators. It has four parts:

- **Simulated `sbrk` memory** (`fencedheap.sbrk`). `SimulatedMemory` is a byte array of a
  fixed number of pages. Random guard fences sit on the page before the heap, on the first
  page boundary at or after the current break, and on the page after the last usable page.
  The break moves only through `sbrk`, which returns the previous break. If any fence has been
  overwritten, the next `sbrk` call raises `FenceCorruptedError`. A break that would reach the
  end of the pages raises `OutOfMemory`.
- **A fenced heap allocator** (`fencedheap.heap`). `Heap` provides `malloc`, `calloc`,
  `realloc` and `free` on top of a `SimulatedMemory`. Pointers are integer addresses into that
  memory, and `None` stands for a null pointer. Every block has a control header with a magic
  number and a checksum, and 16-byte guard fences on both sides of the user data. The
  allocator can validate the whole heap and classify any address.
- **A resource tracker** (`fencedheap.resources`, `fencedheap.tracker`, `fencedheap.session`).
  It records every allocation, string duplicate and opened file, and guards each tracked block
  with 32-byte fences. It applies per-function limits: a single-allocation limit, a cumulative
  limit and a limit on successful calls. It also applies a global heap limit, and it reports
  leaked blocks and unclosed files.
- **A unit-test report kit** (`fencedheap.testkit`). It writes test headers, results and
  summaries. It compares byte buffers and prints hex dumps, and it sets temporary process
  resource limits.

## Installation

```
pip install fencedheap
```

To run the test suite:

```
pip install "fencedheap[test]"
pytest
```

## Using the allocator

```python
from fencedheap.sbrk import SimulatedMemory
from fencedheap.heap import Heap

memory = SimulatedMemory(pages_available=16384, seed=1)
heap = Heap(memory)
heap.setup()

block = heap.malloc(100)
bigger = heap.realloc(block, 250)
print(heap.largest_used_block_size())   # 250
print(heap.get_pointer_type(bigger))    # PointerType.VALID
print(heap.validate())                  # 0 while the heap is intact

heap.free(bigger)
heap.clean()
print(memory.reserved_memory())         # 0 after clean()
print(memory.check_fences_integrity())  # 0 while all fences are intact
```

`malloc`, `calloc` and `realloc` return `None` in these cases:

- the request cannot be met
- the size is not positive
- the heap fails validation

`free` ignores `None`, pointers that are not the start of an allocated block, and calls made
while the heap is damaged.

`Heap.validate()` returns one of these codes (also available as constants in
`fencedheap.heap`):

- `HEAP_OK` (0): the heap is consistent.
- `HEAP_FENCES_DAMAGED` (1): a block fence was damaged.
- `HEAP_NOT_INITIALISED` (2): `setup()` has not been called.
- `HEAP_CORRUPTED` (3): a control block is broken.

`Heap.get_pointer_type()` returns a `PointerType` member:

- `NULL`
- `HEAP_CORRUPTED`
- `CONTROL_BLOCK`
- `INSIDE_FENCES`
- `INSIDE_DATA_BLOCK`
- `UNALLOCATED`
- `VALID`

`SimulatedMemory` has these other members:

- `read(address, size)` and `write(address, data)` give raw access to the bytes.
- `check_fences_integrity()` returns a bit mask built from `FIRST_FENCE_DAMAGED`,
  `BRK_FENCE_DAMAGED` and `LAST_FENCE_DAMAGED`.
- `summary()` returns a text report on the fences, the reserved memory, the elapsed time and
  the number of `sbrk` calls.

## Tracking resources

`ResourceTracker` provides `malloc`, `calloc`, `realloc`, `free`, `strdup` and `strndup`.
Each call takes an optional source file and line for its reports. Blocks are `memoryview`
objects. Reports are written to the stream given to the constructor, which defaults to
standard output:

```python
import sys
from fencedheap.tracker import ResourceTracker
from fencedheap.resources import HeapFunction

tracker = ResourceTracker(sys.stdout)
tracker.set_success_limit(HeapFunction.MALLOC, 2)
first = tracker.malloc(16, "demo.py", 10)
second = tracker.malloc(16, "demo.py", 11)
third = tracker.malloc(16, "demo.py", 12)   # None: success limit reached
tracker.free(first, "demo.py", 13)
print(tracker.leak_size())                  # 16 bytes still allocated
```

These methods configure limits and reporting:

- `set_singleshot_limit`
- `set_cumulative_limit`
- `set_success_limit`
- `set_global_limit`
- `disable_all_functions`
- `reset_limits`
- `set_reported_severity_level`, which takes a `Severity` member

`block_size(pointer)` returns the size of a tracked block. For an unknown pointer it returns
`UNKNOWN_POINTER`.

A report of severity `Severity.FAILURE` raises `HeapFailure`. This happens in these cases:

- freeing or resizing an unknown pointer
- passing `None` to `strdup` or `strndup`
- calling a heap function while they are disabled
- damage to a tracked block's fences or record, which is found at the start of the next call

`DebugSession` extends the tracker with these methods:

- `fopen` and `fclose` track opened files.
- `call_main(main, argv)` runs a function and returns its status as a signed byte. Inside
  that function, `exit(status)` ends the run with that status.
- `exit` raises `SystemExit` outside `call_main` when `exit_allowed` is set. Otherwise it
  reports the misuse and raises `HeapFailure`.
- `show_leaked_resources(force_empty_summary)` writes a table of unreleased blocks and
  unclosed files and returns their count.

## Test reports

```python
import sys
from fencedheap.testkit import TestSession, TestResult

session = TestSession(1, "tests.c", sys.stdout)
session.start(1, "allocating a block", 42)
session.result(TestResult.PASSED, 42, "")
session.summary(1)
```

`TestSession` also has these members:

- `title`
- `terminate`
- `set_leaks`
- `single_has_failed`
- `fail_count`

`fencedheap.testkit` also provides these functions:

- `find_first_difference(first, second)` and `get_byte(data, pos)` inspect byte buffers.
- `dump_diff` and `compare` write hex and text dumps, 16 bytes per row.
- `memory_limit(soft_limit, hard_limit)` limits the data segment for the length of a `with`
  block.
- `file_write_limit(write_limit)` limits the size of written files for the length of a `with`
  block. Going over the limit ends the program with status `128 + SIGXFSZ`.

`fencedheap.testkit` uses the `resource` module, so it can only be imported on POSIX systems.

## Command line

```
fencedheap
```

This prints `Hello, World!` and exits with status 0.

## What this package does not do

- The allocator manages a simulated byte array, not the process's real memory. It does not
  replace Python's or the system's allocator.
- The tracker records only calls made through its own methods. It does not intercept any
  other allocation or file access.
- `testkit` only counts and reports results. It has no test runner and no way to discover
  tests.
- The command line does nothing beyond the greeting above.