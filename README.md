# ftheap

`ftheap` is a memory allocator simulated in pure Python. It manages a
byte-addressed heap of mapped *zones* in the way a `malloc`-style allocator
does:

- **tiny** zones serve requests of up to 24 bytes (`MAX_TINY_ALLOC`),
- **small** zones serve requests of up to 1280 bytes (`MAX_SMALL_ALLOC`),
- **large** requests each get a zone of their own, rounded up to whole pages.

Chunks inside tiny and small zones have packed size headers, boundary tags and
sentinel boundary chunks at each end of their zone. Free chunks sit on free
lists, one list per zone kind. When memory is released, neighbouring free
chunks are fused, and a zone that becomes empty is unmapped. The allocator
keeps counters for bytes in use, live allocations, mapped memory and the
number of malloc, realloc, free, mmap and munmap calls (`ftheap.layout.Stats`).

## Installation

```
pip install ftheap
```

To run the tests:

```
pip install "ftheap[test]"
pytest
```

## Usage

```python
from ftheap.allocator import Allocator
from ftheap.report import show_alloc_mem, show_alloc_mem_ex

with Allocator() as heap:
    a = heap.malloc(0x210)
    b = heap.malloc(0x50)
    heap.write(a, b"hello")
    assert heap.read(a, 5) == b"hello"

    a = heap.realloc(a, 0x340)   # grows in place if it can, otherwise moves
    assert heap.read(a, 5) == b"hello"
    c = heap.calloc(4, 8)        # zero-filled
    print(heap.malloc_size(c))   # 32

    show_alloc_mem(heap)         # zones and the allocations they hold
    show_alloc_mem_ex(heap)      # every chunk, boundaries and call statistics

    heap.free(b)
    heap.free(c)
    heap.free(a)
```

Addresses are plain integers. `malloc(0)` returns `None`, and so does any
allocation that cannot be mapped. `free(None)` does nothing, and
`realloc(None, n)` behaves like `malloc(n)`.

`Allocator` takes these keyword options:

- `page_size` (default 4096): the page size used to round zone sizes,
- `max_mapped`: a limit on mapped bytes; a mapping beyond it fails,
- `output`: the stream that invalid-pointer messages go to (stdout by default).

`read` and `write` raise `InvalidPointerError` for an address outside any
mapped zone.

### Invalid pointers

An address that is not 8-byte aligned is invalid. `free` prints
`free(): invalid pointer` and returns; `realloc` returns `None`. When the
`ABORT` mode flag is set, both raise `InvalidPointerError` instead.

### Modes

The behaviour flags are the members of `ftheap.layout.Mode`:

| flag          | effect                                                          |
|---------------|-----------------------------------------------------------------|
| `CLEAN`       | `close()` (also called on leaving a `with` block) unmaps every zone |
| `PERFORMANCE` | the last zone of a kind stays mapped even when it becomes empty |
| `ABORT`       | an invalid pointer raises `InvalidPointerError`                 |

When no mode is given, `Allocator` reads it from the process environment.
`mode_from_env()` reads the flags as an integer from the `MALLOC_MODE`
variable of a mapping (default: `os.environ`):

```python
from ftheap.allocator import Allocator, mode_from_env

heap = Allocator(mode=mode_from_env({"MALLOC_MODE": "5"}))  # CLEAN | ABORT
```

### Lower layers

- `ftheap.zone.ZoneMap` maps and unmaps zones (`Zone` objects backed by a
  `bytearray`) and finds the zone that holds an address.
- `ftheap.chunk.ChunkHeap` splits, allocates, enlarges, frees and fuses
  chunks, and maps large allocations; `read_chunk`, `read_large_chunk` and
  `free_list` decode headers into `Chunk` and `LargeChunk` snapshots.
- `ftheap.layout` holds the sizes, `align_up` / `align_down`, and the zone
  size functions `tiny_zone_size` and `small_zone_size`.

### Reports

`ftheap.report.walk` yields `ZoneEntry`, `ChunkEntry` and `LargeEntry`
records: tiny zones first, then small, then large, each kind in ascending
address order, every zone followed by its chunks. `format_alloc_mem` and
`format_alloc_mem_ex` return the report text; `show_alloc_mem` and
`show_alloc_mem_ex` write it to a stream (stdout by default) and return its
length.

### Formatting

The reports are produced with the package's own small formatter,
`ftheap.printf`. `format_printf(fmt, *args)` returns the text and
`printf(fmt, *args, file=None)` writes it. It supports `%c %s %d %i %u %x %X %p`,
`%%`, the `l` length modifier, flags and a minimum width (`0` pads with
zeros). `ftheap.numfmt` provides the integer helpers it uses: `atoi`, `itoa`,
`itoa_signed` and `itoa_unsigned`.

## What it does not do

`ftheap` does not allocate real process memory and cannot stand in for
Python's or the system's allocator. All addresses are simulated and all
contents live in Python byte arrays. There is no command-line tool.