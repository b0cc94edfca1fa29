import io

import pytest

from ftheap.allocator import Allocator
from ftheap.layout import MAX_SMALL_ALLOC, MAX_TINY_ALLOC, Mode, ZoneType
from ftheap.report import (
    ChunkEntry,
    LargeEntry,
    ZoneEntry,
    format_alloc_mem,
    format_alloc_mem_ex,
    show_alloc_mem,
    show_alloc_mem_ex,
    walk,
)


@pytest.fixture
def allocator():
    return Allocator(mode=Mode(0))


def _zone_layout(allocator):
    """Map each zone entry to the entries that follow it."""
    layout = []
    for entry in walk(allocator):
        if isinstance(entry, ZoneEntry):
            layout.append((entry, []))
        else:
            layout[-1][1].append(entry)
    return layout


def _check_tiling(allocator):
    for zone, chunks in _zone_layout(allocator):
        if zone.zone_type is ZoneType.LARGE:
            assert len(chunks) == 1 and isinstance(chunks[0], LargeEntry)
            continue
        assert chunks[0].is_boundary and chunks[-1].is_boundary
        assert chunks[0].address == zone.address + 32
        assert chunks[-1].end == zone.end
        for left, right in zip(chunks, chunks[1:]):
            assert left.end == right.address
            assert left.in_use or right.in_use or left.is_boundary or right.is_boundary


def _used_total(allocator):
    return sum(
        e.used
        for e in walk(allocator)
        if isinstance(e, LargeEntry) or (isinstance(e, ChunkEntry) and e.in_use)
    )


def test_empty_allocator_report(allocator):
    assert format_alloc_mem(allocator) == "Total : 0 bytes\n"
    assert list(walk(allocator)) == []


def test_single_tiny_allocation_short_listing(allocator):
    address = allocator.malloc(0x10)
    assert address == 0x10000030
    assert format_alloc_mem(allocator) == (
        "TINY : 0x10000000\n"
        "0x10000030 - 0x10000040 : 16 bytes\n"
        "Total : 16 bytes\n"
    )


def test_single_tiny_allocation_detailed_listing(allocator):
    allocator.malloc(0x10)
    assert format_alloc_mem_ex(allocator) == (
        "TINY : 0x10000000 - 0x10001000\n"
        "0x10000020 - 0x10000028 : Boundary\n"
        "0x10000028 - 0x10000048 : 0x20 bytes (0x10 used) InUse: 1\n"
        "0x10000048 - 0x10000ff8 : 0xfb0 bytes (0x0 used) InUse: 0\n"
        "0x10000ff8 - 0x10001000 : Boundary\n"
        "Total Memory Used : 0x10 bytes\n"
        "Total Memory Mapped : 0x1000 bytes (1 pages)\n"
        "Total Allocations : 1\n"
        "Total Malloc calls : 1\n"
        "Total Realloc calls : 0\n"
        "Total Free calls : 0\n"
        "Total mmap calls : 1\n"
        "Total mumap calls : 0\n"
    )


def test_large_allocation_listings(allocator):
    allocator.malloc(0x600)
    assert format_alloc_mem(allocator) == (
        "LARGE : 0x10000000\n"
        "0x10000030 - 0x10000630 : 1536 bytes\n"
        "Total : 1536 bytes\n"
    )
    detailed = format_alloc_mem_ex(allocator)
    assert detailed.startswith(
        "LARGE : 0x10000000 - 0x10001000\n"
        "0x10000030 - 0x10000630 : 0x1000 bytes (0x600 used)\n"
    )


def test_zone_types_listed_tiny_small_large(allocator):
    allocator.malloc(0x600)
    allocator.malloc(0x100)
    allocator.malloc(0x8)
    kinds = [e.zone_type for e in walk(allocator) if isinstance(e, ZoneEntry)]
    assert kinds == [ZoneType.TINY, ZoneType.SMALL, ZoneType.LARGE]


def test_zones_of_one_type_in_ascending_address(allocator):
    for _ in range(3):
        allocator.malloc(0x800)
    addresses = [e.address for e in walk(allocator) if isinstance(e, ZoneEntry)]
    assert addresses == sorted(addresses)
    assert len(addresses) == 3


@pytest.mark.parametrize(
    "size, zone_type, zone_count",
    [
        (MAX_TINY_ALLOC, ZoneType.TINY, 1),
        (MAX_SMALL_ALLOC, ZoneType.SMALL, 1),
        (MAX_SMALL_ALLOC + 1, ZoneType.LARGE, 100),
    ],
)
def test_zone_alloc_count(allocator, size, zone_type, zone_count):
    pointers = [allocator.malloc(size) for _ in range(100)]
    zones = [e for e in walk(allocator) if isinstance(e, ZoneEntry)]
    assert len(zones) == zone_count
    assert all(z.zone_type is zone_type for z in zones)
    text = format_alloc_mem(allocator)
    assert text.endswith(f"Total : {100 * size} bytes\n")
    assert text.count(f": {size} bytes\n") == 100
    _check_tiling(allocator)
    for pointer in pointers:
        allocator.free(pointer)
    assert format_alloc_mem(allocator) == "Total : 0 bytes\n"


def _fill(allocator, address, size):
    allocator.write(address, bytes(size))


def test_defrag_sequence(allocator):
    sizes = [0x210, 0x110, 0x50, 0x133, 0x341]
    ptr = [allocator.malloc(s) for s in sizes] + [None]
    for p, s in zip(ptr, sizes):
        _fill(allocator, p, s)
    _check_tiling(allocator)
    assert _used_total(allocator) == allocator.stats.memory_used == sum(sizes)

    allocator.free(ptr[1])
    allocator.free(ptr[3])
    _check_tiling(allocator)
    assert _used_total(allocator) == allocator.stats.memory_used

    ptr[0] = allocator.realloc(ptr[0], 0x340)
    ptr[2] = allocator.realloc(ptr[2], 0x100)
    _check_tiling(allocator)
    assert allocator.malloc_size(ptr[0]) == 0x340
    assert allocator.malloc_size(ptr[2]) == 0x100

    ptr[1] = allocator.malloc(0x28)
    _fill(allocator, ptr[1], 8)
    ptr[3] = allocator.malloc(0x21)
    _fill(allocator, ptr[3], 0x20)
    ptr[5] = allocator.malloc(0x219)
    _fill(allocator, ptr[5], 0x200)
    _check_tiling(allocator)
    assert _used_total(allocator) == allocator.stats.memory_used

    allocator.free(ptr[0])
    allocator.free(ptr[4])
    _check_tiling(allocator)
    for index in (1, 2, 3, 5):
        allocator.free(ptr[index])
    assert format_alloc_mem(allocator) == "Total : 0 bytes\n"


def test_print_sequence(allocator):
    sizes = [0x210, 0x110, 0x50, 0x133, 0x341]
    ptr = [allocator.malloc(s) for s in sizes] + [None]
    allocator.free(ptr[1])
    allocator.free(ptr[3])
    ptr[0] = allocator.realloc(ptr[0], 0x340)
    ptr[2] = allocator.realloc(ptr[2], 0x100)
    ptr[1] = allocator.malloc(0x28)
    ptr[3] = allocator.malloc(0x21)
    ptr[5] = allocator.malloc(0x219)
    allocator.free(ptr[0])
    allocator.free(ptr[4])
    allocator.free(ptr[1])
    text = format_alloc_mem(allocator)
    remaining = 0x100 + 0x21 + 0x219
    assert text.endswith(f"Total : {remaining} bytes\n")
    for index, size in ((2, 0x100), (3, 0x21), (5, 0x219)):
        assert f"{ptr[index]:#x} - {ptr[index] + size:#x} : {size} bytes\n" in text
    for index in (2, 3, 5):
        allocator.free(ptr[index])
    assert format_alloc_mem(allocator) == "Total : 0 bytes\n"


def test_detailed_statistics_counts(allocator):
    a = allocator.malloc(0x10)
    allocator.realloc(a, 0x12)
    allocator.free(a)
    text = format_alloc_mem_ex(allocator)
    assert "Total Malloc calls : 1\n" in text
    assert "Total Realloc calls : 1\n" in text
    assert "Total Free calls : 1\n" in text
    assert "Total mumap calls : 1\n" in text
    assert "Total Memory Mapped : 0x0 bytes (0 pages)\n" in text


def test_show_alloc_mem_writes_to_file(allocator):
    allocator.malloc(0x20)
    buffer = io.StringIO()
    written = show_alloc_mem(allocator, buffer)
    assert buffer.getvalue() == format_alloc_mem(allocator)
    assert written == len(buffer.getvalue())


def test_show_alloc_mem_ex_defaults_to_stdout(allocator, capsys):
    allocator.malloc(0x20)
    show_alloc_mem_ex(allocator)
    assert capsys.readouterr().out == format_alloc_mem_ex(allocator)


def test_performance_mode_keeps_last_zone_listed():
    allocator = Allocator(mode=Mode.PERFORMANCE)
    pointer = allocator.malloc(0x10)
    allocator.free(pointer)
    entries = list(walk(allocator))
    assert isinstance(entries[0], ZoneEntry)
    chunks = [e for e in entries if isinstance(e, ChunkEntry) and not e.is_boundary]
    assert len(chunks) == 1 and not chunks[0].in_use
    assert chunks[0].size == 0x1000 - 32 - 16