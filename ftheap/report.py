"""Listings of the zones and allocations held by an allocator."""

from __future__ import annotations

import dataclasses
import sys
from dataclasses import dataclass
from typing import Iterator, Optional, TextIO, Union

from .allocator import Allocator
from .layout import ALLOCATED_HEADER_SIZE, LARGE_HEADER_SIZE, ZONE_HEADER_SIZE, ZoneType
from .printf import format_printf

_ZONE_ORDER = (ZoneType.TINY, ZoneType.SMALL, ZoneType.LARGE)


@dataclass(frozen=True)
class ZoneEntry:
    """A mapped zone."""

    zone_type: ZoneType
    address: int
    size: int

    @property
    def end(self) -> int:
        return self.address + self.size


@dataclass(frozen=True)
class ChunkEntry:
    """A chunk inside a tiny or small zone, boundaries included."""

    address: int
    size: int
    used: int
    in_use: bool
    zone_type: ZoneType

    @property
    def end(self) -> int:
        return self.address + self.size

    @property
    def data_address(self) -> int:
        return self.address + ALLOCATED_HEADER_SIZE

    @property
    def is_boundary(self) -> bool:
        return self.zone_type is ZoneType.BOUNDARY


@dataclass(frozen=True)
class LargeEntry:
    """The allocation that fills a large zone."""

    address: int
    size: int
    used: int

    @property
    def data_address(self) -> int:
        return self.address + LARGE_HEADER_SIZE


Entry = Union[ZoneEntry, ChunkEntry, LargeEntry]


def walk(allocator: Allocator) -> Iterator[Entry]:
    """Yield every zone followed by its chunks.

    Zone types come in the order tiny, small, large; zones of one type
    come in ascending address order.
    """
    heap = allocator.heap
    for zone_type in _ZONE_ORDER:
        for zone in sorted(allocator.zones.zones(zone_type), key=lambda z: z.address):
            yield ZoneEntry(zone.zone_type, zone.address, zone.size)
            if zone.zone_type is ZoneType.LARGE:
                large = heap.read_large_chunk(zone.address + ZONE_HEADER_SIZE)
                yield LargeEntry(large.address, large.size, large.used)
                continue
            address = zone.address + ZONE_HEADER_SIZE
            while address < zone.end:
                chunk = heap.read_chunk(address)
                if chunk.size <= 0:
                    raise ValueError(f"corrupt chunk of size 0 at {address:#x}")
                yield ChunkEntry(
                    chunk.address, chunk.size, chunk.used, chunk.in_use, chunk.zone_type
                )
                address = chunk.end


def format_alloc_mem(allocator: Allocator) -> str:
    """Zones and the allocations in use, with the total bytes requested."""
    lines = []
    for entry in walk(allocator):
        if isinstance(entry, ZoneEntry):
            lines.append(format_printf("%s : %p\n", entry.zone_type.name, entry.address))
        elif isinstance(entry, LargeEntry):
            data = entry.data_address
            lines.append(format_printf("%p - %p : %i bytes\n", data, data + entry.used, entry.used))
        elif entry.in_use:
            data = entry.data_address
            lines.append(format_printf("%p - %p : %i bytes\n", data, data + entry.used, entry.used))
    lines.append(format_printf("Total : %i bytes\n", allocator.stats.memory_used))
    return "".join(lines)


def format_alloc_mem_ex(allocator: Allocator) -> str:
    """Every zone and chunk, boundaries and free chunks included, with statistics."""
    stats = dataclasses.replace(allocator.stats)
    lines = []
    for entry in walk(allocator):
        if isinstance(entry, ZoneEntry):
            lines.append(
                format_printf(
                    "%s : %p - %p\n", entry.zone_type.name, entry.address, entry.end
                )
            )
        elif isinstance(entry, LargeEntry):
            data = entry.data_address
            lines.append(
                format_printf(
                    "%p - %p : 0x%x bytes (0x%x used)\n",
                    data,
                    data + entry.used,
                    entry.size,
                    entry.used,
                )
            )
        elif entry.is_boundary:
            lines.append(format_printf("%p - %p : Boundary\n", entry.address, entry.end))
        else:
            lines.append(
                format_printf(
                    "%p - %p : 0x%x bytes (0x%x used) InUse: %i\n",
                    entry.address,
                    entry.end,
                    entry.size,
                    entry.used,
                    int(entry.in_use),
                )
            )
    page_size = allocator.zones.page_size
    lines.append(format_printf("Total Memory Used : 0x%x bytes\n", stats.memory_used))
    lines.append(
        format_printf(
            "Total Memory Mapped : 0x%x bytes (%x pages)\n",
            stats.memory_mapped,
            stats.memory_mapped // page_size,
        )
    )
    lines.append(format_printf("Total Allocations : %i\n", stats.allocation_count))
    lines.append(format_printf("Total Malloc calls : %i\n", stats.malloc_calls))
    lines.append(format_printf("Total Realloc calls : %i\n", stats.realloc_calls))
    lines.append(format_printf("Total Free calls : %i\n", stats.free_calls))
    lines.append(format_printf("Total mmap calls : %i\n", stats.mmap_calls))
    lines.append(format_printf("Total mumap calls : %i\n", stats.munmap_calls))
    return "".join(lines)


def _emit(text: str, file: Optional[TextIO]) -> int:
    stream = sys.stdout if file is None else file
    stream.write(text)
    return len(text)


def show_alloc_mem(allocator: Allocator, file: Optional[TextIO] = None) -> int:
    """Write the short listing to ``file`` (stdout by default); return its length."""
    return _emit(format_alloc_mem(allocator), file)


def show_alloc_mem_ex(allocator: Allocator, file: Optional[TextIO] = None) -> int:
    """Write the detailed listing to ``file`` (stdout by default); return its length."""
    return _emit(format_alloc_mem_ex(allocator), file)