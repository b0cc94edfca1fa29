"""Sizes, alignment rules and shared records of the heap layout."""

from __future__ import annotations

import enum
from dataclasses import dataclass

POINTER_SIZE = 8
LINK_SIZE = 2 * POINTER_SIZE
# One packed word (size, used, flags, zone type) followed by the free-list links.
CHUNK_HEADER_SIZE = POINTER_SIZE + LINK_SIZE
ALLOCATED_HEADER_SIZE = CHUNK_HEADER_SIZE - LINK_SIZE
BOUNDARY_SIZE = CHUNK_HEADER_SIZE - LINK_SIZE
FOOTER_SIZE = 4
LARGE_HEADER_SIZE = 16
ZONE_HEADER_SIZE = 32

CHUNK_FIELD_BITS = 30
CHUNK_FIELD_LIMIT = 1 << CHUNK_FIELD_BITS

MAX_TINY_ALLOC = 0x18
MAX_SMALL_ALLOC = 0x500

ZONE_MAGIC = 0xF424342F


def _check_alignment(alignment: int) -> None:
    if alignment <= 0 or alignment & (alignment - 1):
        raise ValueError(f"alignment must be a positive power of two, got {alignment}")


def align_down(value: int, alignment: int) -> int:
    """Round ``value`` down to a multiple of ``alignment``."""
    _check_alignment(alignment)
    return value & ~(alignment - 1)


def align_up(value: int, alignment: int) -> int:
    """Round ``value`` up to a multiple of ``alignment``."""
    _check_alignment(alignment)
    return (value + alignment - 1) & ~(alignment - 1)


MIN_ALLOC_SIZE = align_up(CHUNK_HEADER_SIZE + FOOTER_SIZE, 16)


def tiny_zone_size(page_size: int) -> int:
    """Size of a zone that serves tiny allocations."""
    return align_up(MAX_TINY_ALLOC * 100, page_size)


def small_zone_size(page_size: int) -> int:
    """Size of a zone that serves small allocations."""
    return align_up(MAX_SMALL_ALLOC * 100, page_size)


class ZoneType(enum.IntEnum):
    """Kind of zone a chunk belongs to; BOUNDARY marks zone edge sentinels."""

    TINY = 0
    SMALL = 1
    LARGE = 2
    BOUNDARY = 3


class Mode(enum.IntFlag):
    """Behaviour switches read from the environment."""

    CLEAN = 1
    PERFORMANCE = 2
    ABORT = 4
    CLEAN_PERFORMANCE = CLEAN | PERFORMANCE


@dataclass
class Stats:
    """Running counters kept by the allocator."""

    memory_used: int = 0
    allocation_count: int = 0
    memory_mapped: int = 0
    malloc_calls: int = 0
    realloc_calls: int = 0
    free_calls: int = 0
    mmap_calls: int = 0
    munmap_calls: int = 0