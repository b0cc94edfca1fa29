"""A malloc-style allocator over simulated zones."""

from __future__ import annotations

import os
import struct
import sys
import threading
from typing import Mapping, Optional, TextIO

from .chunk import ChunkHeap
from .layout import (
    ALLOCATED_HEADER_SIZE,
    CHUNK_HEADER_SIZE,
    LARGE_HEADER_SIZE,
    MAX_SMALL_ALLOC,
    MAX_TINY_ALLOC,
    Mode,
    Stats,
    ZoneType,
    align_up,
)
from .numfmt import atoi
from .zone import ZoneMap

_WORD = struct.Struct("<Q")


class InvalidPointerError(ValueError):
    """Raised for pointers the allocator cannot have handed out."""


def mode_from_env(environ: Optional[Mapping[str, str]] = None) -> Mode:
    """Read the mode flags from MALLOC_MODE; absent means no flags."""
    env = os.environ if environ is None else environ
    value = env.get("MALLOC_MODE")
    if value is None:
        return Mode(0)
    return Mode(atoi(value) & 0xF)


class Allocator:
    """Serves malloc, free, calloc and realloc from tiny, small and large zones."""

    def __init__(
        self,
        mode: Optional[Mode] = None,
        *,
        page_size: int = 4096,
        max_mapped: Optional[int] = None,
        output: Optional[TextIO] = None,
    ) -> None:
        self.mode = mode_from_env() if mode is None else Mode(mode)
        self.stats = Stats()
        self.zones = ZoneMap(self.stats, page_size, max_mapped)
        self.heap = ChunkHeap(self.zones, self.mode)
        self._lock = threading.RLock()
        self._output = output

    def __enter__(self) -> "Allocator":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _zone_type(self, address: int) -> ZoneType:
        word = _WORD.unpack(self.read(address - ALLOCATED_HEADER_SIZE, 8))[0]
        return ZoneType(word >> 62)

    def _misaligned(self, address: int, report: bool) -> bool:
        if address % 8 == 0:
            return False
        if report:
            print("free(): invalid pointer", file=self._output or sys.stdout)
        if Mode.ABORT in self.mode:
            raise InvalidPointerError(f"invalid pointer {address:#x}")
        return True

    def malloc(self, size: int) -> Optional[int]:
        """Allocate ``size`` bytes; return the address, or None for 0 or failure."""
        if size < 0:
            raise ValueError("size must not be negative")
        if not size:
            return None
        with self._lock:
            self.stats.malloc_calls += 1
            if size > MAX_SMALL_ALLOC:
                large = self.heap.map_large_chunk(size)
                if large is None:
                    return None
                self.stats.allocation_count += 1
                self.stats.memory_used += size
                return large.data_address
            zone_type = ZoneType.TINY if size <= MAX_TINY_ALLOC else ZoneType.SMALL
            chunk = self.heap.find_free_chunk(
                zone_type, align_up(size + ALLOCATED_HEADER_SIZE, 8)
            )
            if chunk is None:
                chunk = self.heap.map_chunk(zone_type)
                if chunk is None:
                    return None
            return self.heap.allocate_chunk(chunk.address, size).data_address

    def free(self, address: Optional[int]) -> None:
        """Release an allocation; None or 0 is ignored."""
        if not address:
            return
        with self._lock:
            if self._misaligned(address, report=True):
                return
            self.stats.free_calls += 1
            if self._zone_type(address) is ZoneType.LARGE:
                large = self.heap.read_large_chunk(address - LARGE_HEADER_SIZE)
                self.stats.allocation_count -= 1
                self.stats.memory_used -= large.used
                self.heap.unmap_large_chunk(large.address)
                return
            chunk_address = address - ALLOCATED_HEADER_SIZE
            self.heap.free_chunk(chunk_address)
            merged = self.heap.fuse_neighbours(chunk_address)
            self.heap.unmap_empty_zone(merged.address)

    def calloc(self, nelem: int, elsize: int) -> Optional[int]:
        """Allocate ``nelem * elsize`` zeroed bytes."""
        total = nelem * elsize
        address = self.malloc(total)
        if address is None:
            return None
        self.write(address, bytes(total))
        return address

    def realloc(self, address: Optional[int], size: int) -> Optional[int]:
        """Resize an allocation, keeping its contents; may move it."""
        if not address:
            return self.malloc(size)
        if not size:
            self.free(address)
            return None
        with self._lock:
            if self._misaligned(address, report=False):
                return None
            self.stats.realloc_calls += 1
            if self._zone_type(address) is ZoneType.LARGE:
                large = self.heap.expand_large_chunk(address - LARGE_HEADER_SIZE, size)
                return None if large is None else large.data_address
            chunk_address = address - ALLOCATED_HEADER_SIZE
            chunk = self.heap.read_chunk(chunk_address)
            if chunk.size - CHUNK_HEADER_SIZE >= size:
                self.stats.memory_used += size - chunk.used
                self.heap._store(
                    chunk_address,
                    self.heap._header(chunk_address).__class__(
                        chunk.size, size, chunk.in_use, chunk.prev_in_use, chunk.zone_type
                    ),
                )
                return address
            grown = self.heap.enlarge_chunk(chunk_address, size)
            if grown is not None:
                return grown.data_address
            data = self.malloc(size)
            if data is None:
                return None
            self.write(data, self.read(address, chunk.used))
            self.free(address)
            return data

    def malloc_size(self, address: int) -> int:
        """Number of bytes requested for the allocation at ``address``."""
        with self._lock:
            if self._zone_type(address) is ZoneType.LARGE:
                return self.heap.read_large_chunk(address - LARGE_HEADER_SIZE).used
            return self.heap.read_chunk(address - ALLOCATED_HEADER_SIZE).used

    def read(self, address: int, length: int) -> bytes:
        """Read ``length`` bytes of heap memory."""
        zone = self.zones.zone_at(address)
        if zone is None:
            raise InvalidPointerError(f"address {address:#x} is not mapped")
        try:
            return zone.read(address, length)
        except ValueError as exc:
            raise InvalidPointerError(str(exc)) from None

    def write(self, address: int, data: bytes) -> None:
        """Write ``data`` into heap memory."""
        zone = self.zones.zone_at(address)
        if zone is None:
            raise InvalidPointerError(f"address {address:#x} is not mapped")
        try:
            zone.write(address, bytes(data))
        except ValueError as exc:
            raise InvalidPointerError(str(exc)) from None

    def close(self) -> None:
        """Unmap every zone when the CLEAN mode flag is set."""
        with self._lock:
            if Mode.CLEAN not in self.mode:
                return
            for zone_type in (ZoneType.TINY, ZoneType.SMALL, ZoneType.LARGE):
                for zone in self.zones.zones(zone_type):
                    self.zones.unmap_zone(zone)