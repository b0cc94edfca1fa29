"""Chunk management inside zones: splitting, merging and large mappings."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional

from .layout import (
    ALLOCATED_HEADER_SIZE,
    BOUNDARY_SIZE,
    CHUNK_FIELD_LIMIT,
    CHUNK_HEADER_SIZE,
    FOOTER_SIZE,
    LARGE_HEADER_SIZE,
    LINK_SIZE,
    MIN_ALLOC_SIZE,
    ZONE_HEADER_SIZE,
    ZONE_MAGIC,
    Mode,
    ZoneType,
    align_up,
)
from .zone import ZoneMap

_WORD = struct.Struct("<Q")
_FOOTER = struct.Struct("<I")
_SIGNED_FOOTER = struct.Struct("<i")
_FIELD_MASK = CHUNK_FIELD_LIMIT - 1
_USED_SHIFT = 30
_IN_USE_SHIFT = 60
_PREV_IN_USE_SHIFT = 61
_TYPE_SHIFT = 62
_LARGE_USED_MASK = (1 << 62) - 1


@dataclass(frozen=True)
class Chunk:
    """A snapshot of one chunk header; links are 0 unless the chunk is free."""

    address: int
    size: int
    used: int
    in_use: bool
    prev_in_use: bool
    zone_type: ZoneType
    next: int = 0
    prev: int = 0

    @property
    def data_address(self) -> int:
        return self.address + ALLOCATED_HEADER_SIZE

    @property
    def end(self) -> int:
        return self.address + self.size


@dataclass(frozen=True)
class LargeChunk:
    """A snapshot of the header of an allocation that owns a whole zone."""

    address: int
    size: int
    used: int
    zone_type: ZoneType = ZoneType.LARGE

    @property
    def data_address(self) -> int:
        return self.address + LARGE_HEADER_SIZE


@dataclass
class _Header:
    size: int
    used: int
    in_use: bool
    prev_in_use: bool
    zone_type: ZoneType

    @classmethod
    def decode(cls, word: int) -> "_Header":
        return cls(
            size=word & _FIELD_MASK,
            used=(word >> _USED_SHIFT) & _FIELD_MASK,
            in_use=bool((word >> _IN_USE_SHIFT) & 1),
            prev_in_use=bool((word >> _PREV_IN_USE_SHIFT) & 1),
            zone_type=ZoneType(word >> _TYPE_SHIFT),
        )

    def encode(self) -> int:
        if not 0 <= self.size < CHUNK_FIELD_LIMIT or not 0 <= self.used < CHUNK_FIELD_LIMIT:
            raise ValueError("chunk size or usage does not fit the header")
        return (
            self.size
            | self.used << _USED_SHIFT
            | int(self.in_use) << _IN_USE_SHIFT
            | int(self.prev_in_use) << _PREV_IN_USE_SHIFT
            | int(self.zone_type) << _TYPE_SHIFT
        )


class ChunkHeap:
    """Chunks and free lists laid out in the memory of a ZoneMap."""

    def __init__(self, zones: ZoneMap, mode: Mode = Mode(0)) -> None:
        self.zones = zones
        self.stats = zones.stats
        self.mode = Mode(mode)
        self._heads = {ZoneType.TINY: 0, ZoneType.SMALL: 0, ZoneType.LARGE: 0}

    # raw memory access

    def _read(self, address: int, length: int) -> bytes:
        zone = self.zones.zone_at(address)
        if zone is None:
            raise ValueError(f"address {address:#x} is not mapped")
        return zone.read(address, length)

    def _write(self, address: int, data: bytes) -> None:
        zone = self.zones.zone_at(address)
        if zone is None:
            raise ValueError(f"address {address:#x} is not mapped")
        zone.write(address, data)

    def _word(self, address: int) -> int:
        return _WORD.unpack(self._read(address, 8))[0]

    def _set_word(self, address: int, value: int) -> None:
        self._write(address, _WORD.pack(value))

    def _header(self, address: int) -> _Header:
        return _Header.decode(self._word(address))

    def _store(self, address: int, header: _Header) -> None:
        self._set_word(address, header.encode())

    def _set_prev_in_use(self, address: int, value: bool) -> None:
        header = self._header(address)
        header.prev_in_use = value
        self._store(address, header)

    def _set_footer(self, address: int, size: int) -> None:
        self._write(address + size - FOOTER_SIZE, _FOOTER.pack(size & 0xFFFFFFFF))

    def _next_link(self, address: int) -> int:
        return self._word(address + 8)

    def _prev_link(self, address: int) -> int:
        return self._word(address + 16)

    def _set_next_link(self, address: int, value: int) -> None:
        self._set_word(address + 8, value)

    def _set_prev_link(self, address: int, value: int) -> None:
        self._set_word(address + 16, value)

    def _link(self, address: int, zone_type: ZoneType) -> None:
        head = self._heads[zone_type]
        self._set_prev_link(address, 0)
        if head:
            self._set_prev_link(head, address)
            self._set_next_link(address, head)
        else:
            self._set_next_link(address, 0)
        self._heads[zone_type] = address

    def _unlink(self, address: int, zone_type: ZoneType) -> None:
        nxt = self._next_link(address)
        prv = self._prev_link(address)
        if nxt:
            self._set_prev_link(nxt, prv)
        if not prv:
            self._heads[zone_type] = nxt
        else:
            self._set_next_link(prv, nxt)

    # inspection

    def read_chunk(self, address: int) -> Chunk:
        """Decode the chunk header at ``address``."""
        header = self._header(address)
        nxt = prv = 0
        if not header.in_use and header.zone_type is not ZoneType.BOUNDARY:
            nxt = self._next_link(address)
            prv = self._prev_link(address)
        return Chunk(
            address,
            header.size,
            header.used,
            header.in_use,
            header.prev_in_use,
            header.zone_type,
            nxt,
            prv,
        )

    def read_large_chunk(self, address: int) -> LargeChunk:
        """Decode the large-allocation header at ``address``."""
        size = self._word(address)
        word = self._word(address + 8)
        return LargeChunk(address, size, word & _LARGE_USED_MASK, ZoneType(word >> _TYPE_SHIFT))

    def free_list(self, zone_type: ZoneType) -> list[Chunk]:
        """The free chunks of one zone type, in list order."""
        chunks = []
        address = self._heads[ZoneType(zone_type)]
        while address:
            chunk = self.read_chunk(address)
            chunks.append(chunk)
            address = chunk.next
        return chunks

    # small and tiny chunks

    def setup_free_chunk(self, address: int, zone_type: ZoneType, size: int) -> Chunk:
        """Write a free chunk header and footer and put it on its free list."""
        zone_type = ZoneType(zone_type)
        self._write(address, bytes(CHUNK_HEADER_SIZE))
        self._store(address, _Header(size, 0, False, False, zone_type))
        self._set_footer(address, size)
        self._link(address, zone_type)
        return self.read_chunk(address)

    def fuse_neighbours(self, address: int) -> Chunk:
        """Merge a free chunk with free neighbours; return the merged chunk."""
        header = self._header(address)
        next_address = address + header.size
        neighbour = self._header(next_address)
        if not neighbour.in_use and neighbour.zone_type is not ZoneType.BOUNDARY:
            self._unlink(next_address, header.zone_type)
            header.size += neighbour.size
            self._store(address, header)
            self._set_footer(address, header.size)
        if header.prev_in_use:
            return self.read_chunk(address)
        offset = _SIGNED_FOOTER.unpack(self._read(address - FOOTER_SIZE, FOOTER_SIZE))[0]
        prev_address = address - offset
        previous = self._header(prev_address)
        if previous.zone_type is ZoneType.BOUNDARY:
            return self.read_chunk(address)
        self._unlink(address, header.zone_type)
        previous.size += header.size
        self._store(prev_address, previous)
        self._set_footer(prev_address, previous.size)
        return self.read_chunk(prev_address)

    def find_free_chunk(self, zone_type: ZoneType, size: int) -> Optional[Chunk]:
        """First free chunk of at least ``size`` bytes, or None."""
        return next((c for c in self.free_list(zone_type) if c.size >= size), None)

    def allocate_chunk(self, address: int, size: int) -> Chunk:
        """Mark the free chunk at ``address`` used for ``size`` bytes, splitting off the rest."""
        header = self._header(address)
        self._unlink(address, header.zone_type)
        free_size = header.size
        header.in_use = True
        header.used = size
        total = max(align_up(size + ALLOCATED_HEADER_SIZE, 16), MIN_ALLOC_SIZE)
        if free_size - total < MIN_ALLOC_SIZE:
            header.size = free_size
            self._store(address, header)
            self._set_prev_in_use(address + free_size, True)
        else:
            header.size = total
            self._store(address, header)
            leftover = self.setup_free_chunk(address + total, header.zone_type, free_size - total)
            self._set_prev_in_use(leftover.address, True)
        self.stats.allocation_count += 1
        self.stats.memory_used += size
        return self.read_chunk(address)

    def enlarge_chunk(self, address: int, size: int) -> Optional[Chunk]:
        """Grow a used chunk into its free successor; None if that is impossible."""
        header = self._header(address)
        next_address = address + header.size
        neighbour = self._header(next_address)
        if (
            neighbour.in_use
            or neighbour.size + header.size - ALLOCATED_HEADER_SIZE < size
            or neighbour.zone_type is ZoneType.BOUNDARY
        ):
            return None
        self._unlink(next_address, neighbour.zone_type)
        self.stats.memory_used += size - header.used
        header.used = size
        total = align_up(size + ALLOCATED_HEADER_SIZE, 16)
        remaining = neighbour.size - (total - header.size)
        if remaining < MIN_ALLOC_SIZE:
            header.size += neighbour.size
            self._store(address, header)
            self._set_prev_in_use(address + header.size, True)
        else:
            header.size = total
            self._store(address, header)
            leftover = self.setup_free_chunk(address + total, header.zone_type, remaining)
            self._set_prev_in_use(leftover.address, True)
        return self.read_chunk(address)

    def free_chunk(self, address: int) -> Chunk:
        """Return a used chunk to its free list."""
        header = self._header(address)
        self.stats.allocation_count -= 1
        self.stats.memory_used -= header.used
        header.in_use = False
        header.used = 0
        self._store(address, header)
        self._set_prev_in_use(address + header.size, False)
        self._write(address + ALLOCATED_HEADER_SIZE, bytes(LINK_SIZE))
        self._link(address, header.zone_type)
        self._set_footer(address, header.size)
        return self.read_chunk(address)

    def _write_boundary(self, address: int) -> None:
        self._write(address, bytes(BOUNDARY_SIZE))
        self._store(address, _Header(BOUNDARY_SIZE, 0, False, False, ZoneType.BOUNDARY))

    def map_chunk(self, zone_type: ZoneType) -> Optional[Chunk]:
        """Map a new zone and return the single free chunk between its boundaries."""
        zone = self.zones.map_zone(zone_type)
        if zone is None:
            return None
        start = zone.address + ZONE_HEADER_SIZE
        self._write_boundary(start)
        free = self.setup_free_chunk(
            start + BOUNDARY_SIZE,
            zone_type,
            zone.size - ZONE_HEADER_SIZE - 2 * BOUNDARY_SIZE,
        )
        self._set_prev_in_use(free.address, True)
        self._write_boundary(free.end)
        return self.read_chunk(free.address)

    def unmap_empty_zone(self, address: int) -> bool:
        """Unmap the zone if the free chunk at ``address`` fills it; report whether it did."""
        before = address - ALLOCATED_HEADER_SIZE
        if self._header(before).zone_type is not ZoneType.BOUNDARY:
            return False
        header = self._header(address)
        if self._header(address + header.size).zone_type is not ZoneType.BOUNDARY:
            return False
        zone_address = before - ZONE_HEADER_SIZE
        zone = self.zones.zone_at(zone_address)
        if zone is None or zone.address != zone_address or self._word(zone_address) != ZONE_MAGIC:
            return False
        if Mode.PERFORMANCE in self.mode and len(self.zones.zones(zone.zone_type)) == 1:
            return False
        self._unlink(address, header.zone_type)
        self.zones.unmap_zone(zone)
        return True

    # large allocations

    def map_large_chunk(self, size: int) -> Optional[LargeChunk]:
        """Map a zone of its own for an allocation of ``size`` bytes."""
        total = align_up(size + ZONE_HEADER_SIZE + CHUNK_HEADER_SIZE, self.zones.page_size)
        zone = self.zones.map_zone(ZoneType.LARGE, total)
        if zone is None:
            return None
        address = zone.address + ZONE_HEADER_SIZE
        self._set_word(address, total)
        self._set_word(address + 8, (size & _LARGE_USED_MASK) | int(ZoneType.LARGE) << _TYPE_SHIFT)
        return self.read_large_chunk(address)

    def expand_large_chunk(self, address: int, size: int) -> Optional[LargeChunk]:
        """Resize a large allocation, moving it to a new mapping if it must grow."""
        large = self.read_large_chunk(address)
        if large.size - LARGE_HEADER_SIZE >= size:
            self.stats.memory_used += size - large.used
            self._set_word(address + 8, size | int(large.zone_type) << _TYPE_SHIFT)
            return self.read_large_chunk(address)
        mapped = self.map_large_chunk(align_up(size, 8) + LARGE_HEADER_SIZE)
        if mapped is None:
            return None
        self.stats.memory_used += size - large.used
        self._write(mapped.data_address, self._read(large.data_address, large.used))
        self.unmap_large_chunk(address)
        return mapped

    def unmap_large_chunk(self, address: int) -> None:
        """Release the zone that holds the large allocation at ``address``."""
        zone_address = address - ZONE_HEADER_SIZE
        zone = self.zones.zone_at(zone_address)
        if zone is None or zone.address != zone_address:
            raise ValueError(f"no large allocation at {address:#x}")
        self.zones.unmap_zone(zone)