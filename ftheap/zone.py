"""Zones: simulated memory mappings that the heap carves chunks out of."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Iterator, Optional

from .layout import (
    ZONE_MAGIC,
    Stats,
    ZoneType,
    align_up,
    small_zone_size,
    tiny_zone_size,
)

_WORD = struct.Struct("<Q")

BASE_ADDRESS = 0x10000000


@dataclass(eq=False)
class Zone:
    """One mapped region; its first word holds the zone magic."""

    address: int
    size: int
    zone_type: ZoneType
    memory: bytearray = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.memory = bytearray(self.size)
        _WORD.pack_into(self.memory, 0, ZONE_MAGIC)

    @property
    def end(self) -> int:
        return self.address + self.size

    def contains(self, address: int) -> bool:
        """True if ``address`` lies strictly after the zone start and before its end."""
        return self.address < address < self.end

    def _offset(self, address: int, length: int) -> int:
        offset = address - self.address
        if length < 0 or offset < 0 or offset + length > self.size:
            raise ValueError(
                f"range {address:#x}+{length} is outside zone {self.address:#x}"
            )
        return offset

    def read(self, address: int, length: int) -> bytes:
        """Return ``length`` bytes starting at ``address``."""
        offset = self._offset(address, length)
        return bytes(self.memory[offset : offset + length])

    def write(self, address: int, data: bytes) -> None:
        """Store ``data`` starting at ``address``."""
        offset = self._offset(address, len(data))
        self.memory[offset : offset + len(data)] = data


class ZoneMap:
    """The set of mapped zones, kept per zone type, most recent first."""

    def __init__(
        self,
        stats: Optional[Stats] = None,
        page_size: int = 4096,
        max_mapped: Optional[int] = None,
    ) -> None:
        if page_size <= 0 or page_size & (page_size - 1):
            raise ValueError(f"page size must be a power of two, got {page_size}")
        self.stats = Stats() if stats is None else stats
        self.page_size = page_size
        self.max_mapped = max_mapped
        self._lists: dict[ZoneType, list[Zone]] = {
            ZoneType.TINY: [],
            ZoneType.SMALL: [],
            ZoneType.LARGE: [],
        }
        self._next_address = BASE_ADDRESS

    def map_zone(self, zone_type: ZoneType, size: int = 0) -> Optional[Zone]:
        """Map a new zone; tiny and small zones have a fixed size.

        Returns None when the mapping cannot be made.
        """
        zone_type = ZoneType(zone_type)
        if zone_type is ZoneType.TINY:
            size = tiny_zone_size(self.page_size)
        elif zone_type is ZoneType.SMALL:
            size = small_zone_size(self.page_size)
        elif zone_type is ZoneType.BOUNDARY:
            raise ValueError("boundary is not a zone type that can be mapped")
        self.stats.mmap_calls += 1
        if size <= 0:
            return None
        if self.max_mapped is not None and self.stats.memory_mapped + size > self.max_mapped:
            return None
        zone = Zone(self._next_address, size, zone_type)
        self._next_address += align_up(size, self.page_size) + self.page_size
        self.stats.memory_mapped += size
        self._lists[zone_type].insert(0, zone)
        return zone

    def unmap_zone(self, zone: Zone) -> None:
        """Release ``zone``."""
        zones = self._lists[zone.zone_type]
        if zone not in zones:
            raise ValueError(f"zone {zone.address:#x} is not mapped")
        zones.remove(zone)
        self.stats.memory_mapped -= zone.size
        self.stats.munmap_calls += 1

    def _all(self) -> Iterator[Zone]:
        for zones in self._lists.values():
            yield from zones

    def zone_at(self, address: int) -> Optional[Zone]:
        """The zone whose bytes include ``address``, or None."""
        for zone in self._all():
            if zone.address <= address < zone.end:
                return zone
        return None

    def contains(self, address: int) -> bool:
        """True if some zone contains ``address`` in the strict sense."""
        return any(zone.contains(address) for zone in self._all())

    def zones(self, zone_type: ZoneType) -> tuple[Zone, ...]:
        """The zones of one type, most recently mapped first."""
        return tuple(self._lists[ZoneType(zone_type)])