import pytest

from ftheap.chunk import ChunkHeap
from ftheap.layout import (
    BOUNDARY_SIZE,
    MIN_ALLOC_SIZE,
    ZONE_HEADER_SIZE,
    Mode,
    Stats,
    ZoneType,
)
from ftheap.zone import ZoneMap


def make_heap(mode=Mode(0)):
    return ChunkHeap(ZoneMap(Stats()), mode)


def test_map_chunk_layout():
    heap = make_heap()
    chunk = heap.map_chunk(ZoneType.TINY)
    zone = heap.zones.zones(ZoneType.TINY)[0]
    assert chunk.address == zone.address + ZONE_HEADER_SIZE + BOUNDARY_SIZE
    assert chunk.size == zone.size - ZONE_HEADER_SIZE - 2 * BOUNDARY_SIZE
    assert chunk.prev_in_use and not chunk.in_use
    assert heap.read_chunk(chunk.end).zone_type is ZoneType.BOUNDARY
    assert heap.free_list(ZoneType.TINY) == [chunk]


def test_allocate_splits_and_free_merges():
    heap = make_heap()
    free = heap.map_chunk(ZoneType.TINY)
    used = heap.allocate_chunk(free.address, 0x18)
    assert used.in_use and used.used == 0x18
    assert used.size == MIN_ALLOC_SIZE
    assert used.data_address % 16 == 0
    rest = heap.read_chunk(used.end)
    assert rest.prev_in_use and rest.size == free.size - used.size
    assert heap.stats.allocation_count == 1
    heap.free_chunk(used.address)
    merged = heap.fuse_neighbours(used.address)
    assert merged.address == free.address and merged.size == free.size
    assert heap.stats.memory_used == 0


def test_fuse_with_previous_chunk():
    heap = make_heap()
    free = heap.map_chunk(ZoneType.SMALL)
    a = heap.allocate_chunk(free.address, 100)
    b = heap.allocate_chunk(heap.find_free_chunk(ZoneType.SMALL, 1).address, 100)
    heap.allocate_chunk(heap.find_free_chunk(ZoneType.SMALL, 1).address, 100)
    heap.free_chunk(a.address)
    heap.fuse_neighbours(a.address)
    heap.free_chunk(b.address)
    merged = heap.fuse_neighbours(b.address)
    assert merged.address == a.address
    assert merged.size == a.size + b.size


def test_unmap_empty_zone():
    heap = make_heap()
    free = heap.map_chunk(ZoneType.TINY)
    assert heap.unmap_empty_zone(free.address)
    assert heap.zones.zones(ZoneType.TINY) == ()
    assert heap.free_list(ZoneType.TINY) == []


def test_performance_mode_keeps_last_zone():
    heap = make_heap(Mode.PERFORMANCE)
    free = heap.map_chunk(ZoneType.TINY)
    assert not heap.unmap_empty_zone(free.address)
    assert len(heap.zones.zones(ZoneType.TINY)) == 1


def test_unmap_refuses_partial_zone():
    heap = make_heap()
    free = heap.map_chunk(ZoneType.TINY)
    used = heap.allocate_chunk(free.address, 8)
    assert not heap.unmap_empty_zone(used.end)


def test_enlarge_chunk():
    heap = make_heap()
    free = heap.map_chunk(ZoneType.SMALL)
    used = heap.allocate_chunk(free.address, 100)
    grown = heap.enlarge_chunk(used.address, 400)
    assert grown.address == used.address and grown.used == 400
    assert grown.size >= 400
    assert heap.read_chunk(grown.end).prev_in_use


def test_enlarge_blocked_by_used_neighbour():
    heap = make_heap()
    free = heap.map_chunk(ZoneType.SMALL)
    a = heap.allocate_chunk(free.address, 100)
    heap.allocate_chunk(heap.find_free_chunk(ZoneType.SMALL, 1).address, 100)
    assert heap.enlarge_chunk(a.address, 400) is None


def test_find_free_chunk_none():
    heap = make_heap()
    assert heap.find_free_chunk(ZoneType.TINY, 16) is None


def test_large_chunk_round_trip():
    heap = make_heap()
    large = heap.map_large_chunk(5000)
    assert large.used == 5000
    assert large.size % heap.zones.page_size == 0
    assert large.data_address % 16 == 0
    assert heap.read_large_chunk(large.address) == large
    same = heap.expand_large_chunk(large.address, 6000)
    assert same.address == large.address and same.used == 6000
    zone = heap.zones.zone_at(large.data_address)
    zone.write(large.data_address, b"payload")
    moved = heap.expand_large_chunk(large.address, large.size * 2)
    assert moved.address != large.address
    assert heap.zones.zone_at(moved.data_address).read(moved.data_address, 7) == b"payload"
    assert len(heap.zones.zones(ZoneType.LARGE)) == 1
    heap.unmap_large_chunk(moved.address)
    assert heap.zones.zones(ZoneType.LARGE) == ()
    with pytest.raises(ValueError):
        heap.unmap_large_chunk(moved.address)