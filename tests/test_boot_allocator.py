import pytest

from kernmem.boot_allocator import (
    MAX_REGIONS,
    BootAllocation,
    BootAllocator,
    MemType,
    Region,
    sort_and_merge,
)
from kernmem.layout import HIGHMEM_END, LOWMEM_START, PAGE_SIZE, TO_FREE, TO_KEEP, Zone
from kernmem.multiboot import MemoryKind, MmapEntry
from kernmem.panic import KernelPanic

RAM_END = 0x7FE0000
KERNEL = (0x100000, 0x200000)
ENTRIES = (
    MmapEntry(0x0, 0x9FC00, MemoryKind.AVAILABLE),
    MmapEntry(0x9FC00, 0x400, MemoryKind.RESERVED),
    MmapEntry(0x100000, RAM_END - 0x100000, MemoryKind.AVAILABLE),
    MmapEntry(RAM_END, 0x20000, MemoryKind.RESERVED),
    MmapEntry(0xFFFC0000, 0x40000, MemoryKind.RESERVED),
)


@pytest.fixture
def boot():
    allocator = BootAllocator()
    allocator.init(ENTRIES, [KERNEL])
    return allocator


def test_sort_and_merge_joins_contiguous_regions():
    regions = [Region(0x3000, 0x4000), Region(0x1000, 0x2000),
               Region(0x2000, 0x3000), Region(0x5000, 0x6000)]
    assert sort_and_merge(regions) == [Region(0x1000, 0x4000), Region(0x5000, 0x6000)]
    assert sort_and_merge([]) == []


def test_init_builds_region_tables(boot):
    assert boot.regions(MemType.RESERVED) == (
        Region(0, KERNEL[1]), Region(RAM_END, RAM_END + 0x20000), Region(0xFFFC0000, 0))
    assert boot.regions(MemType.FREE) == (Region(KERNEL[1], RAM_END),)
    assert boot.regions(MemType.HOLES) == (Region(RAM_END + 0x20000, 0xFFFC0000),)
    assert boot.total_pages == HIGHMEM_END // PAGE_SIZE


def test_free_regions_never_overlap_reserved(boot):
    for region in boot.regions(MemType.FREE):
        assert not boot.range_overlaps(region.start, region.end, MemType.RESERVED)


def test_init_splits_regions_into_zones(boot):
    assert boot.free_zones(Zone.DMA) == (Region(KERNEL[1], LOWMEM_START),)
    assert boot.free_zones(Zone.LOWMEM) == (Region(LOWMEM_START, RAM_END),)
    assert boot.free_zones(Zone.HIGHMEM) == ()
    assert boot.reserved_zones(Zone.DMA) == (Region(0, KERNEL[1]),)
    assert boot.reserved_zones(Zone.LOWMEM) == (Region(RAM_END, RAM_END + 0x20000),)
    assert boot.reserved_zones(Zone.HIGHMEM) == ()


def test_alloc_takes_top_of_zone(boot):
    addr = boot.alloc(PAGE_SIZE, Zone.LOWMEM, TO_FREE)
    assert addr == RAM_END - PAGE_SIZE
    assert boot.free_zones(Zone.LOWMEM) == (Region(LOWMEM_START, addr),)
    assert boot.reserved_zones(Zone.LOWMEM) == (Region(addr, RAM_END + 0x20000),)
    assert boot.allocations == (BootAllocation(addr, PAGE_SIZE, False),)


def test_alloc_consumes_whole_region(boot):
    addr = boot.alloc(RAM_END - LOWMEM_START, Zone.LOWMEM, TO_KEEP)
    assert addr == LOWMEM_START
    assert boot.free_zones(Zone.LOWMEM) == ()
    with pytest.raises(MemoryError):
        boot.alloc(PAGE_SIZE, Zone.LOWMEM, TO_KEEP)


def test_alloc_refused_when_frozen(boot):
    boot.freeze()
    with pytest.raises(RuntimeError):
        boot.alloc(PAGE_SIZE, Zone.DMA, TO_KEEP)
    with pytest.raises(RuntimeError):
        boot.alloc_at(PAGE_SIZE, Zone.DMA, TO_KEEP, 0, LOWMEM_START, PAGE_SIZE)


def test_alloc_at_aligned_splits_region(boot):
    addr = boot.alloc_at(PAGE_SIZE, Zone.DMA, TO_KEEP, 0x300800, 0x400000, PAGE_SIZE)
    assert addr == 0x301000
    assert boot.free_zones(Zone.DMA) == (
        Region(KERNEL[1], addr), Region(addr + PAGE_SIZE, LOWMEM_START))
    assert Region(addr, addr + PAGE_SIZE) in boot.reserved_zones(Zone.DMA)


def test_alloc_at_without_alignment(boot):
    addr = boot.alloc_at(0x10, Zone.DMA, TO_FREE, 0x300800, 0x400000, None)
    assert addr == 0x300800
    assert boot.allocations[-1] == BootAllocation(0x300800, 0x10, False)


def test_alloc_at_region_start_removes_head(boot):
    addr = boot.alloc_at(PAGE_SIZE, Zone.DMA, TO_KEEP, 0, 0x400000, PAGE_SIZE)
    assert addr == KERNEL[1]
    assert boot.free_zones(Zone.DMA) == (Region(KERNEL[1] + PAGE_SIZE, LOWMEM_START),)


def test_alloc_at_invalid_parameters(boot):
    with pytest.raises(ValueError):
        boot.alloc_at(0, Zone.DMA, TO_KEEP, 0, 0x400000, None)
    with pytest.raises(ValueError):
        boot.alloc_at(PAGE_SIZE, Zone.DMA, TO_KEEP, 0x400000, 0x400800, None)


def test_alloc_at_without_fit(boot):
    with pytest.raises(MemoryError):
        boot.alloc_at(PAGE_SIZE, Zone.DMA, TO_KEEP, 0, KERNEL[0], None)


def test_add_region_rules():
    allocator = BootAllocator()
    with pytest.raises(KernelPanic):
        allocator.add_region(0x2000, 0x1000, MemType.RESERVED)
    allocator.add_region(0x1000, 0x1000, MemType.FREE)
    assert allocator.regions(MemType.FREE) == ()
    allocator.add_region(0xF000, 0, MemType.RESERVED)
    assert allocator.regions(MemType.RESERVED) == (Region(0xF000, 0),)


def test_add_region_limit():
    allocator = BootAllocator()
    for index in range(MAX_REGIONS):
        allocator.add_region(index * 2, index * 2 + 1, MemType.HOLES)
    with pytest.raises(KernelPanic):
        allocator.add_region(MAX_REGIONS * 2, MAX_REGIONS * 2 + 1, MemType.HOLES)
    assert len(allocator.regions(MemType.HOLES)) == MAX_REGIONS


def test_range_overlaps(boot):
    assert boot.range_overlaps(KERNEL[1] - PAGE_SIZE, KERNEL[1] + PAGE_SIZE, MemType.RESERVED)
    assert not boot.range_overlaps(KERNEL[1], KERNEL[1] + PAGE_SIZE, MemType.RESERVED)
    assert boot.range_overlaps(KERNEL[1], KERNEL[1] + PAGE_SIZE, MemType.FREE)


def test_reports(boot):
    assert "No allocations have been made yet." in boot.allocations_report()
    boot.alloc(PAGE_SIZE, Zone.DMA, True)
    assert boot.allocations_report().splitlines()[3].endswith("Yes")
    assert f"0x{KERNEL[1]:08x} -> 0x{RAM_END:08x}" in boot.layout_report()
    assert f"0x{LOWMEM_START:08x} -> 0x{RAM_END:08x}" in boot.free_zones_report()
    assert f"0x{RAM_END:08x}" in boot.reserved_zones_report()


def test_invalid_zone_rejected(boot):
    with pytest.raises(ValueError):
        boot.free_zones(Zone.INVALID)