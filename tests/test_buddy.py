import pytest

from kernmem.boot_allocator import BootAllocator
from kernmem.buddy import (
    BAD_ORDER,
    MAX_ORDER,
    BuddyAllocator,
    order_name,
    order_to_bytes,
    size_to_order,
)
from kernmem.layout import LOWMEM_START, MIB, PAGE_SIZE, Zone
from kernmem.multiboot import MmapEntry
from kernmem.page import PageDescriptors, PageState
from kernmem.panic import KernelPanic

RAM_START = 0x100000
RAM_END = 64 * MIB


@pytest.fixture
def system():
    boot = BootAllocator()
    boot.init([MmapEntry(RAM_START, RAM_END - RAM_START)])
    pages = PageDescriptors(boot)
    buddy = BuddyAllocator(pages, boot)
    return boot, pages, buddy


@pytest.mark.parametrize(
    "size, order",
    [(0, 0), (1, 0), (PAGE_SIZE, 0), (PAGE_SIZE + 1, 1), (4 * MIB, MAX_ORDER),
     (4 * MIB + 1, BAD_ORDER)],
)
def test_size_to_order(size, order):
    assert size_to_order(size) == order


def test_order_name():
    assert order_name(0) == "4KiB"
    assert order_name(MAX_ORDER) == "4MiB"
    assert order_name(BAD_ORDER) == "Unknown order"


def test_init_freezes_boot_allocator(system):
    boot, _, _ = system
    assert boot.frozen
    with pytest.raises(RuntimeError):
        boot.alloc(PAGE_SIZE, Zone.DMA, False)


def test_init_collects_available_memory(system):
    _, pages, buddy = system
    dma_free = LOWMEM_START - RAM_START
    assert buddy.free_bytes(Zone.DMA) == dma_free
    assert buddy.free_bytes(Zone.HIGHMEM) == 0
    total = sum(buddy.free_bytes(z) for z in (Zone.LOWMEM, Zone.DMA, Zone.HIGHMEM))
    assert total == pages.free_count() * PAGE_SIZE
    assert len(buddy.free_blocks(Zone.DMA, MAX_ORDER)) == 3


def test_alloc_and_free_round_trip(system):
    _, pages, buddy = system
    before = {o: buddy.free_blocks(Zone.LOWMEM, o) for o in range(MAX_ORDER + 1)}
    total = buddy.free_bytes(Zone.LOWMEM)

    addr = buddy.alloc_pages(PAGE_SIZE, Zone.LOWMEM)
    assert addr % PAGE_SIZE == 0
    assert pages.by_addr(addr).state() == PageState.ALLOCATED
    assert buddy.block_size(addr) == PAGE_SIZE
    assert buddy.free_bytes(Zone.LOWMEM) == total - PAGE_SIZE

    buddy.free_block(addr)
    assert buddy.free_bytes(Zone.LOWMEM) == total
    after = {o: buddy.free_blocks(Zone.LOWMEM, o) for o in range(MAX_ORDER + 1)}
    assert {o: sorted(v) for o, v in after.items()} == {o: sorted(v) for o, v in before.items()}


def test_split_leaves_one_block_per_lower_order(system):
    _, _, buddy = system
    assert all(not buddy.free_blocks(Zone.LOWMEM, o) for o in range(MAX_ORDER))
    addr = buddy.alloc_pages(PAGE_SIZE, Zone.LOWMEM)
    for order in range(MAX_ORDER):
        assert len(buddy.free_blocks(Zone.LOWMEM, order)) == 1
    assert addr not in buddy.free_blocks(Zone.LOWMEM, 0)
    buddy.check_lists(Zone.LOWMEM)
    assert buddy.free_blocks(Zone.LOWMEM, 0)[0] == addr + PAGE_SIZE


def test_large_block_size_and_tail_pages(system):
    _, pages, buddy = system
    addr = buddy.alloc_pages(order_to_bytes(3), Zone.DMA)
    assert buddy.block_size(addr) == order_to_bytes(3)
    assert buddy.block_size(addr + PAGE_SIZE) == 0
    assert all(
        pages.by_addr(addr + i * PAGE_SIZE).state() == PageState.ALLOCATED for i in range(8)
    )
    with pytest.raises(KernelPanic):
        buddy.free_block(addr + PAGE_SIZE)


def test_double_free_panics(system):
    _, _, buddy = system
    addr = buddy.alloc_pages(PAGE_SIZE, Zone.DMA)
    buddy.free_block(addr)
    with pytest.raises(KernelPanic, match="Double free"):
        buddy.free_block(addr)


def test_reserved_page_free_panics(system):
    _, _, buddy = system
    with pytest.raises(KernelPanic, match="invalid state"):
        buddy.free_block(0)


def test_alloc_failures_return_none(system):
    _, _, buddy = system
    assert buddy.alloc_pages(4 * MIB + 1, Zone.LOWMEM) is None
    assert buddy.alloc_pages(PAGE_SIZE, Zone.HIGHMEM) is None
    with pytest.raises(ValueError):
        buddy.alloc_pages(PAGE_SIZE, Zone.INVALID)


def test_exhausting_a_zone(system):
    _, _, buddy = system
    blocks = []
    while (addr := buddy.alloc_pages(4 * MIB, Zone.LOWMEM)) is not None:
        blocks.append(addr)
    assert len(set(blocks)) == len(blocks)
    assert all(not buddy.free_blocks(Zone.LOWMEM, MAX_ORDER) for _ in [0])
    for addr in blocks:
        buddy.free_block(addr)
    assert sorted(buddy.free_blocks(Zone.LOWMEM, MAX_ORDER)) == sorted(blocks)


def test_check_lists_detects_corruption(system):
    _, pages, buddy = system
    addr = buddy.free_blocks(Zone.DMA, MAX_ORDER)[0]
    pages.by_addr(addr).set_state(PageState.ALLOCATED)
    with pytest.raises(KernelPanic, match="corrupted"):
        buddy.check_lists(Zone.DMA)


def test_reports(system):
    _, _, buddy = system
    dma = buddy.report(Zone.DMA)
    assert dma.startswith("\n--- Buddy Free Blocks in Zone: DMA zone ---\n")
    assert "[4MiB:3]" in dma
    assert buddy.report(Zone.HIGHMEM).endswith("(empty)\n")
    total = sum(buddy.free_bytes(z) for z in (Zone.LOWMEM, Zone.DMA, Zone.HIGHMEM))
    summary = buddy.summary()
    assert f"Total Free Kernel Memory: {total // 1024} KiB ({total // MIB} MiB)\n" in summary
    assert "HIGHMEM zone" in summary