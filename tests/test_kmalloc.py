import pytest

from kernmem.boot_allocator import BootAllocator
from kernmem.buddy import BuddyAllocator
from kernmem.kmalloc import MAX_KMALLOC_SIZE, KernelHeap
from kernmem.layout import (
    GFP_DMA,
    GFP_KERNEL,
    PAGE_SIZE,
    Gfp,
    Zone,
    align_down,
    virt_to_phys,
    zone_of,
)
from kernmem.multiboot import MmapEntry
from kernmem.page import PageDescriptors, PageState
from kernmem.physmem import PhysicalMemory
from kernmem.slab import SlabAllocator

RAM_START = 0x100000
RAM_END = 0x2800000


@pytest.fixture
def env():
    boot = BootAllocator()
    boot.init([MmapEntry(RAM_START, RAM_END - RAM_START)])
    pages = PageDescriptors(boot)
    buddy = BuddyAllocator(pages, boot)
    slab = SlabAllocator(pages, buddy)
    memory = PhysicalMemory()
    return KernelHeap(pages, buddy, slab, memory)


def test_zero_and_oversized_requests_fail(env):
    assert env.kmalloc(0) is None
    assert env.kmalloc(MAX_KMALLOC_SIZE + 1) is None


def test_small_request_comes_from_slab(env):
    ptr = env.kmalloc(100)
    assert env.pages.by_addr(virt_to_phys(ptr)).state() == PageState.SLAB
    assert env.ksize(ptr) == 128


def test_large_request_comes_from_buddy(env):
    ptr = env.kmalloc(5000)
    phys = virt_to_phys(ptr)
    assert env.pages.by_addr(phys).state() == PageState.ALLOCATED
    assert env.ksize(ptr) == env.buddy.block_size(phys)
    assert env.ksize(ptr) >= 5000 and env.ksize(ptr) % PAGE_SIZE == 0
    assert env.ksize(ptr + PAGE_SIZE) == 0


def test_largest_request_is_served(env):
    ptr = env.kmalloc(MAX_KMALLOC_SIZE, GFP_DMA)
    assert env.ksize(ptr) == MAX_KMALLOC_SIZE


@pytest.mark.parametrize("size", [64, 3 * PAGE_SIZE])
def test_zone_follows_dma_flag(env, size):
    assert zone_of(virt_to_phys(env.kmalloc(size, GFP_DMA))) == Zone.DMA
    assert zone_of(virt_to_phys(env.kmalloc(size, GFP_KERNEL))) == Zone.LOWMEM


def test_zero_flag_clears_memory(env):
    ptr = env.kmalloc(64)
    env.memory.write(virt_to_phys(ptr), b"\xff" * 64)
    env.kfree(ptr)
    again = env.kmalloc(64, GFP_KERNEL | Gfp.ZERO)
    assert again == ptr
    assert env.memory.read(virt_to_phys(again), 64) == bytes(64)


def test_without_zero_flag_memory_is_left_alone(env):
    ptr = env.kmalloc(64)
    env.memory.write(virt_to_phys(ptr), b"\xab" * 64)
    env.kfree(ptr)
    again = env.kmalloc(64)
    assert env.memory.read(virt_to_phys(again), 64) == b"\xab" * 64


def test_kfree_of_large_block_restores_buddy(env):
    before = env.buddy.free_bytes(Zone.LOWMEM)
    ptr = env.kmalloc(3 * PAGE_SIZE)
    assert env.buddy.free_bytes(Zone.LOWMEM) < before
    env.kfree(ptr)
    assert env.buddy.free_bytes(Zone.LOWMEM) == before


def test_kfree_of_small_object_allows_reuse(env):
    ptr = env.kmalloc(200)
    env.kfree(ptr)
    assert env.kmalloc(200) == ptr


def test_null_pointer_is_ignored(env):
    before = env.buddy.free_bytes(Zone.LOWMEM)
    env.kfree(None)
    assert env.ksize(None) == 0
    assert env.buddy.free_bytes(Zone.LOWMEM) == before


def test_exhaustion_reclaims_empty_slabs(env):
    ptr = env.kmalloc(64, GFP_DMA)
    slab_page = align_down(ptr, PAGE_SIZE)
    env.kfree(ptr)

    got = set()
    while (block := env.kmalloc(PAGE_SIZE, GFP_DMA)) is not None:
        got.add(block)

    assert slab_page in got
    assert not any(cache.empty for cache in env.slab.caches[Zone.DMA])
    assert env.buddy.free_bytes(Zone.DMA) == 0