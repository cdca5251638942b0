"""General-purpose kernel heap over the slab and buddy allocators."""

from __future__ import annotations

from kernmem.buddy import BuddyAllocator, order_to_bytes
from kernmem.layout import GFP_KERNEL, MIB, Gfp, Zone, phys_to_virt, virt_to_phys
from kernmem.page import PAGE_MAGIC, PageDescriptors, PageState
from kernmem.physmem import PhysicalMemory
from kernmem.slab import MAX_SLAB_SIZE, SlabAllocator

MAX_KMALLOC_SIZE = 4 * MIB


class KernelHeap:
    """kmalloc/kfree: small requests from slab caches, larger ones straight from the buddy."""

    def __init__(
        self,
        pages: PageDescriptors,
        buddy: BuddyAllocator,
        slab: SlabAllocator,
        memory: PhysicalMemory | None = None,
    ) -> None:
        self.pages = pages
        self.buddy = buddy
        self.slab = slab
        self.memory = memory if memory is not None else PhysicalMemory()

    def _get_allocation(self, zone: Zone, size: int) -> int | None:
        if size > MAX_SLAB_SIZE:
            phys = self.buddy.alloc_pages(size, zone)
            return None if phys is None else phys_to_virt(phys)
        return self.slab.alloc(size, zone)

    def _alloc_with_reclaim(self, zone: Zone, size: int) -> int | None:
        ptr = self._get_allocation(zone, size)
        if ptr is None:
            self.slab.shrink(zone)
            ptr = self._get_allocation(zone, size)
        return ptr

    def kmalloc(self, size: int, flags: Gfp = GFP_KERNEL) -> int | None:
        """Allocate ``size`` bytes; the linear address, or None when out of memory."""
        zone = Zone.DMA if Gfp(flags) & Gfp.DMA else Zone.LOWMEM
        if size <= 0 or size > MAX_KMALLOC_SIZE:
            return None
        ptr = self._alloc_with_reclaim(zone, size)
        if ptr is not None and Gfp(flags) & Gfp.ZERO:
            self.memory.zero(virt_to_phys(ptr), size)
        return ptr

    def ksize(self, ptr: int | None) -> int:
        """Usable size of the allocation at ``ptr``; 0 if it is not an allocation start."""
        if not ptr:
            return 0
        page = self.pages.by_addr(virt_to_phys(ptr))
        state = page.state()
        if state == PageState.SLAB:
            return self.slab.object_size(ptr)
        if state == PageState.ALLOCATED:
            return 0 if page.private_data == PAGE_MAGIC else order_to_bytes(page.private_data)
        return 0

    def kfree(self, ptr: int | None) -> None:
        """Release an allocation; None is ignored."""
        if not ptr:
            return
        phys = virt_to_phys(ptr)
        state = self.pages.by_addr(phys).state()
        if state == PageState.SLAB:
            self.slab.free(ptr)
        elif state == PageState.ALLOCATED:
            self.buddy.free_block(phys)