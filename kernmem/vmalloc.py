"""Virtually contiguous kernel allocations backed by scattered physical pages."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from kernmem.buddy import BuddyAllocator
from kernmem.kmalloc import KernelHeap
from kernmem.layout import (
    GFP_KERNEL,
    MIB,
    PAGE_SIZE,
    VMALLOC_END,
    VMALLOC_START,
    Zone,
    align_up,
    div_round_up,
)
from kernmem.panic import KernelPanic
from kernmem.vmm import PteFlag, Vmm

MAX_VMALLOC_SIZE = 128 * MIB
MIN_VMALLOC_SIZE = PAGE_SIZE
# Size of an area descriptor taken from the kernel heap.
VM_AREA_DESCRIPTOR_SIZE = 28
# Size of one physical page address in an area's page array.
PAGE_ENTRY_SIZE = 4

VMALLOC_ZONES = (Zone.HIGHMEM, Zone.LOWMEM)


class VmAreaState(enum.Enum):
    FREE = "free"
    ALLOCATED = "allocated"


@dataclass(eq=False)
class VmArea:
    """A run of the vmalloc address space, free or backing one allocation."""

    start_vaddr: int
    size: int
    descriptor: int
    state: VmAreaState = VmAreaState.FREE
    pages: list[int] = field(default_factory=list)
    pages_buffer: int | None = None

    @property
    def end(self) -> int:
        return self.start_vaddr + self.size

    @property
    def nr_pages(self) -> int:
        return len(self.pages)


class Vmalloc:
    """First-fit allocator over the vmalloc window, mapping pages one by one."""

    def __init__(self, heap: KernelHeap, buddy: BuddyAllocator, vmm: Vmm) -> None:
        self.heap = heap
        self.buddy = buddy
        self.vmm = vmm
        descriptor = heap.kmalloc(VM_AREA_DESCRIPTOR_SIZE, GFP_KERNEL)
        if descriptor is None:
            raise KernelPanic("vmalloc_init failed!")
        self._areas = [VmArea(VMALLOC_START, VMALLOC_END - VMALLOC_START, descriptor)]

    def areas(self) -> tuple[VmArea, ...]:
        """The areas of the vmalloc window, in address order."""
        return tuple(self._areas)

    def _split(self, area: VmArea, size: int) -> VmArea | None:
        needed = align_up(size, PAGE_SIZE)
        if needed > area.size:
            return None
        if needed == area.size:
            area.state = VmAreaState.ALLOCATED
            return area
        descriptor = self.heap.kmalloc(VM_AREA_DESCRIPTOR_SIZE, GFP_KERNEL)
        if descriptor is None:
            return None
        new_area = VmArea(area.start_vaddr, needed, descriptor, VmAreaState.ALLOCATED)
        area.start_vaddr += needed
        area.size -= needed
        self._areas.insert(self._areas.index(area), new_area)
        return new_area

    def _merge(self, area: VmArea) -> None:
        index = self._areas.index(area)
        if index + 1 < len(self._areas):
            following = self._areas[index + 1]
            if following.state is VmAreaState.FREE and area.end == following.start_vaddr:
                area.size += following.size
                del self._areas[index + 1]
                self.heap.kfree(following.descriptor)
        if index > 0:
            previous = self._areas[index - 1]
            if previous.state is VmAreaState.FREE and previous.end == area.start_vaddr:
                previous.size += area.size
                del self._areas[index]
                self.heap.kfree(area.descriptor)

    def _release(self, area: VmArea) -> None:
        for page in area.pages:
            self.buddy.free_block(page)
        area.pages = []
        if area.pages_buffer is not None:
            self.heap.kfree(area.pages_buffer)
            area.pages_buffer = None
        area.state = VmAreaState.FREE
        self._merge(area)

    def vmalloc(self, size: int) -> int | None:
        """Allocate ``size`` bytes of virtually contiguous memory; its address, or None."""
        if size > MAX_VMALLOC_SIZE or size < MIN_VMALLOC_SIZE:
            return None
        page_dir = self.vmm.current_page_dir
        if page_dir is None:
            raise RuntimeError("paging is not set up")

        area = next(
            (a for a in self._areas if a.state is VmAreaState.FREE and a.size >= size), None
        )
        if area is None:
            return None
        allocated = self._split(area, size)
        if allocated is None:
            return None

        count = div_round_up(size, PAGE_SIZE)
        buffer = self.heap.kmalloc(PAGE_ENTRY_SIZE * count, GFP_KERNEL)
        if buffer is None:
            self._release(allocated)
            return None
        allocated.pages_buffer = buffer

        for zone in VMALLOC_ZONES:
            while len(allocated.pages) < count:
                page = self.buddy.alloc_pages(PAGE_SIZE, zone)
                if page is None:
                    break
                allocated.pages.append(page)
        if len(allocated.pages) != count:
            self._release(allocated)
            return None

        flags = int(PteFlag.PRESENT | PteFlag.RW)
        for i, paddr in enumerate(allocated.pages):
            try:
                self.vmm.map_page(page_dir, allocated.start_vaddr + i * PAGE_SIZE, paddr, flags)
            except MemoryError as exc:
                raise KernelPanic("vmalloc: vmm_map_page failed!") from exc
        return allocated.start_vaddr

    def vfree(self, ptr: int | None) -> None:
        """Unmap and release an allocation; None and unknown addresses are ignored."""
        if not ptr:
            return
        area = next(
            (a for a in self._areas
             if a.start_vaddr == ptr and a.state is VmAreaState.ALLOCATED),
            None,
        )
        if area is None:
            return
        page_dir = self.vmm.current_page_dir
        for i in range(area.nr_pages):
            self.vmm.unmap_page(page_dir, area.start_vaddr + i * PAGE_SIZE)
        self._release(area)

    def vsize(self, ptr: int | None) -> int:
        """Size of the area starting at ``ptr``, or 0 if none does."""
        if not ptr:
            return 0
        return next((a.size for a in self._areas if a.start_vaddr == ptr), 0)