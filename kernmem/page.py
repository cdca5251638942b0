"""Page descriptors: one record per physical page frame."""

from __future__ import annotations

import enum
from collections.abc import Iterator
from dataclasses import dataclass

from kernmem.boot_allocator import BootAllocator, Region
from kernmem.layout import HIGHMEM_START, LOWMEM_START, PAGE_SIZE, TO_KEEP, Zone
from kernmem.panic import KernelPanic

MAX_PAGES = 1 << 20
PAGE_MAGIC = 0xDEADBEEF

PAGE_STATE_MASK = 0b00000111
PAGE_ZONE_MASK = 0b00111000

# Size in bytes of one descriptor in the boot-time descriptor array.
PAGE_DESCRIPTOR_SIZE = 16


class PageState(enum.IntEnum):
    """Lifecycle state of a page frame (bits 0-2 of its flags)."""

    UNUSABLE = 0b000
    RESERVED = 0b001
    AVAILABLE = 0b010
    FREE = 0b011
    ALLOCATED = 0b100
    SLAB = 0b110


class PageZone(enum.IntEnum):
    """Memory zone of a page frame (bits 3-5 of its flags)."""

    DMA = 0b001000
    LOWMEM = 0b010000
    HIGHMEM = 0b100000


_STATE_TEXT = {
    PageState.UNUSABLE: "UNUSABLE (Memory hole or MMIO)",
    PageState.RESERVED: "RESERVED (By boot allocator)",
    PageState.AVAILABLE: "AVAILABLE (Ready for Buddy System)",
    PageState.FREE: "FREE (In Buddy free list)",
    PageState.ALLOCATED: "ALLOCATED (By Buddy)",
    PageState.SLAB: "SLAB (Allocated for Slab)",
}

_ZONE_TEXT = {
    PageZone.DMA: "DMA (< 16MB)",
    PageZone.LOWMEM: "LOWMEM (16MB - 896MB)",
    PageZone.HIGHMEM: "HIGHMEM (> 896MB)",
}


@dataclass(eq=False)
class Page:
    """Descriptor of one physical page frame."""

    index: int
    flags: int
    private_data: int = PAGE_MAGIC

    @property
    def phys(self) -> int:
        """Physical address of the first byte of the page."""
        return self.index * PAGE_SIZE

    def state(self) -> PageState | int:
        """The page's state; an unknown raw value is returned as an int."""
        raw = self.flags & PAGE_STATE_MASK
        try:
            return PageState(raw)
        except ValueError:
            return raw

    def zone(self) -> PageZone | int:
        """The page's zone; an unknown raw value is returned as an int."""
        raw = self.flags & PAGE_ZONE_MASK
        try:
            return PageZone(raw)
        except ValueError:
            return raw

    def set_state(self, state: int) -> None:
        """Replace the state bits, keeping the zone bits."""
        state = int(state)
        if not 0 <= state <= PAGE_STATE_MASK:
            raise ValueError(f"invalid page state {state}")
        self.flags = (self.flags & ~PAGE_STATE_MASK) | state


def _zone_flag(addr: int) -> PageZone:
    if addr >= HIGHMEM_START:
        return PageZone.HIGHMEM
    if addr >= LOWMEM_START:
        return PageZone.LOWMEM
    return PageZone.DMA


def same_page(addr1: int, addr2: int) -> bool:
    """Tell whether two addresses fall in the same page frame."""
    return addr1 // PAGE_SIZE == addr2 // PAGE_SIZE


class PageDescriptors:
    """The array of page descriptors, placed in memory taken from the boot allocator."""

    def __init__(self, boot: BootAllocator) -> None:
        try:
            self.address = boot.alloc(MAX_PAGES * PAGE_DESCRIPTOR_SIZE, Zone.LOWMEM, TO_KEEP)
        except (MemoryError, RuntimeError) as exc:
            raise KernelPanic("Failed to allocate page descriptors!") from exc

        self._rules: list[tuple[Region, PageState]] = []
        for zone in (Zone.LOWMEM, Zone.DMA, Zone.HIGHMEM):
            self._rules += [(r, PageState.AVAILABLE) for r in boot.free_zones(zone)]
            self._rules += [(r, PageState.RESERVED) for r in boot.reserved_zones(zone)]

        self._pages = [self._make(index) for index in range(min(boot.total_pages, MAX_PAGES))]
        self._beyond: dict[int, Page] = {}

    def _make(self, index: int) -> Page:
        addr = index * PAGE_SIZE
        state = next(
            (st for region, st in self._rules if region.start <= addr < region.end),
            PageState.UNUSABLE,
        )
        return Page(index, int(state) | int(_zone_flag(addr)))

    def __len__(self) -> int:
        return len(self._pages)

    def __iter__(self) -> Iterator[Page]:
        return iter(self._pages)

    def by_index(self, index: int) -> Page | None:
        """Descriptor of page frame ``index``, or None past the end of RAM."""
        if not 0 <= index < len(self._pages):
            return None
        return self._pages[index]

    def by_addr(self, addr: int) -> Page:
        """Descriptor of the page frame holding physical address ``addr``."""
        index = addr // PAGE_SIZE
        if addr < 0 or index >= MAX_PAGES:
            raise ValueError(f"address 0x{addr:x} outside the descriptor array")
        if index < len(self._pages):
            return self._pages[index]
        page = self._beyond.get(index)
        if page is None:
            page = self._beyond[index] = self._make(index)
        return page

    def next_free(self, addr: int, forward: bool = True) -> Page | None:
        """First free page from ``addr`` walking up (or down), or None."""
        index = self.by_addr(addr).index
        step = 1 if forward else -1
        while 0 <= index < len(self._pages):
            page = self._pages[index]
            if page.state() == PageState.FREE:
                return page
            index += step
        return None

    def free_count(self) -> int:
        """Number of pages currently in the free state."""
        return sum(1 for page in self._pages if page.state() == PageState.FREE)

    def reserved_count(self) -> int:
        """Number of pages not in the free state."""
        return len(self._pages) - self.free_count()

    def describe(self, page: Page | None) -> str:
        """Human-readable description of a page descriptor."""
        if page is None:
            return "page_print_info: Page pointer is NULL\n"
        parts = [
            f"Page Info for PFN {page.index} (Phys Addr: 0x{page.phys:08x}):\n",
            f"  - Raw Flags: 0x{page.flags:x}\n",
            f"  - State: {_STATE_TEXT.get(page.state(), 'UNKNOWN STATE!')}\n",
            f"  - Zone:  {_ZONE_TEXT.get(page.zone(), 'N/A')}\n",
        ]
        if page.state() in (PageState.FREE, PageState.ALLOCATED):
            parts.append(f"  - Buddy Order: {page.private_data}\n")
        elif page.private_data != 0:
            parts.append(f"  - Private Data: 0x{page.private_data:x}\n")
        return "".join(parts)