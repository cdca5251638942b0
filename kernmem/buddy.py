"""Binary buddy page allocator, one set of free lists per memory zone."""

from __future__ import annotations

from kernmem.boot_allocator import BootAllocator, MemType
from kernmem.layout import HIGHMEM_START, LOWMEM_START, MIB, PAGE_SIZE, Zone
from kernmem.page import PAGE_MAGIC, Page, PageDescriptors, PageState, PageZone
from kernmem.panic import KernelPanic

MAX_ORDER = 10
BAD_ORDER = MAX_ORDER + 1

_ZONES = (Zone.LOWMEM, Zone.DMA, Zone.HIGHMEM)

_ORDER_NAMES = (
    "4KiB", "8KiB", "16KiB", "32KiB", "64KiB", "128KiB",
    "256KiB", "512KiB", "1MiB", "2MiB", "4MiB",
)

_ZONE_NAMES = {
    Zone.LOWMEM: "LOWMEM zone",
    Zone.DMA: "DMA zone",
    Zone.HIGHMEM: "HIGHMEM zone",
}

_ZONE_BASE = {
    Zone.DMA: 0,
    Zone.LOWMEM: LOWMEM_START,
    Zone.HIGHMEM: HIGHMEM_START,
}

_PAGE_ZONE_TO_ZONE = {
    PageZone.DMA: Zone.DMA,
    PageZone.LOWMEM: Zone.LOWMEM,
    PageZone.HIGHMEM: Zone.HIGHMEM,
}


def pages_by_order(order: int) -> int:
    """Number of pages in a block of ``order``."""
    return 1 << order


def order_to_bytes(order: int) -> int:
    """Size in bytes of a block of ``order``."""
    return pages_by_order(order) * PAGE_SIZE


def _order_is_valid(order: int) -> bool:
    return 0 <= order <= MAX_ORDER


def size_to_order(size: int) -> int:
    """Smallest order whose block holds ``size`` bytes, or BAD_ORDER if none does."""
    total = -(-size // PAGE_SIZE)
    for order in range(MAX_ORDER + 1):
        if total <= pages_by_order(order):
            return order
    return BAD_ORDER


def order_name(order: int) -> str:
    """Human-readable block size of an order."""
    if _order_is_valid(order):
        return _ORDER_NAMES[order]
    return "Unknown order"


def _zone_name(zone: int) -> str:
    try:
        return _ZONE_NAMES.get(Zone(zone), "Unknown zone")
    except ValueError:
        return "Unknown zone"


def _check_zone(zone: int) -> Zone:
    zone = Zone(zone)
    if zone not in _ZONES:
        raise ValueError(f"invalid zone {zone!r}")
    return zone


class BuddyAllocator:
    """Page allocator handing out power-of-two runs of pages and merging them back."""

    def __init__(self, pages: PageDescriptors, boot: BootAllocator) -> None:
        self.pages = pages
        self.boot = boot
        # Each free list maps block address -> None; the last inserted is the list head.
        self._free: dict[Zone, list[dict[int, None]]] = {
            zone: [{} for _ in range(MAX_ORDER + 1)] for zone in _ZONES
        }
        for page in pages:
            if page.state() == PageState.AVAILABLE:
                page.private_data = 0
                self.free_block(page.phys)
        boot.freeze()

    # -- internals ---------------------------------------------------------

    def _page_at(self, addr: int) -> Page | None:
        try:
            return self.pages.by_addr(addr)
        except ValueError:
            return None

    def _set_block_metadata(self, first: Page, order: int, state: PageState) -> None:
        first.private_data = order
        for i in range(pages_by_order(order)):
            page = self.pages.by_addr(first.phys + i * PAGE_SIZE)
            page.set_state(state)
            if i:
                page.private_data = PAGE_MAGIC

    def _buddy_of(self, addr: int, order: int, zone: Zone) -> Page | None:
        base = _ZONE_BASE[zone]
        buddy_addr = ((addr - base) ^ order_to_bytes(order)) + base
        page = self._page_at(buddy_addr)
        if page is None:
            return None
        if page.state() == PageState.FREE and page.private_data == order:
            return page
        return None

    # -- allocation --------------------------------------------------------

    def alloc_pages(self, size: int, zone: Zone) -> int | None:
        """Allocate a block holding ``size`` bytes; its physical address, or None."""
        zone = _check_zone(zone)
        needed = size_to_order(size)
        if not _order_is_valid(needed):
            return None
        lists = self._free[zone]
        order = next((o for o in range(needed, MAX_ORDER + 1) if lists[o]), None)
        if order is None:
            return None

        addr, _ = lists[order].popitem()
        while order > needed:
            order -= 1
            half = self.pages.by_addr(addr + order_to_bytes(order))
            self._set_block_metadata(half, order, PageState.FREE)
            lists[order][half.phys] = None

        self._set_block_metadata(self.pages.by_addr(addr), needed, PageState.ALLOCATED)
        return addr

    def free_block(self, addr: int) -> None:
        """Return a block to its zone, merging it with free buddies."""
        page = self.pages.by_addr(addr)
        order = page.private_data
        state = page.state()
        if state == PageState.FREE:
            raise KernelPanic(f"Error: buddy_free_block: Double free detected on address 0x{addr:08x}\n")
        if state not in (PageState.ALLOCATED, PageState.AVAILABLE):
            raise KernelPanic(
                f"Error: buddy_free_block: Attempt to free a page with invalid state "
                f"({int(state)}) at 0x{addr:08x}\n"
            )
        if not _order_is_valid(order):
            raise KernelPanic(f"Error: buddy_free_block: incorrect block order: {order:x}\n")

        zone = _PAGE_ZONE_TO_ZONE.get(page.zone())
        if zone is None:
            raise KernelPanic(f"get_buddy_base: Invalid zone type {page.zone()}")
        lists = self._free[zone]

        addr = page.phys
        while order < MAX_ORDER:
            buddy = self._buddy_of(addr, order, zone)
            if buddy is None:
                break
            lists[order].pop(buddy.phys, None)
            addr = min(addr, buddy.phys)
            order += 1

        self._set_block_metadata(self.pages.by_addr(addr), order, PageState.FREE)
        lists[order][addr] = None

    def block_size(self, addr: int) -> int:
        """Size of the block starting at ``addr``; 0 if ``addr`` is inside a block."""
        page = self.pages.by_addr(addr)
        if page.private_data == PAGE_MAGIC:
            return 0
        return order_to_bytes(page.private_data)

    # -- inspection --------------------------------------------------------

    def free_blocks(self, zone: Zone, order: int) -> tuple[int, ...]:
        """Addresses of free blocks of ``order`` in ``zone``, list head first."""
        zone = _check_zone(zone)
        if not _order_is_valid(order):
            raise ValueError(f"invalid order {order}")
        return tuple(reversed(self._free[zone][order]))

    def free_bytes(self, zone: Zone) -> int:
        """Total bytes held in the free lists of ``zone``."""
        zone = _check_zone(zone)
        return sum(len(blocks) * order_to_bytes(order)
                   for order, blocks in enumerate(self._free[zone]))

    def check_lists(self, zone: Zone) -> None:
        """Verify the free lists of ``zone``; raise KernelPanic on any inconsistency."""
        zone = _check_zone(zone)
        base = _ZONE_BASE[zone]
        for order, blocks in enumerate(self._free[zone]):
            for addr in blocks:
                page = self._page_at(addr)
                if (page is None or page.state() != PageState.FREE
                        or page.private_data != order
                        or (addr - base) % order_to_bytes(order)):
                    raise KernelPanic(
                        f"Buddy free_list for order {order_name(order)} from "
                        f"{_zone_name(zone)} is corrupted! (block 0x{addr:08x})\n"
                    )

        free_regions = self.boot.regions(MemType.FREE)
        lost = [
            page.phys for page in self.pages
            if page.state() == PageState.FREE
            and _PAGE_ZONE_TO_ZONE.get(page.zone()) == zone
            and not any(r.start <= page.phys < r.end for r in free_regions)
        ]
        if lost:
            listing = "".join(f"Lost page: 0x{addr:x}\n" for addr in lost)
            raise KernelPanic(f"{listing}Total lost pages: {len(lost)}\n")

    def report(self, zone: Zone) -> str:
        """Describe the free blocks of one zone."""
        zone = _check_zone(zone)
        parts = [f"\n--- Buddy Free Blocks in Zone: {_zone_name(zone)} ---\n"]
        counts = [(order, len(blocks)) for order, blocks in enumerate(self._free[zone]) if blocks]
        parts += [f"[{order_name(order)}:{count}] " for order, count in counts]
        if not counts:
            parts.append("(empty)\n")
        else:
            total = self.free_bytes(zone)
            parts.append(f"\nTotal Free in Zone: {total // 1024} KiB ({total // MIB} MiB)\n")
        return "".join(parts)

    def summary(self) -> str:
        """Describe the free blocks of every zone and their total."""
        parts = ["\n================ Buddy Allocator Summary ================\n"]
        parts += [self.report(zone) for zone in _ZONES]
        total = sum(self.free_bytes(zone) for zone in _ZONES)
        parts.append("\n-------------------------------------------------------\n")
        parts.append(f"Total Free Kernel Memory: {total // 1024} KiB ({total // MIB} MiB)\n")
        parts.append("=======================================================\n")
        return "".join(parts)