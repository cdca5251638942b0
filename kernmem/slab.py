"""Slab allocator for small kernel objects, each slab backed by one buddy page."""

from __future__ import annotations

from dataclasses import dataclass, field

from kernmem.buddy import BuddyAllocator
from kernmem.layout import MIB, PAGE_SIZE, Zone, phys_to_virt, virt_to_phys
from kernmem.page import PageDescriptors, PageState
from kernmem.panic import KernelPanic

MAX_SLAB_SIZE = 2048
SLAB_INTRUSIVE_THRESHOLD = 512
# Size of a slab descriptor; intrusive slabs keep it at the start of their page.
SLAB_DESCRIPTOR_SIZE = 32
CACHE_SIZES = (8, 16, 32, 64, 128, 256, 512, 1024, 2048)

_CACHE_ZONES = (Zone.LOWMEM, Zone.DMA, Zone.HIGHMEM)
_SLAB_ZONES = (Zone.LOWMEM, Zone.DMA)


def _is_external(size: int) -> bool:
    return size > SLAB_INTRUSIVE_THRESHOLD


def cache_index(size: int) -> int | None:
    """Index in CACHE_SIZES of the smallest cache holding ``size`` bytes, or None."""
    if size <= CACHE_SIZES[0]:
        return 0
    index, cache_size = 1, CACHE_SIZES[1]
    while cache_size < size:
        cache_size *= 2
        index += 1
    return index if index < len(CACHE_SIZES) else None


@dataclass(eq=False)
class SlabCache:
    """Slabs of one object size, sorted by how full they are; list heads come last."""

    object_size: int
    full: dict[Slab, None] = field(default_factory=dict)
    partial: dict[Slab, None] = field(default_factory=dict)
    empty: dict[Slab, None] = field(default_factory=dict)

    @property
    def external(self) -> bool:
        """True when slab descriptors live outside the slab's page."""
        return _is_external(self.object_size)

    @property
    def objects_per_slab(self) -> int:
        space = PAGE_SIZE if self.external else PAGE_SIZE - SLAB_DESCRIPTOR_SIZE
        return space // self.object_size

    def move(self, slab: Slab, target: dict[Slab, None]) -> None:
        """Unlink ``slab`` from whichever list holds it and push it on ``target``."""
        for slabs in (self.full, self.partial, self.empty):
            slabs.pop(slab, None)
        target[slab] = None


@dataclass(eq=False)
class Slab:
    """One page cut into equal objects; ``freelist`` pops its next object from the end."""

    cache: SlabCache
    page: int
    descriptor: int
    freelist: list[int]
    inuse: int = 0


def _head(slabs: dict[Slab, None]) -> Slab:
    return next(reversed(slabs))


class SlabAllocator:
    """Caches of power-of-two sized objects for the LOWMEM and DMA zones."""

    def __init__(self, pages: PageDescriptors, buddy: BuddyAllocator) -> None:
        self.pages = pages
        self.buddy = buddy
        self.caches: dict[Zone, tuple[SlabCache, ...]] = {
            zone: tuple(SlabCache(size) for size in CACHE_SIZES) for zone in _CACHE_ZONES
        }
        self._slabs: dict[int, Slab] = {}

    def _create(self, cache: SlabCache, zone: Zone) -> Slab | None:
        phys = self.buddy.alloc_pages(PAGE_SIZE, zone)
        if phys is None:
            return None
        virt = phys_to_virt(phys)
        if cache.external:
            descriptor = self.alloc(SLAB_DESCRIPTOR_SIZE, zone)
            if descriptor is None:
                self.buddy.free_block(phys)
                return None
            first, space = virt, PAGE_SIZE
        else:
            descriptor = virt
            first, space = virt + SLAB_DESCRIPTOR_SIZE, PAGE_SIZE - SLAB_DESCRIPTOR_SIZE
        size = cache.object_size
        count = space // size
        slab = Slab(cache, phys, descriptor, [*reversed(range(first, first + count * size, size))])
        page = self.pages.by_addr(phys)
        page.set_state(PageState.SLAB)
        page.private_data = descriptor
        self._slabs[phys] = slab
        return slab

    def alloc(self, size: int, zone: Zone) -> int | None:
        """Allocate an object of at least ``size`` bytes; its linear address, or None."""
        index = cache_index(size)
        if index is None or zone not in _SLAB_ZONES:
            return None
        zone = Zone(zone)
        cache = self.caches[zone][index]

        if cache.partial:
            slab = _head(cache.partial)
        elif cache.empty:
            slab = _head(cache.empty)
            cache.move(slab, cache.partial)
        else:
            slab = self._create(cache, zone)
            if slab is None:
                return None
            cache.partial[slab] = None

        ptr = slab.freelist.pop()
        slab.inuse += 1
        if not slab.freelist:
            cache.move(slab, cache.full)
        return ptr

    def _slab_of(self, ptr: int) -> Slab:
        page = self.pages.by_addr(virt_to_phys(ptr))
        if page.state() != PageState.SLAB:
            raise KernelPanic("Error: slab_free: try to free memory not handled by slab.\n")
        return self._slabs[page.phys]

    def free(self, ptr: int) -> None:
        """Give an object back to its slab."""
        slab = self._slab_of(ptr)
        if ptr in slab.freelist:
            raise KernelPanic(f"Error: slab_free: double free of 0x{ptr:08x}\n")
        cache = slab.cache
        slab.freelist.append(ptr)
        slab.inuse -= 1
        if slab.inuse == cache.objects_per_slab - 1:
            cache.move(slab, cache.partial)
        elif slab.inuse == 0:
            cache.move(slab, cache.empty)

    def shrink(self, zone: Zone) -> None:
        """Return the pages of every empty slab of ``zone`` to the buddy allocator."""
        zone = Zone(zone)
        if zone not in self.caches:
            raise ValueError(f"invalid zone {zone!r}")
        for cache in self.caches[zone]:
            for slab in list(reversed(cache.empty)):
                del cache.empty[slab]
                del self._slabs[slab.page]
                page = self.pages.by_addr(slab.page)
                page.set_state(PageState.ALLOCATED)
                page.private_data = 0
                self.buddy.free_block(slab.page)
                if cache.external:
                    self.free(slab.descriptor)

    def object_size(self, ptr: int) -> int:
        """Size of the cache object at ``ptr``."""
        page = self.pages.by_addr(virt_to_phys(ptr))
        if page.state() != PageState.SLAB:
            raise ValueError(f"0x{ptr:08x} is not a slab object")
        return self._slabs[page.phys].cache.object_size

    def _zone_summary(self, zone: Zone) -> tuple[str, int]:
        name = "DMA" if zone == Zone.DMA else "LOWMEM"
        parts = [f"\n--- Slab Caches in Zone: {name} ---\n"]
        held_total = 0
        for cache in self.caches[zone]:
            full, partial, empty = len(cache.full), len(cache.partial), len(cache.empty)
            slabs = full + partial + empty
            if not slabs:
                continue
            per_slab = cache.objects_per_slab
            total_objects = slabs * per_slab
            inuse = full * per_slab + sum(slab.inuse for slab in cache.partial)
            held = slabs * PAGE_SIZE
            held_total += held
            used = inuse * cache.object_size
            efficiency = used * 100 // held if held else 0
            parts += [
                f"  Cache {cache.object_size}B:\n",
                f"    Slabs: {slabs} (Full: {full}, Partial: {partial}, Empty: {empty})\n",
                f"    Objects: {inuse} used of {total_objects} total "
                f"(Free: {total_objects - inuse})\n",
                f"    Memory: {used // 1024} KiB used / {held // 1024} KiB held | "
                f"Efficiency: {efficiency}%\n",
            ]
        if held_total == 0:
            parts.append("  (No active caches in this zone)\n")
        return "".join(parts), held_total

    def summary(self) -> str:
        """Describe the caches of the LOWMEM and DMA zones and the memory they hold."""
        parts = ["\n=================== Slab Allocator Summary ===================\n"]
        total = 0
        for zone in _SLAB_ZONES:
            text, held = self._zone_summary(zone)
            parts.append(text)
            total += held
        parts.append("\n------------------------------------------------------------\n")
        parts.append(f"Total Memory Held by Slab Caches: {total // 1024} KiB ({total // MIB} MiB)\n")
        parts.append("============================================================\n")
        return "".join(parts)