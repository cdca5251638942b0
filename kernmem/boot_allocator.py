"""Early boot memory allocator built from the boot loader's memory map."""

from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass
from itertools import pairwise
from operator import attrgetter

from kernmem.layout import (
    ADDRESS_MASK,
    HIGHMEM_END,
    HIGHMEM_START,
    LOWMEM_START,
    PAGE_SIZE,
    Zone,
    align_up,
    zone_of,
)
from kernmem.multiboot import MmapEntry, iter_mmap
from kernmem.panic import KernelPanic

MAX_REGIONS = 256

# Regions reserved whatever the memory map says: the first page, the
# low area below the EBDA and the VGA/BIOS ROM window.
FIXED_RESERVED = ((0xA0000, 0x100000), (0x0, 0x1000), (0x1000, 0x9FC00))

_ZONES = (Zone.LOWMEM, Zone.DMA, Zone.HIGHMEM)


class MemType(enum.IntEnum):
    """Kinds of regions the boot allocator tracks."""

    FREE = 0
    RESERVED = 1
    HOLES = 2


@dataclass(frozen=True)
class Region:
    """A physical range [start, end); an end of 0 stands for the top of 4 GiB."""

    start: int
    end: int

    @property
    def size(self) -> int:
        return (self.end - self.start) & ADDRESS_MASK


@dataclass(frozen=True)
class BootAllocation:
    """A record of one allocation made by the boot allocator."""

    p_addr: int
    size: int
    freeable: bool


def sort_and_merge(regions: Iterable[Region]) -> list[Region]:
    """Sort regions by start and join those that touch end to start."""
    merged: list[Region] = []
    for region in sorted(regions, key=attrgetter("start")):
        if merged and merged[-1].end == region.start:
            merged[-1] = Region(merged[-1].start, region.end)
        else:
            merged.append(region)
    return merged


def _fmt_region(region: Region) -> str:
    return f"0x{region.start:08x} -> 0x{region.end:08x}\n"


def _append_checked(regions: list[Region], region: Region, what: str) -> None:
    if len(regions) >= MAX_REGIONS:
        raise KernelPanic(f"No more space in {what} to add a new region!")
    regions.append(region)


class BootAllocator:
    """Tracks free, reserved and missing physical memory before the page allocator runs."""

    def __init__(self) -> None:
        self.frozen = False
        self.total_pages = 0
        self.total_ram = 0
        self._regions: dict[MemType, list[Region]] = {t: [] for t in MemType}
        self._free_zones: dict[Zone, list[Region]] = {z: [] for z in _ZONES}
        self._res_zones: dict[Zone, list[Region]] = {z: [] for z in _ZONES}
        self._allocations: list[BootAllocation] = []

    # -- setup -------------------------------------------------------------

    def init(
        self,
        entries: Iterable[MmapEntry],
        extra_reserved: Iterable[tuple[int, int]] = (),
    ) -> None:
        """Build the region tables from a memory map and known reserved ranges."""
        entries = tuple(entries)
        for regions in (*self._regions.values(), *self._free_zones.values(),
                        *self._res_zones.values()):
            regions.clear()
        self._allocations.clear()
        self.total_ram = 0

        for start, end in (*FIXED_RESERVED, *extra_reserved):
            self.add_region(start, end, MemType.RESERVED)
        for start, end in iter_mmap(entries, False):
            self.add_region(start, end, MemType.RESERVED)
        self._sort_merge(MemType.RESERVED)

        for start, end in iter_mmap(entries, True):
            self._add_free(start, end)
        self._sort_merge(MemType.FREE)

        self._fill_holes()

        for free in (False, True):
            for start, end in iter_mmap(entries, free):
                if end == 0:
                    end = ADDRESS_MASK
                self.total_ram = (self.total_ram + end - start) & ADDRESS_MASK

        self.total_pages = self._visible_ram() // PAGE_SIZE
        self._split_into_zones(self._free_zones, MemType.FREE)
        self._split_into_zones(self._res_zones, MemType.RESERVED)
        for zone in _ZONES:
            self._free_zones[zone][:] = sort_and_merge(self._free_zones[zone])
            self._res_zones[zone][:] = sort_and_merge(self._res_zones[zone])

    def add_region(self, start: int, end: int, mem_type: MemType) -> None:
        """Record a region of the given type; empty regions are ignored."""
        if start > end and end != 0:
            raise KernelPanic(
                f"boot_alloc: add_region: Invalid region start=0x{start:08x} end=0x{end:08x}\n"
            )
        if start == end:
            return
        try:
            mem_type = MemType(mem_type)
        except ValueError:
            raise KernelPanic("boot_alloc: add_region: Unknown memory type\n") from None
        regions = self._regions[mem_type]
        if len(regions) >= MAX_REGIONS:
            raise KernelPanic(f"boot_alloc: add_region: too many {mem_type.name} regions\n")
        regions.append(Region(start, end))

    def _sort_merge(self, mem_type: MemType) -> None:
        self._regions[mem_type][:] = sort_and_merge(self._regions[mem_type])

    def _add_free(self, start: int, end: int) -> None:
        cur = start
        for res in self._regions[MemType.RESERVED]:
            if res.end <= cur or res.start >= end:
                continue
            if cur < res.start and not self.range_overlaps(cur, res.start, MemType.FREE):
                self.add_region(cur, res.start, MemType.FREE)
            if res.end > cur:
                cur = res.end
            if cur >= end:
                return
        if cur < end and not self.range_overlaps(cur, end, MemType.FREE):
            self.add_region(cur, end, MemType.FREE)

    def _fill_holes(self) -> None:
        known = sort_and_merge(
            self._regions[MemType.RESERVED] + self._regions[MemType.FREE]
        )
        for before, after in pairwise(known):
            if before.end < after.start:
                self.add_region(before.end, after.start, MemType.HOLES)
        self._sort_merge(MemType.HOLES)

    def _visible_ram(self) -> int:
        every = [region for regions in self._regions.values() for region in regions]
        if not every:
            raise KernelPanic(
                "Error: total visible RAM cannot be computed before memory parsing\n"
            )
        end = sort_and_merge(every)[-1].end
        return ADDRESS_MASK if end == 0 else end

    def _split_into_zones(self, target: dict[Zone, list[Region]], mem_type: MemType) -> None:
        for region in self._regions[mem_type]:
            cur = region.start
            while cur < region.end:
                if cur >= HIGHMEM_START:
                    zone, zone_end = Zone.HIGHMEM, HIGHMEM_END
                elif cur >= LOWMEM_START:
                    zone, zone_end = Zone.LOWMEM, HIGHMEM_START
                else:
                    zone, zone_end = Zone.DMA, LOWMEM_START
                sub_end = min(region.end, zone_end)
                if sub_end > cur:
                    _append_checked(target[zone], Region(cur, sub_end), f"zone {zone.name}")
                cur = sub_end

    # -- queries -----------------------------------------------------------

    @staticmethod
    def _zone(zone: Zone) -> Zone:
        zone = Zone(zone)
        if zone not in _ZONES:
            raise ValueError(f"invalid zone {zone!r}")
        return zone

    def regions(self, mem_type: MemType) -> tuple[Region, ...]:
        """Regions of one type, as last sorted and merged."""
        return tuple(self._regions[MemType(mem_type)])

    def free_zones(self, zone: Zone) -> tuple[Region, ...]:
        """Free regions within one zone."""
        return tuple(self._free_zones[self._zone(zone)])

    def reserved_zones(self, zone: Zone) -> tuple[Region, ...]:
        """Reserved regions within one zone, boot allocations included."""
        return tuple(self._res_zones[self._zone(zone)])

    @property
    def allocations(self) -> tuple[BootAllocation, ...]:
        return tuple(self._allocations)

    def range_overlaps(self, start: int, end: int, mem_type: MemType) -> bool:
        """Tell whether [start, end) overlaps any region of ``mem_type``."""
        return any(
            not (end <= region.start or start >= region.end)
            for region in self._regions[MemType(mem_type)]
        )

    def freeze(self) -> None:
        """Refuse any further allocation."""
        self.frozen = True

    # -- allocation --------------------------------------------------------

    def _reserve(self, start: int, size: int) -> None:
        regions = self._res_zones[zone_of(start)]
        _append_checked(regions, Region(start, start + size), f"zone {zone_of(start).name}")
        regions[:] = sort_and_merge(regions)

    def alloc(self, size: int, zone: Zone, freeable: bool) -> int:
        """Take ``size`` bytes from the top of the highest free region of ``zone``."""
        if self.frozen:
            raise RuntimeError("boot allocator is frozen")
        if size < 0:
            raise ValueError(f"negative allocation size {size}")
        free = self._free_zones[self._zone(zone)]
        for index, region in reversed(list(enumerate(free))):
            if region.size < size:
                continue
            addr = region.end - size
            self._reserve(addr, size)
            if region.start == addr:
                free[index] = free[-1]
                free.pop()
            else:
                free[index] = Region(region.start, addr)
            self._allocations.append(BootAllocation(addr, size, bool(freeable)))
            return addr
        raise MemoryError("boot_alloc: No space left on device")

    def alloc_at(
        self,
        size: int,
        zone: Zone,
        freeable: bool,
        start: int,
        end: int,
        align: int | None = None,
    ) -> int:
        """Take ``size`` bytes lying within [start, end), optionally aligned."""
        if self.frozen:
            raise RuntimeError("boot allocator is frozen")
        if size <= 0 or start + size > end:
            raise ValueError("boot_alloc_at: invalid parameters")
        free = self._free_zones[self._zone(zone)]
        for index, region in enumerate(free):
            if region.start >= end or region.end <= start:
                continue
            alloc_start = max(region.start, start)
            limit = min(region.end, end)
            if align is not None and align != -1:
                alloc_start = align_up(alloc_start, align)
            if alloc_start + size > limit:
                continue

            alloc_end = alloc_start + size
            self._reserve(alloc_start, size)
            self._allocations.append(BootAllocation(alloc_start, size, bool(freeable)))
            if alloc_end < region.end:
                _append_checked(free, Region(alloc_end, region.end), "free regions")
            if region.start >= alloc_start:
                free[index] = free[-1]
                free.pop()
            else:
                free[index] = Region(region.start, alloc_start)
            free.sort(key=attrgetter("start"))
            return alloc_start
        raise MemoryError(
            f"boot_alloc_at: No suitable alloc with {size} size, "
            f"with range 0x{start:08x} -> 0x{end:08x}"
        )

    # -- reports -----------------------------------------------------------

    def layout_report(self) -> str:
        """Describe the reserved, free and hole regions."""
        parts = ["----------Boot Allocator Printer----------\n", "Reserved Areas : \n"]
        parts += map(_fmt_region, self._regions[MemType.RESERVED])
        parts += ["----------\n", "Free Areas : \n"]
        parts += map(_fmt_region, self._regions[MemType.FREE])
        parts += ["----------\n", "Holes Areas : \n"]
        parts += map(_fmt_region, self._regions[MemType.HOLES])
        parts.append("------------------------------------------\n")
        return "".join(parts)

    @staticmethod
    def _zones_report(title: str, zones: dict[Zone, list[Region]]) -> str:
        parts = [f"----------Boot Allocator {title} Zones Printer----------\n"]
        sections = (("Dma", Zone.DMA), ("Lowmem", Zone.LOWMEM), ("Highmem", Zone.HIGHMEM))
        for position, (name, zone) in enumerate(sections):
            if position:
                parts.append("----------\n")
            parts.append(f"{name} Zone : \n")
            parts += map(_fmt_region, zones[zone])
        parts.append("------------------------------------------\n")
        return "".join(parts)

    def free_zones_report(self) -> str:
        """Describe free regions zone by zone."""
        return self._zones_report("Free", self._free_zones)

    def reserved_zones_report(self) -> str:
        """Describe reserved regions zone by zone."""
        return self._zones_report("Reserved", self._res_zones)

    def allocations_report(self) -> str:
        """Describe every allocation made so far."""
        parts = ["---------- Boot Allocator Allocations Log ----------\n"]
        if not self._allocations:
            parts.append("  No allocations have been made yet.\n")
        else:
            parts.append("Index\tP. Addr\t\tSize (B)\tSize (KiB)\tFreeable\n")
            parts.append("----------------------------------------------------------\n")
            for index, entry in enumerate(self._allocations):
                parts.append(
                    f"{index}\t0x{entry.p_addr:08x}\t\t{entry.size}\t\t{entry.size // 1024}\t\t"
                    f"{'Yes' if entry.freeable else 'No'}\n"
                )
        parts.append("----------------------------------------------------------\n")
        return "".join(parts)