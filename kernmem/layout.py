"""Physical memory layout, zones, allocation flags and alignment helpers."""

from __future__ import annotations

import enum

PAGE_SIZE = 4096

KIB = 1 << 10
MIB = 1 << 20
GIB = 1 << 30

ADDRESS_MASK = 0xFFFFFFFF

KERNEL_VADDR_BASE = 0xC0000000

DMA_START = 0x00000000
DMA_END = 0x00FFFFFF
LOWMEM_START = 0x01000000
LOWMEM_END = 0x37FFFFFF
HIGHMEM_START = 0x38000000
HIGHMEM_END = 0xFFFFFFFF

VMALLOC_START = 0xF8000000
VMALLOC_END = 0xFFFFFFFF

MAX_ZONE = 3
MAX_MIGRATION = 1

# Boot allocations that may be released later, or must be kept.
TO_FREE = False
TO_KEEP = True


class Zone(enum.IntEnum):
    """Physical memory zones, numbered as the allocators index them."""

    LOWMEM = 0
    DMA = 1
    HIGHMEM = 2
    INVALID = 3


class Gfp(enum.IntFlag):
    """Allocation request flags."""

    KERNEL = 0b00000001
    ATOMIC = 0b00000010
    DMA = 0b00000100
    ZERO = 0b00010000


GFP_KERNEL = Gfp.KERNEL
GFP_ATOMIC = Gfp.ATOMIC
GFP_DMA = Gfp.DMA | Gfp.KERNEL
GFP_ATOMIC_DMA = Gfp.DMA | Gfp.ATOMIC


def _check_alignment(alignment: int) -> None:
    if alignment <= 0:
        raise ValueError(f"alignment must be positive, got {alignment}")


def align_up(value: int, alignment: int) -> int:
    """Round ``value`` up to a multiple of the power-of-two ``alignment``."""
    _check_alignment(alignment)
    mask = alignment - 1
    return (value + mask) & ~mask


def align_down(value: int, alignment: int) -> int:
    """Round ``value`` down to a multiple of the power-of-two ``alignment``."""
    _check_alignment(alignment)
    return value & ~(alignment - 1)


def is_aligned(value: int, alignment: int) -> bool:
    """Tell whether ``value`` is a multiple of ``alignment``."""
    return align_up(value, alignment) == value


def div_round_up(value: int, divisor: int) -> int:
    """Integer division rounding towards positive infinity."""
    if divisor <= 0:
        raise ValueError(f"divisor must be positive, got {divisor}")
    return (value + divisor - 1) // divisor


def zone_of(addr: int) -> Zone:
    """Return the zone a physical address belongs to."""
    if addr >= HIGHMEM_START:
        return Zone.HIGHMEM
    if addr >= LOWMEM_START:
        return Zone.LOWMEM
    return Zone.DMA


def phys_to_virt(addr: int) -> int:
    """Map a physical address into the kernel's linear mapping."""
    return (addr + KERNEL_VADDR_BASE) & ADDRESS_MASK


def virt_to_phys(addr: int) -> int:
    """Translate an address of the kernel's linear mapping back to physical."""
    return (addr - KERNEL_VADDR_BASE) & ADDRESS_MASK