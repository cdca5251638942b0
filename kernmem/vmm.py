"""Two-level 32-bit paging: page directories, page tables and mappings."""

from __future__ import annotations

import enum
import struct
from typing import TYPE_CHECKING

from kernmem.layout import ADDRESS_MASK, MIB, PAGE_SIZE, TO_KEEP, Zone
from kernmem.panic import KernelPanic
from kernmem.physmem import PhysicalMemory

if TYPE_CHECKING:
    from kernmem.boot_allocator import BootAllocator
    from kernmem.buddy import BuddyAllocator

ENTRIES_PER_TABLE = 1024
ENTRY_SIZE = 4

# The kernel half starts at directory slot 768 (0xC0000000); 224 tables map 896 MiB.
KERNEL_PDE_START = 768
KERNEL_PT_COUNT = 224
# Boot-time paging structures must sit below this physical address.
BOOT_PAGING_LIMIT = 4 * MIB

_TABLE = struct.Struct(f"<{ENTRIES_PER_TABLE}I")


class PteFlag(enum.IntFlag):
    """Bits of a page table entry."""

    PRESENT = 1 << 0
    RW = 1 << 1
    US = 1 << 2
    PWT = 1 << 3
    PCD = 1 << 4
    ACCESSED = 1 << 5
    DIRTY = 1 << 6
    PAT = 1 << 7
    GLOBAL = 1 << 8
    AVAIL1 = 1 << 9
    AVAIL2 = 1 << 10
    AVAIL3 = 1 << 11


class PdeFlag(enum.IntFlag):
    """Bits of a page directory entry."""

    PRESENT = 1 << 0
    RW = 1 << 1
    US = 1 << 2
    PWT = 1 << 3
    PCD = 1 << 4
    ACCESSED = 1 << 5
    ALWAYS0 = 1 << 6
    PS = 1 << 7
    AVAIL1 = 1 << 8
    AVAIL2 = 1 << 9
    AVAIL3 = 1 << 10
    AVAIL4 = 1 << 11


_PTE_PRESENT = int(PteFlag.PRESENT)
_PDE_PRESENT = int(PdeFlag.PRESENT)


def pde_index(vaddr: int) -> int:
    """Page directory slot of a virtual address (bits 31-22)."""
    return (vaddr & ADDRESS_MASK) >> 22


def pte_index(vaddr: int) -> int:
    """Page table slot of a virtual address (bits 21-12)."""
    return (vaddr >> 12) & 0x3FF


def entry_addr(entry: int) -> int:
    """Physical address held in a directory or table entry."""
    return entry & ~0xFFF & ADDRESS_MASK


class PageFault(KernelPanic):
    """A page fault the kernel cannot recover from."""

    def __init__(self, address: int, err_code: int) -> None:
        cause = "Protection violation" if err_code & 0x1 else "Page not present"
        super().__init__(
            f"Faulting address: 0x{address:x}\n"
            f"Error code: 0x{err_code:x}\n"
            f"Cause: {cause}\n"
            "Page fault"
        )
        self.address = address
        self.err_code = err_code
        self.cause = cause


class Vmm:
    """Builds and edits page directories kept in physical memory."""

    def __init__(
        self,
        memory: PhysicalMemory | None = None,
        buddy: BuddyAllocator | None = None,
    ) -> None:
        self.memory = memory if memory is not None else PhysicalMemory()
        self.buddy = buddy
        self.kernel_page_dir: int | None = None
        self.current_page_dir: int | None = None
        self.cr3: int | None = None

    def _require_buddy(self) -> BuddyAllocator:
        if self.buddy is None:
            raise RuntimeError("no page allocator attached to the VMM")
        return self.buddy

    def _read_entry(self, table: int, index: int) -> int:
        return self.memory.read_u32(table + index * ENTRY_SIZE)

    def _write_entry(self, table: int, index: int, value: int) -> None:
        self.memory.write_u32(table + index * ENTRY_SIZE, value)

    def finalize(self, boot: BootAllocator) -> int:
        """Build the kernel page directory mapping low memory at 0xC0000000 and load it."""
        try:
            page_dir = boot.alloc_at(
                PAGE_SIZE, Zone.DMA, TO_KEEP, 0x0, BOOT_PAGING_LIMIT, PAGE_SIZE
            )
        except (MemoryError, ValueError, RuntimeError) as exc:
            raise KernelPanic("Failed PD alloc") from exc
        try:
            pool = boot.alloc_at(
                KERNEL_PT_COUNT * PAGE_SIZE, Zone.DMA, TO_KEEP, 0x0, BOOT_PAGING_LIMIT, PAGE_SIZE
            )
        except (MemoryError, ValueError, RuntimeError) as exc:
            raise KernelPanic("Failed PT pool alloc") from exc

        pde_flags = int(PdeFlag.PRESENT | PdeFlag.RW)
        pte_flags = int(PteFlag.PRESENT | PteFlag.RW)
        directory = [0] * ENTRIES_PER_TABLE
        for i in range(KERNEL_PT_COUNT):
            table = pool + i * PAGE_SIZE
            directory[KERNEL_PDE_START + i] = table | pde_flags
            base = i * 4 * MIB
            self.memory.write(
                table,
                _TABLE.pack(*((base + j * PAGE_SIZE) | pte_flags for j in range(ENTRIES_PER_TABLE))),
            )
        self.memory.write(page_dir, _TABLE.pack(*directory))

        self.kernel_page_dir = page_dir
        self.current_page_dir = page_dir
        self.cr3 = page_dir
        return page_dir

    def map_page(self, page_dir: int, vaddr: int, paddr: int, flags: int) -> None:
        """Map the page holding ``vaddr`` to ``paddr``; raise MemoryError if no table fits."""
        pde_idx = pde_index(vaddr)
        pde = self._read_entry(page_dir, pde_idx)
        if pde & _PDE_PRESENT:
            table = entry_addr(pde)
        else:
            table = self._require_buddy().alloc_pages(PAGE_SIZE, Zone.LOWMEM)
            if table is None:
                raise MemoryError(f"no page left for a page table to map 0x{vaddr:08x}")
            self.memory.zero(table, PAGE_SIZE)
            self._write_entry(
                page_dir, pde_idx, table | int(PdeFlag.PRESENT | PdeFlag.RW | PdeFlag.US)
            )
        self._write_entry(table, pte_index(vaddr), (int(paddr) | int(flags)) & ADDRESS_MASK)

    def unmap_page(self, page_dir: int, vaddr: int) -> bool:
        """Remove the mapping of ``vaddr``; False if there was none."""
        pde_idx = pde_index(vaddr)
        pde = self._read_entry(page_dir, pde_idx)
        if not pde & _PDE_PRESENT:
            return False
        table = entry_addr(pde)
        pte_idx = pte_index(vaddr)
        if not self._read_entry(table, pte_idx) & _PTE_PRESENT:
            return False
        self._write_entry(table, pte_idx, 0)

        entries = _TABLE.unpack(self.memory.read(table, PAGE_SIZE))
        if not any(entry & _PTE_PRESENT for entry in entries):
            self._write_entry(page_dir, pde_idx, 0)
            self._require_buddy().free_block(table)
        return True

    def get_mapping(self, page_dir: int, vaddr: int) -> int | None:
        """Physical address ``vaddr`` translates to, or None if it is not mapped."""
        pde = self._read_entry(page_dir, pde_index(vaddr))
        if not pde & _PDE_PRESENT:
            return None
        pte = self._read_entry(entry_addr(pde), pte_index(vaddr))
        if not pte & _PTE_PRESENT:
            return None
        return entry_addr(pte) + (vaddr & 0xFFF)

    def page_fault(self, address: int, err_code: int) -> None:
        """Handle a page fault by raising :class:`PageFault`."""
        raise PageFault(address, err_code)