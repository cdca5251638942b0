"""Simulated 32-bit kernel memory management: boot, page, buddy, slab, heap, paging and vmalloc."""

__version__ = "0.1.0"

__all__ = [
    "boot_allocator",
    "buddy",
    "id_manager",
    "kmalloc",
    "layout",
    "lock",
    "multiboot",
    "page",
    "panic",
    "physmem",
    "slab",
    "vmalloc",
    "vmm",
]