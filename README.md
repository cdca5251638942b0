# kernmem

`kernmem` models the memory subsystem of a small 32-bit x86 kernel in plain
Python. Physical memory is a sparse byte store. The allocators on top of it keep
the same bookkeeping a kernel keeps: memory regions, page descriptors, buddy free
lists, slab caches, page tables and vmalloc areas. You can use it to study
boot-time memory layout and allocation behaviour, and to test them.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

- `kernmem.layout`: address-space constants such as `PAGE_SIZE`,
  `KERNEL_VADDR_BASE`, the zone bounds and the vmalloc window. It holds:
  - the `Zone` enum (`LOWMEM`, `DMA`, `HIGHMEM`, `INVALID`);
  - the `Gfp` flags (`KERNEL`, `ATOMIC`, `DMA`, `ZERO`) and their combinations
    `GFP_KERNEL`, `GFP_DMA`, and so on;
  - the helpers `align_up`, `align_down`, `is_aligned`, `div_round_up`,
    `zone_of`, `phys_to_virt` and `virt_to_phys`.
- `kernmem.physmem`: `PhysicalMemory`, a byte store of up to 4 GiB. Pages are
  created on first write and unwritten bytes read as zero. It offers `read`,
  `write`, `zero`, `read_u32` and `write_u32`, with 32-bit words in
  little-endian order.
- `kernmem.panic`:
  - the `KernelPanic` exception and its subclass `AssertionFailure`;
  - `kassert`;
  - `format_memory_dump`, which renders bytes from the highest address down,
    eight per row.
- `kernmem.multiboot`: Multiboot2 support.
  - `build_header` returns the kernel header that requests a memory map.
  - `build_info` builds a boot information block from `MmapEntry` records.
  - `parse_info` checks the boot-loader magic and returns a `BootInfo`.
  - `iter_mmap` yields the `(start, end)` of the free entries, or of all the
    other entries.
- `kernmem.boot_allocator`: `BootAllocator`.
  - `init(entries, extra_reserved)` sorts the memory map into free, reserved
    and hole regions (`MemType`) and splits them by zone. It always reserves
    the first page, the low area below `0x9FC00`, and the VGA/BIOS window.
  - `alloc` takes memory from the top of the highest free region of a zone.
  - `alloc_at` takes memory within a range and can align it.
  - `freeze` stops all further allocation.
  - Text reports: `layout_report`, `free_zones_report`,
    `reserved_zones_report` and `allocations_report`.
- `kernmem.page`: `PageDescriptors` holds one `Page` per 4 KiB frame, with a
  `PageState` and a `PageZone`. It supports `by_index`, `by_addr`,
  `next_free`, `free_count`, `reserved_count` and `describe`. The helper
  `same_page` is also here.
- `kernmem.buddy`: `BuddyAllocator`, with free lists per zone for orders 0
  (4 KiB) to 10 (4 MiB).
  - `alloc_pages` returns a physical address or `None`.
  - `free_block` merges a block with its free buddies.
  - Inspection: `block_size`, `free_blocks`, `free_bytes`, `check_lists`,
    `report` and `summary`.
  - Building it puts every available page into the free lists and freezes the
    boot allocator.
- `kernmem.slab`: `SlabAllocator`, with caches of 8 to 2048 bytes in the LOWMEM
  and DMA zones. Each slab is one buddy page. It offers `alloc`, `free`,
  `shrink`, `object_size` and `summary`. The helper `cache_index` is also here.
- `kernmem.kmalloc`: `KernelHeap`, with `kmalloc(size, flags)`, `ksize` and
  `kfree`.
  - Requests up to 2048 bytes go to the slab allocator. Larger requests, up to
    4 MiB, go to the buddy allocator.
  - The returned addresses are in the kernel's linear mapping.
  - `Gfp.DMA` selects the DMA zone.
  - `Gfp.ZERO` clears the memory.
- `kernmem.vmm`: `Vmm`, two-level page tables kept in `PhysicalMemory`.
  - `finalize(boot)` builds the kernel directory. It maps 896 MiB at
    `0xC0000000`, using memory below 4 MiB.
  - `map_page` raises `MemoryError` when no page is left for a new table.
  - `unmap_page` frees a table once it is empty.
  - `get_mapping` returns the physical address or `None`.
  - `page_fault` raises `PageFault`.
  - Helpers: `pde_index`, `pte_index` and `entry_addr`, with the flag enums
    `PteFlag` and `PdeFlag`.
- `kernmem.vmalloc`: `Vmalloc`, a first-fit allocator over the vmalloc window.
  It builds each allocation from single pages, taken from HIGHMEM first and
  then LOWMEM, and maps them one by one. It offers `vmalloc`, `vfree`, `vsize`
  and `areas`.
- `kernmem.id_manager`: `IdManager`, which hands out identifiers in
  `[0, max_id)`. It offers `alloc`, `free`, `reserve` and `is_used`.
- `kernmem.lock`: `SpinLock`, which can be used as a context manager. It sits
  on a nesting `InterruptState` with `disable` and `enable`.

## Example

The start-up order matters. The page directory must be built while the boot
allocator can still allocate. The page descriptors must be built after it, so
that the directory's pages are recorded as reserved.

```python
from kernmem.boot_allocator import BootAllocator
from kernmem.buddy import BuddyAllocator
from kernmem.kmalloc import KernelHeap
from kernmem.layout import Gfp, Zone
from kernmem.multiboot import MemoryKind, MmapEntry
from kernmem.page import PageDescriptors
from kernmem.physmem import PhysicalMemory
from kernmem.slab import SlabAllocator
from kernmem.vmalloc import Vmalloc
from kernmem.vmm import Vmm

boot = BootAllocator()
boot.init(
    [
        MmapEntry(0x0, 0x9FC00, MemoryKind.AVAILABLE),
        MmapEntry(0x100000, 0x3F00000, MemoryKind.AVAILABLE),
    ],
    [],
)

memory = PhysicalMemory()
vmm = Vmm(memory)
page_dir = vmm.finalize(boot)

pages = PageDescriptors(boot)
buddy = BuddyAllocator(pages, boot)
vmm.buddy = buddy

slab = SlabAllocator(pages, buddy)
heap = KernelHeap(pages, buddy, slab, memory)

ptr = heap.kmalloc(100, Gfp.KERNEL | Gfp.ZERO)
print(heap.ksize(ptr))          # 128: the object comes from the 128-byte cache
heap.kfree(ptr)

block = buddy.alloc_pages(8192, Zone.LOWMEM)
print(buddy.block_size(block))  # 8192
buddy.free_block(block)

vm = Vmalloc(heap, buddy, vmm)
addr = vm.vmalloc(3 * 4096)
print(vm.vsize(addr), hex(vmm.get_mapping(page_dir, addr)))
vm.vfree(addr)

print(buddy.summary())
print(slab.summary())
```

## Errors

Misuse raises `KernelPanic` from `kernmem.panic`. Examples are a double free in
the buddy or slab allocator, and an invalid region given to the boot allocator.
In a kernel these cases halt the machine. An allocator that runs out of memory
returns `None`, except for the boot allocator, which raises `MemoryError`.

## What it does not do

`kernmem` is a library of models. It does not boot or drive hardware. It has no
command-line tool and no screen output; the reports are returned as strings. It
does not schedule tasks. The only paging state is the `cr3` and
`current_page_dir` attributes on `Vmm`, and there is no TLB.