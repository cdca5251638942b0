"""Multiboot2 header, boot information parsing and memory-map iteration."""

from __future__ import annotations

import enum
import struct
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from kernmem.layout import ADDRESS_MASK, align_up
from kernmem.panic import KernelPanic

MULTIBOOT_SEARCH = 32768
MULTIBOOT_HEADER_ALIGN = 8
MULTIBOOT2_HEADER_MAGIC = 0xE85250D6
MULTIBOOT2_BOOTLOADER_MAGIC = 0x36D76289
MULTIBOOT_MOD_ALIGN = 0x00001000
MULTIBOOT_INFO_ALIGN = 0x00000008
MULTIBOOT_TAG_ALIGN = 8

MULTIBOOT_HEADER_TAG_END = 0
MULTIBOOT_HEADER_TAG_INFORMATION_REQUEST = 1
MULTIBOOT_ARCHITECTURE_I386 = 0

TAGS_NEEDED = 1

_HEADER = struct.Struct("<IIII")
_HEADER_TAG = struct.Struct("<HHI")
_TAG = struct.Struct("<II")
_MMAP_TAG = struct.Struct("<IIII")
_MMAP_ENTRY = struct.Struct("<QQII")

_HEADER_SIZE = 16
_INFO_REQUEST_SIZE = 16  # 12 bytes of fields padded to 8-byte alignment
_END_TAG_SIZE = 8


class TagType(enum.IntEnum):
    """Boot information tag types."""

    END = 0
    CMDLINE = 1
    BOOT_LOADER_NAME = 2
    MODULE = 3
    BASIC_MEMINFO = 4
    BOOTDEV = 5
    MMAP = 6
    VBE = 7
    FRAMEBUFFER = 8
    ELF_SECTIONS = 9
    APM = 10
    EFI32 = 11
    EFI64 = 12
    SMBIOS = 13
    ACPI_OLD = 14
    ACPI_NEW = 15
    NETWORK = 16
    EFI_MMAP = 17
    EFI_BS = 18
    EFI32_IH = 19
    EFI64_IH = 20
    LOAD_BASE_ADDR = 21


class MemoryKind(enum.IntEnum):
    """Memory map entry types."""

    AVAILABLE = 1
    RESERVED = 2
    ACPI_RECLAIMABLE = 3
    NVS = 4
    BADRAM = 5


@dataclass(frozen=True)
class MmapEntry:
    """One memory map entry as reported by the boot loader."""

    addr: int
    length: int
    kind: int = MemoryKind.AVAILABLE

    @property
    def is_free(self) -> bool:
        return self.kind == MemoryKind.AVAILABLE

    @property
    def region(self) -> tuple[int, int]:
        """Start and end as 32-bit physical addresses; an end past 4 GiB wraps."""
        start = self.addr & ADDRESS_MASK
        return start, (start + self.length) & ADDRESS_MASK

    def pack(self) -> bytes:
        return _MMAP_ENTRY.pack(self.addr, self.length, int(self.kind), 0)


@dataclass(frozen=True)
class BootInfo:
    """The parts of the boot information structure the kernel uses."""

    total_size: int
    mmap: tuple[MmapEntry, ...]
    entry_size: int
    entry_version: int
    tag_types: tuple[int, ...]


def build_header() -> bytes:
    """Return the kernel's Multiboot2 header requesting a memory map."""
    length = _HEADER_SIZE + _INFO_REQUEST_SIZE + _END_TAG_SIZE
    checksum = (0x100000000 - (MULTIBOOT2_HEADER_MAGIC + MULTIBOOT_ARCHITECTURE_I386 + length)) & 0xFFFFFFFF
    header = _HEADER.pack(MULTIBOOT2_HEADER_MAGIC, MULTIBOOT_ARCHITECTURE_I386, length, checksum)
    request = _HEADER_TAG.pack(
        MULTIBOOT_HEADER_TAG_INFORMATION_REQUEST, 0, _INFO_REQUEST_SIZE
    ) + struct.pack("<I", TagType.MMAP)
    request = request.ljust(_INFO_REQUEST_SIZE, b"\0")
    end = _HEADER_TAG.pack(MULTIBOOT_HEADER_TAG_END, 0, _END_TAG_SIZE)
    return header + request + end


def _pad(data: bytes) -> bytes:
    return data.ljust(align_up(len(data), MULTIBOOT_TAG_ALIGN), b"\0")


def build_info(entries: Iterable[MmapEntry]) -> bytes:
    """Build a boot information structure holding a memory map tag."""
    body = b"".join(entry.pack() for entry in entries)
    mmap_size = _MMAP_TAG.size + len(body)
    mmap_tag = _pad(_MMAP_TAG.pack(TagType.MMAP, mmap_size, _MMAP_ENTRY.size, 0) + body)
    end_tag = _TAG.pack(TagType.END, _TAG.size)
    total = 8 + len(mmap_tag) + len(end_tag)
    return struct.pack("<II", total, 0) + mmap_tag + end_tag


def _parse_mmap(tag: bytes) -> tuple[tuple[MmapEntry, ...], int, int]:
    _, size, entry_size, entry_version = _MMAP_TAG.unpack_from(tag)
    if entry_size < _MMAP_ENTRY.size:
        raise KernelPanic(f"Multiboot2: bad memory map entry size {entry_size}\n")
    entries = []
    offset = _MMAP_TAG.size
    while offset + _MMAP_ENTRY.size <= size:
        addr, length, kind, _ = _MMAP_ENTRY.unpack_from(tag, offset)
        entries.append(MmapEntry(addr, length, kind))
        offset += entry_size
    return tuple(entries), entry_size, entry_version


def parse_info(data: bytes, magic: int) -> BootInfo:
    """Check the boot loader's magic and walk the boot information tags."""
    if magic != MULTIBOOT2_BOOTLOADER_MAGIC:
        raise KernelPanic(
            f"Invalid magic number: expected 0x{MULTIBOOT2_BOOTLOADER_MAGIC:x} | used 0x{magic:x}\n"
        )
    if len(data) < 8:
        raise KernelPanic("Multiboot2: truncated boot information\n")
    total_size = struct.unpack_from("<I", data)[0]
    mmap: tuple[MmapEntry, ...] = ()
    entry_size = entry_version = 0
    tag_types = []
    tags_found = 0
    offset = 8
    while True:
        if offset + _TAG.size > len(data):
            raise KernelPanic("Multiboot2: boot information ends before the end tag\n")
        tag_type, size = _TAG.unpack_from(data, offset)
        if tag_type == TagType.END:
            break
        if size < _TAG.size or offset + size > len(data):
            raise KernelPanic(f"Multiboot2: malformed tag {tag_type} of size {size}\n")
        tag_types.append(tag_type)
        if tag_type == TagType.MMAP:
            mmap, entry_size, entry_version = _parse_mmap(data[offset:offset + size])
            tags_found += 1
        offset += align_up(size, MULTIBOOT_TAG_ALIGN)
    if tags_found != TAGS_NEEDED:
        raise KernelPanic("Multiboot2: Not whole tags founded\n")
    return BootInfo(total_size, mmap, entry_size, entry_version, tuple(tag_types))


def iter_mmap(entries: Iterable[MmapEntry], free: bool) -> Iterator[tuple[int, int]]:
    """Yield (start, end) of available entries when ``free``, else of all others."""
    for entry in entries:
        if entry.is_free == bool(free):
            yield entry.region