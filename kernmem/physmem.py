"""Sparse byte-addressable physical memory."""

from __future__ import annotations

from collections.abc import Iterator

from kernmem.layout import PAGE_SIZE


class PhysicalMemory:
    """Physical RAM backed by pages created on first write; unwritten bytes read as zero."""

    def __init__(self, size: int = 1 << 32) -> None:
        if size <= 0:
            raise ValueError("memory size must be positive")
        self.size = size
        self._pages: dict[int, bytearray] = {}

    def _check(self, addr: int, length: int) -> None:
        if length < 0:
            raise ValueError(f"negative length {length}")
        if addr < 0 or addr + length > self.size:
            raise ValueError(
                f"access {addr:#x}+{length:#x} outside physical memory of {self.size:#x} bytes"
            )

    @staticmethod
    def _chunks(addr: int, length: int) -> Iterator[tuple[int, int, int]]:
        while length:
            page, offset = divmod(addr, PAGE_SIZE)
            count = min(PAGE_SIZE - offset, length)
            yield page, offset, count
            addr += count
            length -= count

    def read(self, addr: int, size: int) -> bytes:
        """Return ``size`` bytes starting at ``addr``."""
        self._check(addr, size)
        out = bytearray()
        for page, offset, count in self._chunks(addr, size):
            frame = self._pages.get(page)
            out += frame[offset:offset + count] if frame is not None else bytes(count)
        return bytes(out)

    def write(self, addr: int, data: bytes) -> None:
        """Store ``data`` starting at ``addr``."""
        data = bytes(data)
        self._check(addr, len(data))
        pos = 0
        for page, offset, count in self._chunks(addr, len(data)):
            frame = self._pages.setdefault(page, bytearray(PAGE_SIZE))
            frame[offset:offset + count] = data[pos:pos + count]
            pos += count

    def zero(self, addr: int, size: int) -> None:
        """Clear ``size`` bytes starting at ``addr``."""
        self._check(addr, size)
        for page, offset, count in self._chunks(addr, size):
            frame = self._pages.get(page)
            if frame is not None:
                frame[offset:offset + count] = bytes(count)

    def read_u32(self, addr: int) -> int:
        """Read a little-endian 32-bit word."""
        return int.from_bytes(self.read(addr, 4), "little")

    def write_u32(self, addr: int, value: int) -> None:
        """Write a little-endian 32-bit word."""
        self.write(addr, (value & 0xFFFFFFFF).to_bytes(4, "little"))