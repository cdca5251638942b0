"""Kernel panics, assertions and stack memory dumps."""

from __future__ import annotations


class KernelPanic(RuntimeError):
    """An unrecoverable kernel error; the machine would halt."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AssertionFailure(KernelPanic):
    """A failed kernel assertion."""

    def __init__(self, expr: str, file: str, line: int) -> None:
        super().__init__(f"Assertion failed:{file}:{line}: {expr}")
        self.expr = expr
        self.file = file
        self.line = line


def kassert(condition: object, expr: str, file: str, line: int) -> None:
    """Raise :class:`AssertionFailure` when ``condition`` is false."""
    if not condition:
        raise AssertionFailure(expr, file, line)


def format_memory_dump(data: bytes, base: int) -> str:
    """Render ``data`` (located at ``base``) from its highest address down, eight bytes a row."""
    if not data:
        return ""
    start = base
    addr = base + len(data) - 1
    parts: list[str] = []
    while addr >= start:
        if addr % 8 == 0 or addr == start:
            parts.append(f"0x{addr:08x}:\t")
        parts.append(f"{data[addr - base]:02x} ")
        addr -= 1
        if addr % 8 == 0:
            parts.append("\n")
    if addr % 8:
        parts.append("\n")
    return "".join(parts)