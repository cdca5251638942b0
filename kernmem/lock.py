"""Interrupt masking and spin locks for a single processor."""

from __future__ import annotations

from dataclasses import dataclass
from types import TracebackType


@dataclass
class InterruptState:
    """Nested interrupt masking: interrupts come back once every disable is undone."""

    counter: int = 0
    enabled: bool = True

    def disable(self) -> None:
        """Mask interrupts and count one more nesting level."""
        self.enabled = False
        self.counter += 1

    def enable(self) -> None:
        """Undo one nesting level; unmask once none are left."""
        if self.counter:
            self.counter -= 1
        if not self.counter:
            self.enabled = True


interrupts = InterruptState()


class SpinLock:
    """A lock that, on one processor, gets mutual exclusion by masking interrupts."""

    def __init__(self, irq: InterruptState | None = None) -> None:
        self.irq = interrupts if irq is None else irq
        self.locked = False

    def acquire(self) -> None:
        self.irq.disable()
        self.locked = True

    def release(self) -> None:
        self.locked = False
        self.irq.enable()

    def __enter__(self) -> SpinLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()