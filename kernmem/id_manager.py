"""Allocation of small integer identifiers from a fixed range."""

from __future__ import annotations


class IdManager:
    """Hands out identifiers in [0, max_id), remembering a hint for the next free one."""

    def __init__(self, max_id: int) -> None:
        if max_id < 0:
            raise ValueError(f"max_id must not be negative, got {max_id}")
        self.max_id = max_id
        self._used = bytearray(max_id)
        self._next_free: int | None = 0 if max_id else None

    @property
    def next_free(self) -> int | None:
        """The identifier the next allocation will return, or None when all are taken."""
        return self._next_free

    def _find_zero(self, start: int) -> int | None:
        index = self._used.find(0, start)
        if index == -1 and start:
            index = self._used.find(0)
        return None if index == -1 else index

    def _check(self, id_: int) -> None:
        if not 0 <= id_ < self.max_id:
            raise IndexError(f"id {id_} outside [0, {self.max_id})")

    def alloc(self) -> int:
        """Take the next free identifier."""
        if self._next_free is None:
            raise LookupError("no free id left")
        allocated = self._next_free
        self._used[allocated] = 1
        self._next_free = self._find_zero(allocated + 1)
        return allocated

    def free(self, id_: int) -> None:
        """Give an identifier back."""
        self._check(id_)
        self._used[id_] = 0
        if self._next_free is None or id_ < self._next_free:
            self._next_free = id_

    def reserve(self, id_: int) -> bool:
        """Claim a specific identifier; False if it is taken or out of range."""
        if not 0 <= id_ < self.max_id or self._used[id_]:
            return False
        self._used[id_] = 1
        if id_ == self._next_free:
            self._next_free = self._find_zero(id_ + 1)
        return True

    def is_used(self, id_: int) -> bool:
        """Tell whether an identifier is currently taken."""
        self._check(id_)
        return bool(self._used[id_])