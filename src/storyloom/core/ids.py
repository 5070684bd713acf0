"""Utilities for creating deterministic record identifiers."""
from __future__ import annotations


class IdSequence:
    """Monotonic ``<prefix>_<n>`` identifiers, unique per sequence instance."""

    def __init__(self, prefix: str, start: int = 1) -> None:
        self._prefix = prefix
        self._next = start

    def next_id(self) -> str:
        identifier = f"{self._prefix}_{self._next:06d}"
        self._next += 1
        return identifier

    def advance_past(self, identifier: str) -> None:
        """Make sure later ids never collide with an id restored from a save."""
        prefix, _, number = identifier.rpartition("_")
        if prefix == self._prefix and number.isdigit():
            self._next = max(self._next, int(number) + 1)
