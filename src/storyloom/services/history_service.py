"""Bounded undo/redo history over committed engine actions."""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Mapping

from storyloom.core.clock import Clock, SystemClock, isoformat
from storyloom.core.ids import IdSequence
from storyloom.core.types import ActionKind
from storyloom.domain.history_models import HistoryEntry
from storyloom.domain.state import EngineState

logger = logging.getLogger(__name__)

DEFAULT_MAX_UNDO_ENTRIES = 50
DEFAULT_MAX_REDO_ENTRIES = 25


@dataclass(slots=True)
class UndoRedoResult:
    """Outcome of an undo or redo request."""

    success: bool
    error: str | None = None
    restored_state: EngineState | None = None
    entry: Dict[str, Any] = field(default_factory=dict)
    undo_count: int = 0
    redo_count: int = 0


class HistoryManager:
    """Two bounded stacks of state transitions.

    ``push`` records a committed action and invalidates the redo stack.
    ``undo`` moves the newest entry to the redo stack and hands back its
    ``before`` snapshot; ``redo`` does the reverse with ``after``. The manager
    never touches engine state itself: callers apply ``restored_state``.
    Both stacks evict their oldest entry once full.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        max_undo_entries: int = DEFAULT_MAX_UNDO_ENTRIES,
        max_redo_entries: int = DEFAULT_MAX_REDO_ENTRIES,
        clock: Clock | None = None,
    ) -> None:
        self._enabled = enabled
        self._max_undo = self._require_positive(max_undo_entries, "max_undo_entries")
        self._max_redo = self._require_positive(max_redo_entries, "max_redo_entries")
        self._undo: Deque[HistoryEntry] = deque()
        self._redo: Deque[HistoryEntry] = deque()
        self._clock = clock or SystemClock()
        self._ids = IdSequence("history")

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def max_undo_entries(self) -> int:
        return self._max_undo

    @property
    def max_redo_entries(self) -> int:
        return self._max_redo

    def configure(
        self,
        *,
        enabled: bool | None = None,
        max_undo_entries: int | None = None,
        max_redo_entries: int | None = None,
    ) -> None:
        """Update limits; shrinking a limit drops the oldest entries right away."""
        if max_undo_entries is not None:
            self._max_undo = self._require_positive(max_undo_entries, "max_undo_entries")
        if max_redo_entries is not None:
            self._max_redo = self._require_positive(max_redo_entries, "max_redo_entries")
        if enabled is not None:
            self._enabled = enabled
            if not enabled:
                self.clear()
        self._trim(self._undo, self._max_undo)
        self._trim(self._redo, self._max_redo)

    def record(
        self,
        action: ActionKind,
        before: EngineState,
        after: EngineState,
        metadata: Mapping[str, Any] | None = None,
    ) -> HistoryEntry | None:
        """Build an entry for a committed action and push it."""
        if not self._enabled:
            return None
        entry = HistoryEntry(
            id=self._ids.next_id(),
            action=action,
            before=before.copy(),
            after=after.copy(),
            timestamp=isoformat(self._clock.now()),
            metadata=dict(metadata or {}),
        )
        self.push(entry)
        return entry

    def push(self, entry: HistoryEntry) -> None:
        if not self._enabled:
            return
        self._undo.append(entry)
        self._trim(self._undo, self._max_undo)
        self._redo.clear()
        logger.debug("Recorded %s action %s (undo=%d).", entry.action, entry.id, len(self._undo))

    def undo(self) -> UndoRedoResult:
        if not self._undo:
            return self._failure("No operations to undo")
        entry = self._undo.pop()
        self._redo.append(entry)
        self._trim(self._redo, self._max_redo)
        logger.debug("Undid %s action %s.", entry.action, entry.id)
        return self._success(entry, entry.before)

    def redo(self) -> UndoRedoResult:
        if not self._redo:
            return self._failure("No operations to redo")
        entry = self._redo.pop()
        self._undo.append(entry)
        self._trim(self._undo, self._max_undo)
        logger.debug("Redid %s action %s.", entry.action, entry.id)
        return self._success(entry, entry.after)

    def can_undo(self) -> bool:
        return bool(self._undo)

    def can_redo(self) -> bool:
        return bool(self._redo)

    def undo_count(self) -> int:
        return len(self._undo)

    def redo_count(self) -> int:
        return len(self._redo)

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()

    def summary(self) -> Dict[str, Any]:
        return {
            "enabled": self._enabled,
            "undo_count": len(self._undo),
            "redo_count": len(self._redo),
            "max_undo_entries": self._max_undo,
            "max_redo_entries": self._max_redo,
            "next_undo": _describe(self._undo[-1]) if self._undo else None,
            "next_redo": _describe(self._redo[-1]) if self._redo else None,
        }

    def _success(self, entry: HistoryEntry, snapshot: EngineState) -> UndoRedoResult:
        return UndoRedoResult(
            success=True,
            restored_state=snapshot.copy(),
            entry=_describe(entry),
            undo_count=len(self._undo),
            redo_count=len(self._redo),
        )

    def _failure(self, message: str) -> UndoRedoResult:
        return UndoRedoResult(
            success=False,
            error=message,
            undo_count=len(self._undo),
            redo_count=len(self._redo),
        )

    @staticmethod
    def _trim(stack: Deque[HistoryEntry], limit: int) -> None:
        while len(stack) > limit:
            stack.popleft()

    @staticmethod
    def _require_positive(value: int, context: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValueError(f"{context} must be a positive integer.")
        return value


def _describe(entry: HistoryEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "action": entry.action,
        "timestamp": entry.timestamp,
        "metadata": dict(entry.metadata),
    }
