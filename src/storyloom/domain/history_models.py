"""Records kept by the undo/redo history and checkpoint ring buffer."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from storyloom.core.types import ActionKind
from storyloom.domain.state import EngineState


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """One committed mutation, with the states on either side of it."""

    id: str
    action: ActionKind
    before: EngineState
    after: EngineState
    timestamp: str
    metadata: Dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class Checkpoint:
    """Lightweight state snapshot for fast restore."""

    id: str
    name: str
    state: EngineState
    timestamp: str
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, object] = field(default_factory=dict)
