"""Story definition structures used by the runtime."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Tuple

from .requirement_def import Requirement


@dataclass(frozen=True, slots=True)
class StoryChoiceDef:
    """Represents a selectable choice on a story node."""

    text: str
    next_node_id: str
    flag_effects: Dict[str, object] = field(default_factory=dict)
    flag_requirements: Dict[str, object] = field(default_factory=dict)
    other_requirements: Tuple[Requirement, ...] = ()
    enabled: bool = True
    condition: str | None = None


@dataclass(frozen=True, slots=True)
class StoryNodeDef:
    """Fully parsed story node."""

    id: str
    text: str
    choices: Tuple[StoryChoiceDef, ...] = ()
    meta: Dict[str, object] = field(default_factory=dict)
