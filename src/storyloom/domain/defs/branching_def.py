"""Chapter, flow and branch point definitions for multi-flow stories."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Tuple

from storyloom.core.types import BranchType, FlowType, InsertionPoint

from .requirement_def import Requirement
from .story_def import StoryNodeDef


@dataclass(frozen=True, slots=True)
class FlowEntryPointDef:
    id: str
    node_id: str
    priority: int = 0


@dataclass(frozen=True, slots=True)
class FlowDef:
    """Ordered set of nodes forming one narrative thread."""

    id: str
    name: str
    nodes: Tuple[StoryNodeDef, ...] = ()
    entry_points: Tuple[FlowEntryPointDef, ...] = ()
    flow_type: FlowType = "linear"
    description: str | None = None

    def has_node(self, node_id: str) -> bool:
        return any(node.id == node_id for node in self.nodes)


@dataclass(frozen=True, slots=True)
class BranchOptionDef:
    """One selectable route out of a branch point."""

    id: str
    target_flow_id: str
    display_text: str
    target_node_id: str | None = None
    conditions: Tuple[Requirement, ...] = ()
    flag_effects: Dict[str, object] = field(default_factory=dict)
    weight: float = 1.0


@dataclass(frozen=True, slots=True)
class BranchPointDef:
    """Decision point registered at a (flow, node) pair."""

    id: str
    name: str
    source_flow_id: str
    source_node_id: str
    options: Tuple[BranchOptionDef, ...] = ()
    branch_type: BranchType = "choice-driven"
    conditions: Tuple[Requirement, ...] = ()


@dataclass(frozen=True, slots=True)
class ChapterDef:
    id: str
    title: str
    flows: Tuple[FlowDef, ...] = ()
    branches: Tuple[BranchPointDef, ...] = ()
    description: str | None = None


@dataclass(frozen=True, slots=True)
class BranchingStoryDef:
    """Top-level container for chaptered stories."""

    id: str
    title: str
    chapters: Tuple[ChapterDef, ...] = ()
    version: str = "1.0.0"


@dataclass(frozen=True, slots=True)
class BranchLocation:
    chapter_id: str
    flow_id: str
    node_id: str
    insertion_point: InsertionPoint = "after"


@dataclass(frozen=True, slots=True)
class DynamicBranchOperation:
    """Request to add a branch point to a chapter at runtime."""

    branch_id: str
    location: BranchLocation
    options: Tuple[BranchOptionDef, ...] = ()
    conditions: Tuple[Requirement, ...] = ()
    name: str | None = None
    branch_type: BranchType = "conditional"
