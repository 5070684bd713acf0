"""Domain definition exports."""

from .branching_def import (
    BranchingStoryDef,
    BranchLocation,
    BranchOptionDef,
    BranchPointDef,
    ChapterDef,
    DynamicBranchOperation,
    FlowDef,
    FlowEntryPointDef,
)
from .requirement_def import (
    FLAG_OPERATORS,
    CustomRequirement,
    FlagRequirement,
    InventoryRequirement,
    Requirement,
    TimeWindowRequirement,
    VisitedRequirement,
)
from .story_def import StoryChoiceDef, StoryNodeDef

__all__ = [
    "BranchingStoryDef",
    "BranchLocation",
    "BranchOptionDef",
    "BranchPointDef",
    "ChapterDef",
    "CustomRequirement",
    "DynamicBranchOperation",
    "FLAG_OPERATORS",
    "FlagRequirement",
    "FlowDef",
    "FlowEntryPointDef",
    "InventoryRequirement",
    "Requirement",
    "StoryChoiceDef",
    "StoryNodeDef",
    "TimeWindowRequirement",
    "VisitedRequirement",
]
