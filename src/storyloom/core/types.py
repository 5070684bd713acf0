"""Shared type aliases for the core and domain layers."""
from typing import Any, Dict, List, Literal, Union

JSONScalar = Union[None, bool, int, float, str]
FlagValue = Any
Flags = Dict[str, FlagValue]
NodeHistory = List[str]

ActionKind = Literal["choice", "flag-change", "branch", "state-load", "checkpoint-restore"]
AutosaveTrigger = Literal["choice", "flag-change", "branch", "state-load", "manual", "interval"]
FlagOperator = Literal["equals", "not_equals", "greater", "less", "contains", "exists"]
FlowType = Literal["linear", "branching", "conditional", "procedural"]
BranchType = Literal["choice-driven", "flag-conditional", "time-based", "procedural", "conditional"]
InsertionPoint = Literal["before", "after", "replace"]

__all__ = [
    "ActionKind",
    "AutosaveTrigger",
    "BranchType",
    "FlagOperator",
    "FlagValue",
    "Flags",
    "FlowType",
    "InsertionPoint",
    "JSONScalar",
    "NodeHistory",
]
