"""Requirement kinds that gate choices and branches."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Union

from storyloom.core.types import FlagOperator
from storyloom.domain.state import EngineState

FLAG_OPERATORS: tuple[str, ...] = ("equals", "not_equals", "greater", "less", "contains", "exists")


@dataclass(frozen=True, slots=True)
class FlagRequirement:
    """Compares ``flags[key]`` against ``value`` using ``operator``."""

    key: str
    operator: FlagOperator = "equals"
    value: object = None


@dataclass(frozen=True, slots=True)
class InventoryRequirement:
    """Requires at least ``count`` of ``item`` in ``flags['inventory']``."""

    item: str
    count: int = 1


@dataclass(frozen=True, slots=True)
class TimeWindowRequirement:
    """Requires the explicit clock flag to fall inside ``[after, before]``."""

    after: float | None = None
    before: float | None = None
    key: str = "time"


@dataclass(frozen=True, slots=True)
class VisitedRequirement:
    """Requires ``node_id`` to appear in the state's history."""

    node_id: str


@dataclass(frozen=True, slots=True)
class CustomRequirement:
    """Named, injected predicate evaluated against a copy of the state."""

    name: str
    predicate: Callable[[EngineState], bool] = field(compare=False)


Requirement = Union[
    FlagRequirement,
    InventoryRequirement,
    TimeWindowRequirement,
    VisitedRequirement,
    CustomRequirement,
]
