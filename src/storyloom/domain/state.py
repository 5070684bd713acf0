"""Domain-level narrative state tracking."""
from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from storyloom.core.types import FlagValue


@dataclass
class EngineState:
    """Current node, flag ledger and visited-node history."""

    current_node_id: str
    flags: Dict[str, FlagValue] = field(default_factory=dict)
    history: List[str] = field(default_factory=list)

    def copy(self) -> "EngineState":
        """Return a deep copy that shares nothing with this state."""
        return EngineState(
            current_node_id=self.current_node_id,
            flags=copy.deepcopy(self.flags),
            history=list(self.history),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_node_id": self.current_node_id,
            "flags": copy.deepcopy(self.flags),
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EngineState":
        """Build a state from a trusted mapping (see SaveService for validation)."""
        return cls(
            current_node_id=payload["current_node_id"],
            flags=copy.deepcopy(dict(payload.get("flags") or {})),
            history=list(payload.get("history") or []),
        )


def ensure_json_value(value: object, context: str) -> None:
    """Raise ValueError unless ``value`` survives a JSON round trip unchanged."""
    if value is None or isinstance(value, (bool, int, str)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{context} must be a finite number.")
        return
    if isinstance(value, list):
        for index, item in enumerate(value):
            ensure_json_value(item, f"{context}[{index}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{context} keys must be strings.")
            ensure_json_value(item, f"{context}.{key}")
        return
    raise ValueError(f"{context} must be a JSON value, got {type(value).__name__}.")


def ensure_json_flags(flags: Mapping[str, object], context: str = "flags") -> None:
    for key, value in flags.items():
        if not isinstance(key, str):
            raise ValueError(f"{context} keys must be strings.")
        ensure_json_value(value, f"{context}.{key}")


def ensure_flag_effects(effects: object, context: str = "flag_effects") -> None:
    """Raise ValueError unless ``effects`` maps non-empty keys to JSON values."""
    if not isinstance(effects, Mapping):
        raise ValueError(f"{context} must be a mapping.")
    for key, value in effects.items():
        if not isinstance(key, str) or not key:
            raise ValueError(f"{context} keys must be non-empty strings.")
        ensure_json_value(value, f"{context}.{key}")
