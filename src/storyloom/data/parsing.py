"""Shared parsing helpers for story definition payloads."""
from __future__ import annotations

from typing import Callable, Dict, List, Mapping, Tuple

from storyloom.data.errors import ValidationError
from storyloom.domain.defs import (
    FLAG_OPERATORS,
    CustomRequirement,
    FlagRequirement,
    InventoryRequirement,
    Requirement,
    TimeWindowRequirement,
    VisitedRequirement,
)
from storyloom.domain.state import EngineState, ensure_json_value

CustomPredicate = Callable[[EngineState], bool]


class DefinitionParser:
    """Common field access and requirement parsing for story loaders.

    Payloads use camelCase keys as produced by authoring tools; the snake_case
    spelling of every key is accepted as well.
    """

    def __init__(self, custom_predicates: Mapping[str, CustomPredicate] | None = None) -> None:
        self._custom_predicates: Dict[str, CustomPredicate] = dict(custom_predicates or {})

    def parse_requirements(self, raw: object, context: str) -> Tuple[Requirement, ...]:
        if raw is None:
            return ()
        if not isinstance(raw, list):
            raise ValidationError(f"{context} must be a list if provided.")
        return tuple(
            self.parse_requirement(entry, f"{context}[{index}]") for index, entry in enumerate(raw)
        )

    def parse_requirement(self, raw: object, context: str) -> Requirement:
        data = self._require_mapping(raw, context)
        kind = data.get("type", "flag")
        if kind == "flag":
            key = self._require_str(self._pick(data, "key", "flag"), f"{context} key")
            operator = data.get("operator", "equals")
            if operator not in FLAG_OPERATORS:
                raise ValidationError(
                    f"{context} operator must be one of {', '.join(FLAG_OPERATORS)}."
                )
            value = data.get("value")
            self._require_json(value, f"{context} value")
            return FlagRequirement(key=key, operator=operator, value=value)
        if kind == "inventory":
            item = self._require_str(data.get("item"), f"{context} item")
            count = data.get("count", 1)
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                raise ValidationError(f"{context} count must be a non-negative integer.")
            return InventoryRequirement(item=item, count=count)
        if kind == "time":
            after = self._optional_number(data.get("after"), f"{context} after")
            before = self._optional_number(data.get("before"), f"{context} before")
            key = self._require_str(data.get("key", "time"), f"{context} key")
            return TimeWindowRequirement(after=after, before=before, key=key)
        if kind == "visited":
            node_id = self._require_str(self._pick(data, "nodeId", "node_id"), f"{context} nodeId")
            return VisitedRequirement(node_id=node_id)
        if kind == "custom":
            name = self._require_str(data.get("name"), f"{context} name")
            predicate = self._custom_predicates.get(name)
            if predicate is None:
                raise ValidationError(f"{context} references unregistered custom predicate '{name}'.")
            return CustomRequirement(name=name, predicate=predicate)
        raise ValidationError(f"{context} has unsupported requirement type '{kind}'.")

    def _parse_flag_map(self, raw: object, context: str) -> Dict[str, object]:
        if raw is None:
            return {}
        data = self._require_mapping(raw, context)
        for key, value in data.items():
            self._require_json(value, f"{context}.{key}")
        return dict(data)

    def _parse_list(self, raw: object, context: str) -> List[object]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise ValidationError(f"{context} must be a list if provided.")
        return raw

    @staticmethod
    def _pick(data: Mapping[str, object], camel: str, snake: str, default: object = None) -> object:
        if camel in data:
            return data[camel]
        return data.get(snake, default)

    @staticmethod
    def _require_mapping(value: object, context: str) -> dict[str, object]:
        if not isinstance(value, dict):
            raise ValidationError(f"{context} must be an object/dict.")
        return value

    @staticmethod
    def _require_str(value: object, context: str) -> str:
        if not isinstance(value, str):
            raise ValidationError(f"{context} must be a string.")
        return value

    @staticmethod
    def _optional_str(value: object, context: str) -> str | None:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValidationError(f"{context} must be a string if provided.")
        return value

    @staticmethod
    def _optional_number(value: object, context: str) -> float | None:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{context} must be a number if provided.")
        return value

    @staticmethod
    def _require_bool(value: object, context: str) -> bool:
        if not isinstance(value, bool):
            raise ValidationError(f"{context} must be a boolean.")
        return value

    @staticmethod
    def _require_json(value: object, context: str) -> None:
        try:
            ensure_json_value(value, context)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
