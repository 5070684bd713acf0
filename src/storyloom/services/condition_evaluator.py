"""Pure predicate evaluation for choices and branches."""
from __future__ import annotations

import logging
from typing import Iterable, Mapping, Sequence, Union

from storyloom.domain.defs import (
    BranchOptionDef,
    BranchPointDef,
    CustomRequirement,
    FlagRequirement,
    InventoryRequirement,
    Requirement,
    StoryChoiceDef,
    TimeWindowRequirement,
    VisitedRequirement,
)
from storyloom.domain.state import EngineState
from storyloom.services.condition_expression import evaluate_expression
from storyloom.services.errors import ConditionExpressionError

logger = logging.getLogger(__name__)

Subject = Union[StoryChoiceDef, BranchOptionDef, BranchPointDef, Sequence[Requirement]]


class ConditionEvaluator:
    """Decides whether a choice, branch option or branch point is available.

    Evaluation is deterministic in ``(subject, state)``: requirement kinds only
    read the state they are given, and anything time- or chance-dependent must
    already be recorded as a flag. Every requirement must pass (AND); the first
    failure stops evaluation. Custom predicates and condition expressions that
    raise are logged and count as failed, so a faulty rule hides one option
    instead of aborting the playthrough.
    """

    def evaluate(self, subject: Subject, state: EngineState) -> bool:
        if isinstance(subject, StoryChoiceDef):
            return self._evaluate_choice(subject, state)
        if isinstance(subject, (BranchOptionDef, BranchPointDef)):
            return self.evaluate_all(subject.conditions, state)
        return self.evaluate_all(subject, state)

    def evaluate_all(self, requirements: Iterable[Requirement], state: EngineState) -> bool:
        return all(self.evaluate_requirement(requirement, state) for requirement in requirements)

    def filter_choices(
        self, choices: Sequence[StoryChoiceDef], state: EngineState
    ) -> list[StoryChoiceDef]:
        return [choice for choice in choices if self.evaluate(choice, state)]

    def evaluate_requirement(self, requirement: Requirement, state: EngineState) -> bool:
        flags = state.flags
        if isinstance(requirement, FlagRequirement):
            return _compare_flag(requirement, flags)
        if isinstance(requirement, InventoryRequirement):
            inventory = flags.get("inventory")
            if not isinstance(inventory, Mapping):
                return False
            held = inventory.get(requirement.item, 0)
            if isinstance(held, bool) or not isinstance(held, (int, float)):
                return False
            return held >= requirement.count
        if isinstance(requirement, TimeWindowRequirement):
            current = flags.get(requirement.key)
            if isinstance(current, bool) or not isinstance(current, (int, float)):
                return False
            if requirement.after is not None and current < requirement.after:
                return False
            if requirement.before is not None and current > requirement.before:
                return False
            return True
        if isinstance(requirement, VisitedRequirement):
            return requirement.node_id in state.history
        if isinstance(requirement, CustomRequirement):
            try:
                return bool(requirement.predicate(state.copy()))
            except Exception:
                logger.warning(
                    "Custom requirement '%s' raised; treating it as unmet.",
                    requirement.name,
                    exc_info=True,
                )
                return False
        raise TypeError(f"Unknown requirement type: {type(requirement).__name__}")

    def _evaluate_choice(self, choice: StoryChoiceDef, state: EngineState) -> bool:
        if not choice.enabled:
            return False
        if not _flag_requirements_met(choice.flag_requirements, state.flags):
            return False
        if not self.evaluate_all(choice.other_requirements, state):
            return False
        if choice.condition:
            try:
                return evaluate_expression(choice.condition, state.flags, state.history)
            except ConditionExpressionError:
                logger.warning(
                    "Condition '%s' on choice '%s' failed to evaluate; hiding the choice.",
                    choice.condition,
                    choice.text,
                    exc_info=True,
                )
                return False
        return True


def _flag_requirements_met(requirements: Mapping[str, object], flags: Mapping[str, object]) -> bool:
    for flag_name, required in requirements.items():
        current = flags.get(flag_name)
        if required is True:
            if not current:
                return False
        elif required is False:
            if current:
                return False
        elif current != required:
            return False
    return True


def _compare_flag(requirement: FlagRequirement, flags: Mapping[str, object]) -> bool:
    operator = requirement.operator
    if operator == "exists":
        return requirement.key in flags
    current = flags.get(requirement.key)
    expected = requirement.value
    if operator == "equals":
        return current == expected
    if operator == "not_equals":
        return current != expected
    if operator in ("greater", "less"):
        if not _is_number(current) or not _is_number(expected):
            return False
        return current > expected if operator == "greater" else current < expected
    if operator == "contains":
        if isinstance(current, (list, str)):
            try:
                return expected in current
            except TypeError:
                return False
        if isinstance(current, Mapping):
            return expected in current
        return False
    logger.warning("Unknown flag operator '%s' on '%s'; treating it as unmet.", operator, requirement.key)
    return False


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
