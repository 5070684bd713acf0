import logging

import pytest

from storyloom.domain.defs import (
    BranchOptionDef,
    BranchPointDef,
    CustomRequirement,
    FlagRequirement,
    InventoryRequirement,
    StoryChoiceDef,
    TimeWindowRequirement,
    VisitedRequirement,
)
from storyloom.domain.state import EngineState
from storyloom.services.condition_evaluator import ConditionEvaluator


def _state(flags: dict | None = None, history: list | None = None) -> EngineState:
    return EngineState(current_node_id="start", flags=flags or {}, history=history or ["start"])


@pytest.mark.parametrize(
    "requirement, flags, expected",
    [
        (FlagRequirement("gold", "equals", 5), {"gold": 5}, True),
        (FlagRequirement("gold", "not_equals", 5), {"gold": 4}, True),
        (FlagRequirement("gold", "greater", 5), {"gold": 6}, True),
        (FlagRequirement("gold", "greater", 5), {"gold": "6"}, False),
        (FlagRequirement("gold", "less", 5), {}, False),
        (FlagRequirement("tags", "contains", "brave"), {"tags": ["brave"]}, True),
        (FlagRequirement("name", "contains", "da"), {"name": "Ada"}, True),
        (FlagRequirement("bag", "contains", "key"), {"bag": {"key": 1}}, True),
        (FlagRequirement("gold", "contains", 1), {"gold": 10}, False),
        (FlagRequirement("seen", "exists"), {"seen": None}, True),
        (FlagRequirement("seen", "exists"), {}, False),
    ],
)
def test_flag_requirements(requirement, flags: dict, expected: bool) -> None:
    assert ConditionEvaluator().evaluate_requirement(requirement, _state(flags)) is expected


def test_inventory_requirement_counts() -> None:
    evaluator = ConditionEvaluator()
    requirement = InventoryRequirement("potion", 2)
    assert evaluator.evaluate_requirement(requirement, _state({"inventory": {"potion": 2}})) is True
    assert evaluator.evaluate_requirement(requirement, _state({"inventory": {"potion": 1}})) is False
    assert evaluator.evaluate_requirement(requirement, _state({"inventory": ["potion"]})) is False
    assert evaluator.evaluate_requirement(requirement, _state()) is False


def test_time_window_reads_flag_only() -> None:
    evaluator = ConditionEvaluator()
    requirement = TimeWindowRequirement(after=8, before=18, key="hour")
    assert evaluator.evaluate_requirement(requirement, _state({"hour": 12})) is True
    assert evaluator.evaluate_requirement(requirement, _state({"hour": 20})) is False
    assert evaluator.evaluate_requirement(requirement, _state()) is False


def test_visited_requirement() -> None:
    evaluator = ConditionEvaluator()
    requirement = VisitedRequirement("cave")
    assert evaluator.evaluate_requirement(requirement, _state(history=["start", "cave"])) is True
    assert evaluator.evaluate_requirement(requirement, _state()) is False


def test_custom_predicate_gets_a_copy() -> None:
    state = _state({"gold": 1})

    def greedy(snapshot: EngineState) -> bool:
        snapshot.flags["gold"] = 999
        return True

    assert ConditionEvaluator().evaluate_requirement(CustomRequirement("greedy", greedy), state) is True
    assert state.flags == {"gold": 1}


def test_raising_custom_predicate_fails_closed(caplog) -> None:
    def broken(_: EngineState) -> bool:
        raise RuntimeError("boom")

    with caplog.at_level(logging.WARNING):
        result = ConditionEvaluator().evaluate_requirement(CustomRequirement("broken", broken), _state())
    assert result is False
    assert "broken" in caplog.text


def test_choice_gates_are_conjunctive() -> None:
    evaluator = ConditionEvaluator()
    choice = StoryChoiceDef(
        text="Open",
        next_node_id="vault",
        flag_requirements={"hasKey": True, "alarm": False},
        other_requirements=(FlagRequirement("gold", "greater", 3),),
        condition="flags.level >= 2",
    )
    passing = {"hasKey": True, "gold": 5, "level": 2}
    assert evaluator.evaluate(choice, _state(passing)) is True
    for override in ({"hasKey": False}, {"alarm": True}, {"gold": 1}, {"level": 1}):
        assert evaluator.evaluate(choice, _state({**passing, **override})) is False


def test_disabled_choice_is_hidden() -> None:
    choice = StoryChoiceDef(text="Nope", next_node_id="x", enabled=False)
    assert ConditionEvaluator().evaluate(choice, _state()) is False


def test_bad_condition_hides_choice(caplog) -> None:
    choice = StoryChoiceDef(text="Bad", next_node_id="x", condition="flags.a +")
    with caplog.at_level(logging.WARNING):
        assert ConditionEvaluator().evaluate(choice, _state()) is False
    assert "Bad" in caplog.text


def test_branch_point_and_option_conditions() -> None:
    evaluator = ConditionEvaluator()
    option = BranchOptionDef(
        id="o1",
        target_flow_id="f",
        display_text="Go",
        conditions=(FlagRequirement("brave", "equals", True),),
    )
    point = BranchPointDef(id="b", name="B", source_flow_id="f", source_node_id="n", options=(option,))
    assert evaluator.evaluate(point, _state()) is True
    assert evaluator.evaluate(option, _state()) is False
    assert evaluator.evaluate(option, _state({"brave": True})) is True


def test_filter_choices_keeps_order() -> None:
    choices = [
        StoryChoiceDef(text="A", next_node_id="a"),
        StoryChoiceDef(text="B", next_node_id="b", enabled=False),
        StoryChoiceDef(text="C", next_node_id="c"),
    ]
    kept = ConditionEvaluator().filter_choices(choices, _state())
    assert [choice.text for choice in kept] == ["A", "C"]


def test_evaluation_is_deterministic() -> None:
    evaluator = ConditionEvaluator()
    choice = StoryChoiceDef(text="A", next_node_id="a", condition="flags.x > 1")
    state = _state({"x": 2})
    assert {evaluator.evaluate(choice, state) for _ in range(10)} == {True}
