import logging

import pytest

from storyloom.config import BranchingConfig, EngineConfig, UndoRedoConfig
from storyloom.core.rng import RNG
from storyloom.data.branching_loader import build_graph_from_story, load_bundled_branching_story
from storyloom.domain.defs import BranchLocation, BranchOptionDef, DynamicBranchOperation, FlagRequirement
from storyloom.services.branching_engine import BranchingEngine, create_branching_engine
from storyloom.services.errors import (
    BranchInProgressError,
    SaveLoadError,
    UnresolvedChapterError,
    UnresolvedFlowError,
    UnresolvedNodeError,
    UnresolvedOptionError,
)
from storyloom.services.transition_engine import TransitionEngine

from tests.helpers.story_fixtures import FakeClock, make_branching_story


def _make_engine(**kwargs) -> BranchingEngine:
    return create_branching_engine(make_branching_story(), clock=FakeClock(), **kwargs)


def _option(option_id: str, target_flow_id: str = "side", **kwargs) -> BranchOptionDef:
    return BranchOptionDef(id=option_id, target_flow_id=target_flow_id, display_text=option_id, **kwargs)


def test_starts_in_first_flow() -> None:
    branching = _make_engine()
    assert branching.current_chapter.id == "ch1"
    assert branching.current_flow.id == "main"
    assert branching.engine.current_node_id == "n1"


def test_available_options_respect_conditions() -> None:
    branching = _make_engine()
    assert [option.id for option in branching.evaluate_available_branches()] == ["opt_alt", "opt_side"]

    branching.engine.set_flag("hasKey", True)

    assert [option.id for option in branching.evaluate_available_branches()] == [
        "opt_alt",
        "opt_side",
        "opt_locked",
    ]


def test_execute_branch_uses_highest_priority_entry() -> None:
    branching = _make_engine()

    result = branching.execute_branch("opt_alt")

    assert result.action == "branch"
    assert branching.engine.current_node_id == "a2"
    assert branching.current_flow.id == "alt"
    assert branching.engine.get_flags() == {"path": "alt"}
    history = branching.get_branch_history()
    assert len(history) == 1
    assert (history[0].branch_point_id, history[0].from_node_id, history[0].to_node_id) == ("bp1", "n1", "a2")
    analytics = branching.get_branching_analytics()
    assert analytics["total_branches_traversed"] == 1
    assert analytics["option_usage"] == {"opt_alt": 1}
    assert analytics["current_flow_id"] == "alt"


def test_explicit_target_node_and_first_node_fallback() -> None:
    branching = _make_engine()
    branching.engine.set_flag("hasKey", True)
    branching.execute_branch("opt_locked")
    assert branching.engine.current_node_id == "a1"

    other = _make_engine()
    other.execute_branch("opt_side")
    assert other.engine.current_node_id == "s1"


def test_unavailable_option_changes_nothing() -> None:
    branching = _make_engine()
    before = branching.engine.get_state()

    with pytest.raises(UnresolvedOptionError):
        branching.execute_branch("opt_locked")
    with pytest.raises(UnresolvedOptionError):
        branching.execute_branch("nope")

    assert branching.engine.get_state() == before
    assert branching.get_branch_history() == []
    assert branching.get_branching_analytics()["total_branches_traversed"] == 0
    assert branching.engine.can_undo() is False


def test_bad_target_node_changes_nothing() -> None:
    branching = _make_engine()
    operation = DynamicBranchOperation(
        branch_id="broken",
        location=BranchLocation("ch1", "main", "n1"),
        options=(_option("to_nowhere", "alt", target_node_id="s1"),),
    )
    assert branching.insert_dynamic_branch(operation) is True
    before = branching.engine.get_state()

    with pytest.raises(UnresolvedNodeError):
        branching.execute_branch("to_nowhere")

    assert branching.engine.get_state() == before
    assert branching.get_branch_history() == []


def test_undo_resyncs_flow() -> None:
    branching = _make_engine()
    branching.execute_branch("opt_alt")
    branching.engine.undo()
    assert branching.current_flow.id == "main"
    assert [option.id for option in branching.evaluate_available_branches()] == ["opt_alt", "opt_side"]


def test_most_popular_is_capped_and_move_to_front() -> None:
    branching = _make_engine()
    options = tuple(_option(f"o{index}", "main", target_node_id="n1") for index in range(12))
    branching.insert_dynamic_branch(
        DynamicBranchOperation(branch_id="loop", location=BranchLocation("ch1", "main", "n1"), options=options)
    )
    for index in range(12):
        branching.execute_branch(f"o{index}")
    branching.execute_branch("o5")

    popular = branching.get_branching_analytics()["most_popular"]
    assert len(popular) == 10
    assert popular[0] == "o5"
    assert popular[1:4] == ["o11", "o10", "o9"]


def test_history_is_pruned_past_limit() -> None:
    branching = _make_engine(history_limit=5, history_prune=3)
    branching.insert_dynamic_branch(
        DynamicBranchOperation(
            branch_id="loop",
            location=BranchLocation("ch1", "main", "n1"),
            options=(_option("again", "main", target_node_id="n1"),),
        )
    )
    for _ in range(6):
        branching.execute_branch("again")

    history = branching.get_branch_history()
    assert len(history) == 3
    assert history[-1].id == "branch_000006"


def test_reentrant_execution_is_rejected() -> None:
    branching = _make_engine()
    errors: list[Exception] = []

    def listener(event) -> None:
        try:
            branching.execute_branch("opt_side")
        except BranchInProgressError as exc:
            errors.append(exc)

    branching.engine.add_commit_listener(listener)
    branching.execute_branch("opt_alt")

    assert len(errors) == 1
    assert branching.engine.current_node_id == "a2"
    # The flag clears once the outer call finishes.
    assert branching.insert_dynamic_branch(
        DynamicBranchOperation(
            branch_id="back",
            location=BranchLocation("ch1", "alt", "a2"),
            options=(_option("home", "main"),),
        )
    )
    branching.execute_branch("home")
    assert branching.engine.current_node_id == "n1"


def test_weighted_choice_is_reproducible() -> None:
    picks_a = [_make_engine().choose_weighted_option(RNG(seed)).id for seed in range(20)]
    picks_b = [_make_engine().choose_weighted_option(RNG(seed)).id for seed in range(20)]
    assert picks_a == picks_b
    assert set(picks_a) <= {"opt_alt", "opt_side"}


def test_weighted_choice_without_options() -> None:
    branching = _make_engine()
    branching.execute_branch("opt_side")
    assert branching.evaluate_available_branches() == []
    assert branching.choose_weighted_option(RNG(1)) is None


def test_insert_positions() -> None:
    branching = _make_engine()
    location = BranchLocation("ch1", "main", "n1", insertion_point="before")
    branching.insert_dynamic_branch(
        DynamicBranchOperation(branch_id="first", location=location, options=(_option("early"),))
    )
    branching.insert_dynamic_branch(
        DynamicBranchOperation(branch_id="last", location=BranchLocation("ch1", "main", "n1"), options=(_option("late"),))
    )
    assert [point.id for point in branching.get_branch_points()] == ["first", "bp1", "last"]

    replace = BranchLocation("ch1", "main", "n1", insertion_point="replace")
    branching.insert_dynamic_branch(
        DynamicBranchOperation(branch_id="only", location=replace, options=(_option("solo"),))
    )
    assert [point.id for point in branching.get_branch_points("ch1")] == ["only"]
    assert [option.id for option in branching.evaluate_available_branches()] == ["solo"]


def test_insert_gating_and_errors() -> None:
    branching = _make_engine()
    gated = DynamicBranchOperation(
        branch_id="gated",
        location=BranchLocation("ch1", "main", "n1"),
        conditions=(FlagRequirement("ready", "equals", True),),
    )
    assert branching.insert_dynamic_branch(gated) is False
    assert len(branching.get_branch_points("ch1")) == 1
    with pytest.raises(UnresolvedChapterError):
        branching.insert_dynamic_branch(
            DynamicBranchOperation(branch_id="x", location=BranchLocation("ch9", "main", "n1"))
        )
    with pytest.raises(ValueError):
        branching.insert_dynamic_branch(
            DynamicBranchOperation(branch_id="bp1", location=BranchLocation("ch1", "main", "n1"))
        )
    with pytest.raises(ValueError):
        branching.insert_dynamic_branch(
            DynamicBranchOperation(
                branch_id="fresh", location=BranchLocation("ch1", "main", "n1"), options=(_option("opt_alt"),)
            )
        )


def test_remove_dynamic_branch() -> None:
    branching = _make_engine()
    assert branching.remove_dynamic_branch("bp1") is True
    assert branching.remove_dynamic_branch("bp1") is False
    assert branching.evaluate_available_branches() == []


def test_reset_restores_authored_branches() -> None:
    branching = _make_engine()
    branching.remove_dynamic_branch("bp1")
    branching.engine.reset_narrative()
    assert [point.id for point in branching.get_branch_points()] == ["bp1"]
    assert branching.get_branch_history() == []


class _FixedGenerator:
    def __init__(self) -> None:
        self.calls: list[int] = []

    def generate(self, state, flow, max_options):
        self.calls.append(max_options)
        return [_option(f"gen{index}") for index in range(5)]


def test_generate_branches_truncates_and_does_not_register() -> None:
    branching = _make_engine()
    generator = _FixedGenerator()

    generated = branching.generate_branches(generator, max_options=2)

    assert [option.id for option in generated] == ["gen0", "gen1"]
    assert generator.calls == [2]
    assert branching.generate_branches(generator, max_options=0) == []
    assert [option.id for option in branching.evaluate_available_branches()] == ["opt_alt", "opt_side"]


def test_bundled_branching_story_plays() -> None:
    story = load_bundled_branching_story()
    engine = TransitionEngine(build_graph_from_story(story), clock=FakeClock())
    branching = BranchingEngine(story, engine)

    engine.choose(1)
    assert engine.current_node_id == "fork"
    assert {option.id for option in branching.evaluate_available_branches()} == {
        "take_forest",
        "take_river",
        "take_shortcut",
    }
    branching.execute_branch("take_river")
    assert engine.current_node_id == "river_ford"


def test_branch_logs_at_debug(caplog) -> None:
    branching = _make_engine()
    with caplog.at_level(logging.DEBUG, logger="storyloom.services.branching_engine"):
        branching.execute_branch("opt_side")
    assert "opt_side" in caplog.text


def test_missing_target_flow_changes_nothing() -> None:
    branching = _make_engine()
    branching.insert_dynamic_branch(
        DynamicBranchOperation(
            branch_id="dead_end",
            location=BranchLocation("ch1", "main", "n1"),
            options=(_option("to_ghost", "ghost", flag_effects={"lost": True}),),
        )
    )
    before = branching.engine.get_state()
    analytics = branching.get_branching_analytics()

    with pytest.raises(UnresolvedFlowError):
        branching.execute_branch("to_ghost")

    assert branching.engine.get_state() == before
    assert branching.engine.can_undo() is False
    assert branching.get_branch_history() == []
    assert branching.get_branching_analytics() == analytics
    assert branching.current_flow.id == "main"


def test_dynamic_option_effects_must_be_json() -> None:
    branching = _make_engine()

    with pytest.raises(ValueError, match="bag"):
        branching.insert_dynamic_branch(
            DynamicBranchOperation(
                branch_id="dyn",
                location=BranchLocation("ch1", "main", "n1"),
                options=(_option("dyn_opt", flag_effects={"bag": {1, 2}}),),
            )
        )

    assert [point.id for point in branching.get_branch_points()] == ["bp1"]
    assert [option.id for option in branching.evaluate_available_branches()] == ["opt_alt", "opt_side"]


def test_failing_listener_does_not_split_the_commit(caplog) -> None:
    branching = _make_engine()
    seen = []

    def listener(event) -> None:
        seen.append((branching.current_flow.id, len(branching.get_branch_history())))
        raise RuntimeError("listener broke")

    branching.engine.add_commit_listener(listener)
    with caplog.at_level(logging.ERROR, logger="storyloom.services.transition_engine"):
        result = branching.execute_branch("opt_side")

    assert result.to_node_id == "s1"
    assert seen == [("side", 1)]
    assert len(branching.get_branch_history()) == 1
    assert branching.get_branching_analytics()["total_branches_traversed"] == 1
    assert branching.engine.can_undo()
    assert "Commit listener" in caplog.text
    branching.engine.export_envelope()


@pytest.mark.parametrize(
    "field, value",
    [
        ("option_usage", {"opt_side": "3"}),
        ("branch_point_usage", {"bp1": -1}),
        ("branch_point_last_used", {"bp1": 5}),
    ],
)
def test_load_rejects_malformed_analytics(field: str, value: dict) -> None:
    branching = _make_engine()
    data = branching.engine.export_envelope().to_dict()
    data["payload"]["branching"]["analytics"][field] = value
    branching.execute_branch("opt_side")
    before = branching.engine.get_state()

    with pytest.raises(SaveLoadError, match=field):
        branching.engine.load_state(data)

    assert branching.engine.get_state() == before
    assert branching.get_branching_analytics()["total_branches_traversed"] == 1


def test_engine_config_drives_limits() -> None:
    config = EngineConfig(
        undo_redo=UndoRedoConfig(max_undo_entries=2, max_redo_entries=1),
        branching=BranchingConfig(history_limit=3, history_prune=2, max_generated_options=1),
    )
    branching = _make_engine(config=config)
    branching.insert_dynamic_branch(
        DynamicBranchOperation(
            branch_id="loop",
            location=BranchLocation("ch1", "main", "n1"),
            options=(_option("again", "main", target_node_id="n1"),),
        )
    )
    generator = _FixedGenerator()

    for _ in range(4):
        branching.execute_branch("again")

    assert branching.engine.history_manager.max_undo_entries == 2
    assert branching.engine.history_manager.undo_count() == 2
    assert len(branching.get_branch_history()) == 2
    assert [option.id for option in branching.generate_branches(generator)] == ["gen0"]
    assert generator.calls == [1]


def test_explicit_limits_override_config() -> None:
    config = EngineConfig(branching=BranchingConfig(history_limit=3, history_prune=2))
    branching = _make_engine(config=config, history_limit=50)
    generator = _FixedGenerator()

    branching.generate_branches(generator)

    assert generator.calls == [3]
