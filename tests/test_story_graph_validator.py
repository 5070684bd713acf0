import pytest

from storyloom.data.branching_loader import load_bundled_branching_story, load_branching_story
from storyloom.data.errors import ValidationError
from storyloom.data.story_loader import load_bundled_story
from storyloom.domain.defs import BranchingStoryDef, ChapterDef, FlowDef, StoryChoiceDef, StoryNodeDef
from storyloom.domain.story_graph import StoryGraph
from storyloom.services.story_graph_validator import (
    EntryRoot,
    ensure_valid_graph,
    format_issue,
    validate_branching_story,
    validate_graph,
    validate_story_graph,
)

from tests.helpers.story_fixtures import branching_story_payload


def _codes(issues) -> set[str]:
    return {issue.code for issue in issues}


def test_bundled_story_has_no_errors_or_unreachable_nodes() -> None:
    issues = validate_graph(load_bundled_story())
    assert [format_issue(issue) for issue in issues] == []


def test_bundled_branching_story_has_no_errors() -> None:
    story = load_bundled_branching_story()
    issues = validate_branching_story(story)
    errors = [format_issue(issue) for issue in issues if issue.severity == "ERROR"]
    assert errors == []


def test_raw_payload_checks() -> None:
    nodes = [
        ("a", {"choices": [{"text": "go", "nextNodeId": "b"}, "oops", {"text": 5, "nextNodeId": 7}]}),
        ("b", {"choices": "nope"}),
        ("a", {"choices": []}),
        ("c", ["not", "a", "dict"]),
    ]
    issues = validate_story_graph(nodes, ["a"])
    codes = _codes(issues)
    assert {"DUPLICATE_NODE_ID", "INVALID_CHOICE", "INVALID_CHOICE_TEXT", "INVALID_CHOICE_NEXT"} <= codes
    assert {"INVALID_CHOICES", "INVALID_NODE_TYPE"} <= codes


def test_missing_references_and_unreachable() -> None:
    nodes = {
        "start": {"choices": [{"text": "go", "nextNodeId": "ghost"}]},
        "island": {"choices": []},
    }
    roots = [EntryRoot(node_id="start", source_type="story", source_id="t", source_field="initialNodeId")]
    issues = validate_story_graph(nodes, roots)

    by_code = {issue.code: issue for issue in issues}
    assert by_code["MISSING_NODE_REF"].severity == "ERROR"
    assert by_code["MISSING_NODE_REF"].context["referenced_id"] == "ghost"
    assert by_code["UNREACHABLE_NODE"].severity == "WARN"
    assert by_code["UNREACHABLE_NODE"].context["node_id"] == "island"


def test_condition_expressions_are_checked() -> None:
    nodes = {
        "start": {"choices": [{"text": "go", "nextNodeId": "end", "condition": "import os"}]},
        "end": {"choices": []},
    }
    issues = validate_story_graph(nodes, ["start"])
    assert "INVALID_CONDITION" in _codes(issues)


def test_cycles_do_not_hang_reachability() -> None:
    graph = StoryGraph(
        "a",
        [
            StoryNodeDef("a", "A", (StoryChoiceDef("to b", "b"),)),
            StoryNodeDef("b", "B", (StoryChoiceDef("to a", "a"),)),
        ],
    )
    assert validate_graph(graph) == []
    assert ensure_valid_graph(graph) is graph


def test_ensure_valid_graph_raises_on_errors() -> None:
    graph = StoryGraph("a", [StoryNodeDef("a", "A", (StoryChoiceDef("nowhere", "zzz"),))])
    with pytest.raises(ValidationError) as excinfo:
        ensure_valid_graph(graph)
    assert "MISSING_NODE_REF" in str(excinfo.value)


def test_branching_structure_errors() -> None:
    payload = branching_story_payload()
    chapter = payload["chapters"][0]
    chapter["flows"].append({"id": "alt", "name": "Alt again", "nodes": [{"id": "dup", "text": "D"}]})
    chapter["flows"][1]["entryPoints"].append({"id": "bad", "nodeId": "n1"})
    chapter["branches"].append(
        {
            "id": "bp1",
            "sourceFlowId": "nowhere",
            "sourceNodeId": "n1",
            "branchOptions": [
                {"id": "opt_alt", "targetFlowId": "missing", "displayText": "x"},
                {"id": "fresh", "targetFlowId": "side", "targetNodeId": "n2", "displayText": "y"},
            ],
        }
    )
    chapter["branches"].append({"id": "bp2", "sourceFlowId": "side", "sourceNodeId": "n1", "branchOptions": []})

    with pytest.raises(ValidationError) as excinfo:
        load_branching_story(payload)

    codes = _codes(excinfo.value.issues)
    assert {
        "DUPLICATE_FLOW_ID",
        "MISSING_ENTRY_NODE",
        "DUPLICATE_BRANCH_ID",
        "MISSING_SOURCE_FLOW",
        "MISSING_SOURCE_NODE",
        "DUPLICATE_OPTION_ID",
        "MISSING_TARGET_FLOW",
        "MISSING_TARGET_NODE",
    } <= codes


def test_node_ids_must_be_unique_across_flows() -> None:
    payload = branching_story_payload()
    payload["chapters"][0]["flows"][2]["nodes"].append({"id": "n1", "text": "Clash"})
    with pytest.raises(ValidationError) as excinfo:
        load_branching_story(payload)
    assert "DUPLICATE_NODE_ID" in _codes(excinfo.value.issues)


def test_empty_story_is_an_error() -> None:
    story = BranchingStoryDef(id="empty", title="Empty", chapters=(ChapterDef("c", "C", flows=(FlowDef("f", "F"),)),))
    issues = validate_branching_story(story)
    assert _codes(issues) == {"EMPTY_STORY"}


def test_empty_secondary_flow_is_a_warning() -> None:
    payload = branching_story_payload()
    payload["chapters"][1]["flows"].append({"id": "hollow", "name": "Hollow", "nodes": []})
    story = load_branching_story(payload)
    issues = validate_branching_story(story)
    assert [issue.severity for issue in issues if issue.code == "EMPTY_FLOW"] == ["WARN"]


def test_built_graph_rejects_non_json_flag_effects() -> None:
    graph = StoryGraph(
        "a",
        [StoryNodeDef("a", "A", (StoryChoiceDef("loop", "a", flag_effects={"bag": {1, 2}}),))],
    )
    issues = validate_graph(graph)
    assert _codes(issues) == {"INVALID_FLAG_EFFECTS"}
    assert issues[0].context["field_path"] == "choices[0].flagEffects"
    with pytest.raises(ValidationError):
        ensure_valid_graph(graph)
