"""Static story graph validation utilities."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

from storyloom.data.errors import ValidationError
from storyloom.domain.defs import BranchingStoryDef, StoryChoiceDef, StoryNodeDef
from storyloom.domain.state import ensure_flag_effects
from storyloom.domain.story_graph import StoryGraph
from storyloom.services.condition_expression import validate_expression


Severity = str


@dataclass(frozen=True, slots=True)
class Issue:
    severity: Severity
    code: str
    message: str
    context: dict[str, str]


@dataclass(frozen=True, slots=True)
class EntryRoot:
    node_id: str
    source_type: str
    source_id: str
    source_field: str


@dataclass(frozen=True, slots=True)
class NodeInfo:
    node_id: str
    choice_next_ids: list[str]
    conditions: list[tuple[str, str]]
    flag_effects: list[tuple[str, object]]


def format_issue(issue: Issue) -> str:
    context = " ".join(f"{key}={value}" for key, value in issue.context.items())
    suffix = f" ({context})" if context else ""
    return f"[{issue.severity}] {issue.code}: {issue.message}{suffix}"


def raise_for_errors(issues: Sequence[Issue], message: str) -> None:
    """Raise ValidationError when any issue is an ERROR."""
    errors = [issue for issue in issues if issue.severity == "ERROR"]
    if not errors:
        return
    details = "\n".join(format_issue(issue) for issue in errors)
    raise ValidationError(f"{message}\n{details}", issues=issues)


def validate_graph(graph: StoryGraph) -> list[Issue]:
    """Validate a built graph, rooting reachability at its initial node."""
    root = EntryRoot(
        node_id=graph.initial_node_id,
        source_type="story",
        source_id="graph",
        source_field="initialNodeId",
    )
    return validate_story_graph(graph.nodes, [root])


def ensure_valid_graph(graph: StoryGraph) -> StoryGraph:
    """Return ``graph`` unchanged or raise ValidationError listing its errors."""
    raise_for_errors(validate_graph(graph), "Story graph failed validation.")
    return graph


def validate_story_graph(
    story_nodes: Mapping[str, StoryNodeDef] | Sequence[tuple[str, object]],
    entry_roots: Sequence[EntryRoot] | Sequence[str],
) -> list[Issue]:
    issues: list[Issue] = []
    nodes, duplicate_ids = _coerce_story_nodes(story_nodes)
    for node_id in duplicate_ids:
        issues.append(
            Issue(
                severity="ERROR",
                code="DUPLICATE_NODE_ID",
                message="Duplicate story node id detected.",
                context={"node_id": node_id},
            )
        )
    node_infos: dict[str, NodeInfo] = {}
    for node_id, node in nodes.items():
        node_infos[node_id] = _build_node_info(node_id, node, issues)

    node_ids = set(node_infos.keys())
    entry_root_list = _coerce_entry_roots(entry_roots)

    for entry in entry_root_list:
        if entry.node_id not in node_ids:
            issues.append(
                Issue(
                    severity="ERROR",
                    code="MISSING_ENTRY_ROOT",
                    message="Entry root references missing story node.",
                    context={
                        "source_type": entry.source_type,
                        "source_id": entry.source_id,
                        "field_path": entry.source_field,
                        "referenced_id": entry.node_id,
                    },
                )
            )

    for node_info in node_infos.values():
        _validate_node_references(node_info, node_ids, issues)
        _validate_conditions(node_info, issues)
        _validate_flag_effects(node_info, issues)

    _validate_reachability(node_infos, entry_root_list, issues)
    return issues


def validate_branching_story(story: BranchingStoryDef) -> list[Issue]:
    """Validate chapters, flows and branch points, then the combined node graph."""
    issues: list[Issue] = []
    flows: dict[str, object] = {}
    flow_pairs: list[tuple[str, object]] = []
    branch_ids: set[str] = set()
    option_ids: set[str] = set()

    if not story.chapters or not story.chapters[0].flows or not story.chapters[0].flows[0].nodes:
        issues.append(
            Issue(
                severity="ERROR",
                code="EMPTY_STORY",
                message="Branching story needs a first chapter whose first flow has nodes.",
                context={"story_id": story.id},
            )
        )
        return issues

    for chapter in story.chapters:
        for flow in chapter.flows:
            if flow.id in flows:
                issues.append(
                    Issue(
                        severity="ERROR",
                        code="DUPLICATE_FLOW_ID",
                        message="Duplicate flow id detected.",
                        context={"chapter_id": chapter.id, "flow_id": flow.id},
                    )
                )
                continue
            flows[flow.id] = flow
            if not flow.nodes:
                issues.append(
                    Issue(
                        severity="WARN",
                        code="EMPTY_FLOW",
                        message="Flow has no nodes and cannot be entered.",
                        context={"chapter_id": chapter.id, "flow_id": flow.id},
                    )
                )
            for entry in flow.entry_points:
                if not flow.has_node(entry.node_id):
                    issues.append(
                        Issue(
                            severity="ERROR",
                            code="MISSING_ENTRY_NODE",
                            message="Flow entry point references a node outside the flow.",
                            context={
                                "flow_id": flow.id,
                                "entry_id": entry.id,
                                "referenced_id": entry.node_id,
                            },
                        )
                    )
            flow_pairs.extend((node.id, node) for node in flow.nodes)

    for chapter in story.chapters:
        for branch in chapter.branches:
            if branch.id in branch_ids:
                issues.append(
                    Issue(
                        severity="ERROR",
                        code="DUPLICATE_BRANCH_ID",
                        message="Duplicate branch point id detected.",
                        context={"chapter_id": chapter.id, "branch_id": branch.id},
                    )
                )
            branch_ids.add(branch.id)
            source_flow = flows.get(branch.source_flow_id)
            if source_flow is None:
                issues.append(
                    Issue(
                        severity="ERROR",
                        code="MISSING_SOURCE_FLOW",
                        message="Branch point references missing source flow.",
                        context={"branch_id": branch.id, "referenced_id": branch.source_flow_id},
                    )
                )
            elif not source_flow.has_node(branch.source_node_id):
                issues.append(
                    Issue(
                        severity="ERROR",
                        code="MISSING_SOURCE_NODE",
                        message="Branch point source node is not part of its source flow.",
                        context={"branch_id": branch.id, "referenced_id": branch.source_node_id},
                    )
                )
            for index, option in enumerate(branch.options):
                option_path = f"options[{index}]"
                if option.id in option_ids:
                    issues.append(
                        Issue(
                            severity="ERROR",
                            code="DUPLICATE_OPTION_ID",
                            message="Duplicate branch option id detected.",
                            context={"branch_id": branch.id, "option_id": option.id},
                        )
                    )
                option_ids.add(option.id)
                effects_error = _flag_effects_error(option.flag_effects, f"{option_path}.flagEffects")
                if effects_error is not None:
                    issues.append(
                        Issue(
                            severity="ERROR",
                            code="INVALID_FLAG_EFFECTS",
                            message=effects_error,
                            context={"branch_id": branch.id, "field_path": f"{option_path}.flagEffects"},
                        )
                    )
                target_flow = flows.get(option.target_flow_id)
                if target_flow is None:
                    issues.append(
                        Issue(
                            severity="ERROR",
                            code="MISSING_TARGET_FLOW",
                            message="Branch option references missing flow.",
                            context={
                                "branch_id": branch.id,
                                "field_path": f"{option_path}.target_flow_id",
                                "referenced_id": option.target_flow_id,
                            },
                        )
                    )
                elif option.target_node_id and not target_flow.has_node(option.target_node_id):
                    issues.append(
                        Issue(
                            severity="ERROR",
                            code="MISSING_TARGET_NODE",
                            message="Branch option target node is not part of the target flow.",
                            context={
                                "branch_id": branch.id,
                                "field_path": f"{option_path}.target_node_id",
                                "referenced_id": option.target_node_id,
                            },
                        )
                    )

    first_flow = story.chapters[0].flows[0]
    roots: list[EntryRoot] = []
    if first_flow.nodes:
        roots.append(EntryRoot(first_flow.nodes[0].id, "story_start", story.id, "chapters[0].flows[0]"))
    for flow in flows.values():
        for node in flow.nodes[:1]:
            roots.append(EntryRoot(node.id, "flow", flow.id, "nodes[0]"))
        for entry in flow.entry_points:
            if flow.has_node(entry.node_id):
                roots.append(EntryRoot(entry.node_id, "flow_entry", flow.id, f"entry_points.{entry.id}"))
    issues.extend(validate_story_graph(flow_pairs, roots))
    return issues


def _coerce_story_nodes(
    story_nodes: Mapping[str, StoryNodeDef] | Sequence[tuple[str, object]],
) -> tuple[dict[str, object], list[str]]:
    if isinstance(story_nodes, Mapping):
        return dict(story_nodes), []
    nodes: dict[str, object] = {}
    duplicates: list[str] = []
    for node_id, node in story_nodes:
        if node_id in nodes:
            duplicates.append(node_id)
            continue
        nodes[node_id] = node
    return nodes, duplicates


def _coerce_entry_roots(entry_roots: Sequence[EntryRoot] | Sequence[str]) -> list[EntryRoot]:
    roots: list[EntryRoot] = []
    for entry in entry_roots:
        if isinstance(entry, EntryRoot):
            roots.append(entry)
        else:
            roots.append(
                EntryRoot(
                    node_id=str(entry),
                    source_type="unknown",
                    source_id="unknown",
                    source_field="entry_roots",
                )
            )
    return roots


def _build_node_info(node_id: str, node: object, issues: list[Issue]) -> NodeInfo:
    if isinstance(node, StoryNodeDef):
        return NodeInfo(
            node_id=node_id,
            choice_next_ids=[choice.next_node_id for choice in node.choices],
            conditions=_typed_conditions(node.choices),
            flag_effects=[
                (f"choices[{index}].flagEffects", choice.flag_effects)
                for index, choice in enumerate(node.choices)
            ],
        )
    if not isinstance(node, dict):
        issues.append(
            Issue(
                severity="ERROR",
                code="INVALID_NODE_TYPE",
                message="Story node payload must be a mapping.",
                context={"node_id": node_id},
            )
        )
        return NodeInfo(node_id=node_id, choice_next_ids=[], conditions=[], flag_effects=[])
    choice_next_ids, conditions = _parse_choices(node_id, node.get("choices"), issues)
    return NodeInfo(
        node_id=node_id, choice_next_ids=choice_next_ids, conditions=conditions, flag_effects=[]
    )


def _typed_conditions(choices: Sequence[StoryChoiceDef]) -> list[tuple[str, str]]:
    return [
        (f"choices[{index}].condition", choice.condition)
        for index, choice in enumerate(choices)
        if choice.condition
    ]


def _parse_choices(
    node_id: str, raw_choices: object, issues: list[Issue]
) -> tuple[list[str], list[tuple[str, str]]]:
    if raw_choices is None:
        return [], []
    if not isinstance(raw_choices, list):
        issues.append(
            Issue(
                severity="ERROR",
                code="INVALID_CHOICES",
                message="Choices must be a list if provided.",
                context={"node_id": node_id, "field_path": "choices"},
            )
        )
        return [], []
    next_ids: list[str] = []
    conditions: list[tuple[str, str]] = []
    for index, entry in enumerate(raw_choices):
        choice_path = f"choices[{index}]"
        if not isinstance(entry, dict):
            issues.append(
                Issue(
                    severity="ERROR",
                    code="INVALID_CHOICE",
                    message="Choice entry must be an object.",
                    context={"node_id": node_id, "field_path": choice_path},
                )
            )
            continue
        text = entry.get("text")
        next_node = entry.get("nextNodeId", entry.get("next_node_id"))
        if not isinstance(text, str):
            issues.append(
                Issue(
                    severity="ERROR",
                    code="INVALID_CHOICE_TEXT",
                    message="Choice text must be a string.",
                    context={"node_id": node_id, "field_path": f"{choice_path}.text"},
                )
            )
        if not isinstance(next_node, str):
            issues.append(
                Issue(
                    severity="ERROR",
                    code="INVALID_CHOICE_NEXT",
                    message="Choice nextNodeId must be a string.",
                    context={"node_id": node_id, "field_path": f"{choice_path}.nextNodeId"},
                )
            )
        else:
            next_ids.append(next_node)
        condition = entry.get("condition")
        if isinstance(condition, str) and condition.strip():
            conditions.append((f"{choice_path}.condition", condition))
    return next_ids, conditions


def _validate_node_references(
    node_info: NodeInfo, node_ids: set[str], issues: list[Issue]
) -> None:
    for index, next_id in enumerate(node_info.choice_next_ids):
        if next_id not in node_ids:
            issues.append(
                Issue(
                    severity="ERROR",
                    code="MISSING_NODE_REF",
                    message="Choice references missing node.",
                    context={
                        "node_id": node_info.node_id,
                        "field_path": f"choices[{index}].nextNodeId",
                        "referenced_id": next_id,
                    },
                )
            )


def _validate_conditions(node_info: NodeInfo, issues: list[Issue]) -> None:
    for path, expression in node_info.conditions:
        valid, reason = validate_expression(expression)
        if valid:
            continue
        issues.append(
            Issue(
                severity="ERROR",
                code="INVALID_CONDITION",
                message=reason or "Condition expression is invalid.",
                context={"node_id": node_info.node_id, "field_path": path},
            )
        )


def _validate_flag_effects(node_info: NodeInfo, issues: list[Issue]) -> None:
    for path, effects in node_info.flag_effects:
        reason = _flag_effects_error(effects, path)
        if reason is None:
            continue
        issues.append(
            Issue(
                severity="ERROR",
                code="INVALID_FLAG_EFFECTS",
                message=reason,
                context={"node_id": node_info.node_id, "field_path": path},
            )
        )


def _flag_effects_error(effects: object, path: str) -> str | None:
    try:
        ensure_flag_effects(effects, path)
    except ValueError as exc:
        return str(exc)
    return None


def _validate_reachability(
    node_infos: Mapping[str, NodeInfo],
    entry_roots: Sequence[EntryRoot],
    issues: list[Issue],
) -> None:
    node_ids = set(node_infos.keys())
    reachable: set[str] = set()
    stack: list[str] = []
    for entry in entry_roots:
        if entry.node_id in node_ids:
            stack.append(entry.node_id)
    while stack:
        node_id = stack.pop()
        if node_id in reachable:
            continue
        reachable.add(node_id)
        for next_id in node_infos[node_id].choice_next_ids:
            if next_id in node_ids:
                stack.append(next_id)
    for node_id in sorted(node_ids - reachable):
        issues.append(
            Issue(
                severity="WARN",
                code="UNREACHABLE_NODE",
                message="Node is unreachable from story roots.",
                context={"node_id": node_id},
            )
        )
