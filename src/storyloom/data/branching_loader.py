"""Loader for chaptered, multi-flow story payloads."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Mapping

from storyloom.data.errors import ValidationError
from storyloom.data.json_loader import load_json
from storyloom.data.parsing import CustomPredicate
from storyloom.data.story_loader import StoryLoader
from storyloom.data import paths
from storyloom.domain.defs import (
    BranchingStoryDef,
    BranchOptionDef,
    BranchPointDef,
    ChapterDef,
    FlowDef,
    FlowEntryPointDef,
)
from storyloom.domain.story_graph import StoryGraph
from storyloom.services.story_graph_validator import raise_for_errors, validate_branching_story

logger = logging.getLogger(__name__)

DEFAULT_BRANCHING_FILE = "demo_branching.json"

_FLOW_TYPES = ("linear", "branching", "conditional", "procedural")
_BRANCH_TYPES = ("choice-driven", "flag-conditional", "time-based", "procedural", "conditional")


class BranchingStoryLoader(StoryLoader):
    """Builds a validated BranchingStoryDef from its JSON form."""

    def build_story(self, raw: object) -> BranchingStoryDef:
        data = self._require_mapping(raw, "branching story")
        story_id = self._require_str(data.get("id"), "branching story id")
        title = self._require_str(data.get("title", story_id), "branching story title")
        version = self._require_str(data.get("version", "1.0.0"), "branching story version")
        chapters = tuple(
            self._parse_chapter(entry, index)
            for index, entry in enumerate(self._parse_list(data.get("chapters"), "branching story chapters"))
        )
        story = BranchingStoryDef(id=story_id, title=title, chapters=chapters, version=version)
        raise_for_errors(validate_branching_story(story), f"Branching story '{story_id}' failed validation.")
        logger.info(
            "Loaded branching story '%s' with %d chapters.", story_id, len(story.chapters)
        )
        return story

    def _parse_chapter(self, raw: object, index: int) -> ChapterDef:
        context = f"chapters[{index}]"
        data = self._require_mapping(raw, context)
        chapter_id = self._require_str(data.get("id"), f"{context} id")
        chapter_ctx = f"chapter '{chapter_id}'"
        flows = tuple(
            self._parse_flow(entry, f"{chapter_ctx} flows[{flow_index}]")
            for flow_index, entry in enumerate(self._parse_list(data.get("flows"), f"{chapter_ctx} flows"))
        )
        branches = tuple(
            self.parse_branch_point(entry, f"{chapter_ctx} branches[{branch_index}]")
            for branch_index, entry in enumerate(
                self._parse_list(data.get("branches"), f"{chapter_ctx} branches")
            )
        )
        return ChapterDef(
            id=chapter_id,
            title=self._require_str(data.get("title", chapter_id), f"{chapter_ctx} title"),
            flows=flows,
            branches=branches,
            description=self._optional_str(data.get("description"), f"{chapter_ctx} description"),
        )

    def _parse_flow(self, raw: object, context: str) -> FlowDef:
        data = self._require_mapping(raw, context)
        flow_id = self._require_str(data.get("id"), f"{context} id")
        flow_type = self._pick(data, "flowType", "flow_type", "linear")
        if flow_type not in _FLOW_TYPES:
            raise self._choice_error(f"{context} flowType", _FLOW_TYPES)
        nodes = tuple(
            self.parse_node(entry, node_index)[1]
            for node_index, entry in enumerate(self._parse_list(data.get("nodes"), f"{context} nodes"))
        )
        entry_points: List[FlowEntryPointDef] = []
        raw_entries = self._parse_list(self._pick(data, "entryPoints", "entry_points"), f"{context} entryPoints")
        for entry_index, entry in enumerate(raw_entries):
            entry_ctx = f"{context} entryPoints[{entry_index}]"
            entry_data = self._require_mapping(entry, entry_ctx)
            priority = entry_data.get("priority", 0)
            if isinstance(priority, bool) or not isinstance(priority, int):
                raise self._type_error(f"{entry_ctx} priority", "an integer")
            entry_points.append(
                FlowEntryPointDef(
                    id=self._require_str(entry_data.get("id"), f"{entry_ctx} id"),
                    node_id=self._require_str(
                        self._pick(entry_data, "nodeId", "node_id"), f"{entry_ctx} nodeId"
                    ),
                    priority=priority,
                )
            )
        return FlowDef(
            id=flow_id,
            name=self._require_str(data.get("name", flow_id), f"{context} name"),
            nodes=nodes,
            entry_points=tuple(entry_points),
            flow_type=flow_type,
            description=self._optional_str(data.get("description"), f"{context} description"),
        )

    def parse_branch_point(self, raw: object, context: str) -> BranchPointDef:
        data = self._require_mapping(raw, context)
        branch_id = self._require_str(data.get("id"), f"{context} id")
        branch_type = self._pick(data, "branchType", "branch_type", "choice-driven")
        if branch_type not in _BRANCH_TYPES:
            raise self._choice_error(f"{context} branchType", _BRANCH_TYPES)
        raw_options = self._pick(data, "branchOptions", "options")
        options = tuple(
            self.parse_branch_option(entry, f"{context} branchOptions[{option_index}]")
            for option_index, entry in enumerate(self._parse_list(raw_options, f"{context} branchOptions"))
        )
        return BranchPointDef(
            id=branch_id,
            name=self._require_str(data.get("name", branch_id), f"{context} name"),
            source_flow_id=self._require_str(
                self._pick(data, "sourceFlowId", "source_flow_id"), f"{context} sourceFlowId"
            ),
            source_node_id=self._require_str(
                self._pick(data, "sourceNodeId", "source_node_id"), f"{context} sourceNodeId"
            ),
            options=options,
            branch_type=branch_type,
            conditions=self.parse_requirements(data.get("conditions"), f"{context} conditions"),
        )

    def parse_branch_option(self, raw: object, context: str) -> BranchOptionDef:
        data = self._require_mapping(raw, context)
        option_id = self._require_str(data.get("id"), f"{context} id")
        weight = data.get("weight", 1.0)
        if isinstance(weight, bool) or not isinstance(weight, (int, float)):
            raise self._type_error(f"{context} weight", "a number")
        return BranchOptionDef(
            id=option_id,
            target_flow_id=self._require_str(
                self._pick(data, "targetFlowId", "target_flow_id"), f"{context} targetFlowId"
            ),
            display_text=self._require_str(
                self._pick(data, "displayText", "display_text"), f"{context} displayText"
            ),
            target_node_id=self._optional_str(
                self._pick(data, "targetNodeId", "target_node_id"), f"{context} targetNodeId"
            ),
            conditions=self.parse_requirements(data.get("conditions"), f"{context} conditions"),
            flag_effects=self._parse_flag_map(
                self._pick(data, "flagEffects", "flag_effects"), f"{context} flagEffects"
            ),
            weight=float(weight),
        )

    @staticmethod
    def _choice_error(context: str, allowed: tuple[str, ...]) -> ValidationError:
        return ValidationError(f"{context} must be one of {', '.join(allowed)}.")

    @staticmethod
    def _type_error(context: str, expected: str) -> ValidationError:
        return ValidationError(f"{context} must be {expected}.")


def build_graph_from_story(story: BranchingStoryDef) -> StoryGraph:
    """Flatten every flow of a branching story into one id-keyed graph.

    The initial node is the first node of the first flow of the first chapter.
    """
    nodes = [node for chapter in story.chapters for flow in chapter.flows for node in flow.nodes]
    initial_node_id = story.chapters[0].flows[0].nodes[0].id
    return StoryGraph(initial_node_id, nodes)


def load_branching_story(
    raw: object, custom_predicates: Mapping[str, CustomPredicate] | None = None
) -> BranchingStoryDef:
    """Parse and validate an in-memory branching story payload."""
    return BranchingStoryLoader(custom_predicates).build_story(raw)


def load_branching_file(
    path: Path | str, custom_predicates: Mapping[str, CustomPredicate] | None = None
) -> BranchingStoryDef:
    return load_branching_story(load_json(Path(path)), custom_predicates)


def load_bundled_branching_story(
    filename: str = DEFAULT_BRANCHING_FILE,
    base_path: Path | str | None = None,
    custom_predicates: Mapping[str, CustomPredicate] | None = None,
) -> BranchingStoryDef:
    """Load a branching story shipped under ``data/stories``."""
    return load_branching_file(paths.get_stories_path(base_path) / filename, custom_predicates)
