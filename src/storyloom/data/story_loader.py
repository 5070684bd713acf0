"""Loader for normalized single-flow story payloads."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Mapping, Tuple

from storyloom.data.errors import ValidationError
from storyloom.data.json_loader import load_json
from storyloom.data.parsing import CustomPredicate, DefinitionParser
from storyloom.data import paths
from storyloom.domain.defs import StoryChoiceDef, StoryNodeDef
from storyloom.domain.story_graph import StoryGraph
from storyloom.services.story_graph_validator import EntryRoot, raise_for_errors, validate_story_graph

logger = logging.getLogger(__name__)

DEFAULT_STORY_FILE = "demo_story.json"


class StoryLoader(DefinitionParser):
    """Builds a validated StoryGraph from ``{initialNodeId, nodes: [...]}``."""

    def build(self, raw: object) -> StoryGraph:
        data = self._require_mapping(raw, "story")
        initial_node_id = self._require_str(
            self._pick(data, "initialNodeId", "initial_node_id"), "story initialNodeId"
        )
        raw_nodes = data.get("nodes")
        if not isinstance(raw_nodes, list):
            raise ValidationError("story nodes must be a list.")
        pairs = [self.parse_node(entry, index) for index, entry in enumerate(raw_nodes)]
        root = EntryRoot(
            node_id=initial_node_id,
            source_type="story",
            source_id="story",
            source_field="initialNodeId",
        )
        issues = validate_story_graph(pairs, [root])
        raise_for_errors(issues, "Story failed validation.")
        warnings = [issue for issue in issues if issue.severity != "ERROR"]
        graph = StoryGraph(initial_node_id, [node for _, node in pairs])
        logger.info(
            "Loaded story graph with %d nodes (%d warnings).", len(graph), len(warnings)
        )
        return graph

    def parse_node(self, raw: object, index: int) -> Tuple[str, StoryNodeDef]:
        context = f"story nodes[{index}]"
        node_data = self._require_mapping(raw, context)
        node_id = self._require_str(node_data.get("id"), f"{context} id")
        node_ctx = f"story node '{node_id}'"
        text = self._require_str(node_data.get("text"), f"{node_ctx} text")
        choices = self._parse_choices(node_data.get("choices"), node_ctx)
        meta = self._parse_flag_map(node_data.get("meta"), f"{node_ctx} meta")
        return node_id, StoryNodeDef(id=node_id, text=text, choices=tuple(choices), meta=meta)

    def _parse_choices(self, raw_choices: object, node_ctx: str) -> List[StoryChoiceDef]:
        choices: List[StoryChoiceDef] = []
        for index, entry in enumerate(self._parse_list(raw_choices, f"{node_ctx} choices")):
            choice_ctx = f"{node_ctx} choices[{index}]"
            choice_data = self._require_mapping(entry, choice_ctx)
            text = self._require_str(choice_data.get("text"), f"{choice_ctx} text")
            next_node = self._require_str(
                self._pick(choice_data, "nextNodeId", "next_node_id"), f"{choice_ctx} nextNodeId"
            )
            enabled = self._require_bool(choice_data.get("enabled", True), f"{choice_ctx} enabled")
            condition = self._optional_str(choice_data.get("condition"), f"{choice_ctx} condition")
            choices.append(
                StoryChoiceDef(
                    text=text,
                    next_node_id=next_node,
                    flag_effects=self._parse_flag_map(
                        self._pick(choice_data, "flagEffects", "flag_effects"),
                        f"{choice_ctx} flagEffects",
                    ),
                    flag_requirements=self._parse_flag_map(
                        self._pick(choice_data, "flagRequirements", "flag_requirements"),
                        f"{choice_ctx} flagRequirements",
                    ),
                    other_requirements=self.parse_requirements(
                        self._pick(choice_data, "otherRequirements", "other_requirements"),
                        f"{choice_ctx} otherRequirements",
                    ),
                    enabled=enabled,
                    condition=condition,
                )
            )
        return choices


def load_story_graph(
    raw: object, custom_predicates: Mapping[str, CustomPredicate] | None = None
) -> StoryGraph:
    """Parse and validate an in-memory story payload."""
    return StoryLoader(custom_predicates).build(raw)


def load_story_file(
    path: Path | str, custom_predicates: Mapping[str, CustomPredicate] | None = None
) -> StoryGraph:
    """Load a story JSON file from disk."""
    return load_story_graph(load_json(Path(path)), custom_predicates)


def load_bundled_story(
    filename: str = DEFAULT_STORY_FILE,
    base_path: Path | str | None = None,
    custom_predicates: Mapping[str, CustomPredicate] | None = None,
) -> StoryGraph:
    """Load a story shipped under ``data/stories``."""
    return load_story_file(paths.get_stories_path(base_path) / filename, custom_predicates)
