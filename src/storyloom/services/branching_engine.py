"""Multi-flow routing, dynamic branch points and branch analytics."""
from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, List, Mapping, Protocol, Sequence, Tuple

from storyloom.config import EngineConfig
from storyloom.core.clock import isoformat
from storyloom.core.ids import IdSequence
from storyloom.core.rng import RNG
from storyloom.data import branching_loader
from storyloom.domain.branching_state import BranchAnalytics, BranchHistoryEntry
from storyloom.domain.defs import (
    BranchingStoryDef,
    BranchOptionDef,
    BranchPointDef,
    ChapterDef,
    DynamicBranchOperation,
    FlowDef,
)
from storyloom.domain.state import EngineState, ensure_flag_effects
from storyloom.services.errors import (
    BranchInProgressError,
    SaveLoadError,
    UnresolvedChapterError,
    UnresolvedFlowError,
    UnresolvedNodeError,
    UnresolvedOptionError,
)
from storyloom.services.history_service import HistoryManager
from storyloom.services.transition_engine import EnvelopeSection, SectionApply, TransitionEngine, TransitionResult

logger = logging.getLogger(__name__)

SECTION_NAME = "branching"


class BranchGenerator(Protocol):
    """Source of runtime-generated branch options (procedural or AI-backed)."""

    def generate(self, state: EngineState, flow: FlowDef, max_options: int) -> Sequence[BranchOptionDef]:
        """Return candidate options for the current position."""


class BranchingEngine:
    """Routes play between flows through branch points layered over a story.

    State changes always commit through the wrapped TransitionEngine, so
    branch moves share undo/redo, autosave and persistence with plain choices.
    The current chapter and flow are derived from the engine's current node
    whenever the two disagree (after undo, redo or a load).
    """

    def __init__(
        self,
        story: BranchingStoryDef,
        engine: TransitionEngine,
        *,
        history_limit: int | None = None,
        history_prune: int | None = None,
        max_generated_options: int | None = None,
    ) -> None:
        defaults = engine.config.branching
        history_limit = defaults.history_limit if history_limit is None else history_limit
        history_prune = defaults.history_prune if history_prune is None else history_prune
        if history_limit < 1 or history_prune < 1:
            raise ValueError("history_limit and history_prune must be positive.")
        if max_generated_options is None:
            max_generated_options = defaults.max_generated_options
        if max_generated_options < 0:
            raise ValueError("max_generated_options must be non-negative.")
        self._story = story
        self._engine = engine
        self._history_limit = history_limit
        self._history_prune = history_prune
        self._max_generated_options = max_generated_options
        self._chapters: Dict[str, ChapterDef] = {chapter.id: chapter for chapter in story.chapters}
        self._flows: Dict[str, Tuple[str, FlowDef]] = {}
        for chapter in story.chapters:
            for flow in chapter.flows:
                self._flows[flow.id] = (chapter.id, flow)
        self._branches: Dict[str, List[BranchPointDef]] = {}
        self._history: List[BranchHistoryEntry] = []
        self._analytics = BranchAnalytics()
        self._ids = IdSequence("branch")
        self._executing = False
        self._reset_context()
        engine.register_section(
            EnvelopeSection(
                name=SECTION_NAME,
                export=self._export_section,
                parse=self._parse_section,
                reset=self._reset_context,
            )
        )

    @property
    def engine(self) -> TransitionEngine:
        return self._engine

    @property
    def story(self) -> BranchingStoryDef:
        return self._story

    @property
    def current_chapter(self) -> ChapterDef:
        self._sync_position()
        return self._chapters[self._chapter_id]

    @property
    def current_flow(self) -> FlowDef:
        self._sync_position()
        return self._flows[self._flow_id][1]

    def get_branch_points(self, chapter_id: str | None = None) -> List[BranchPointDef]:
        """Return the live branch point list of a chapter (current by default)."""
        target = chapter_id or self.current_chapter.id
        if target not in self._branches:
            raise UnresolvedChapterError(f"Chapter '{target}' does not exist.", target)
        return list(self._branches[target])

    def evaluate_available_branches(self) -> List[BranchOptionDef]:
        """Options reachable from the current node whose conditions pass."""
        self._sync_position()
        node_id = self._engine.current_node_id
        state = self._engine.get_state()
        evaluator = self._engine.evaluator
        options: List[BranchOptionDef] = []
        for branch_point in self._points_at(self._chapter_id, self._flow_id, node_id):
            if not evaluator.evaluate(branch_point, state):
                continue
            options.extend(option for option in branch_point.options if evaluator.evaluate(option, state))
        return options

    def execute_branch(self, option_id: str) -> TransitionResult:
        """Take an available option; failures leave every piece of state unchanged."""
        if self._executing:
            raise BranchInProgressError("A branch is already being executed.")
        self._executing = True
        try:
            return self._execute(option_id)
        finally:
            self._executing = False

    def choose_weighted_option(self, rng: RNG) -> BranchOptionDef | None:
        """Pick one available option in proportion to its weight, or None."""
        options = self.evaluate_available_branches()
        if not options:
            return None
        return rng.weighted_choice(options, [option.weight for option in options])

    def generate_branches(
        self, generator: BranchGenerator, max_options: int | None = None
    ) -> List[BranchOptionDef]:
        """Ask ``generator`` for options without registering them anywhere."""
        if max_options is None:
            max_options = self._max_generated_options
        if max_options < 0:
            raise ValueError("max_options must be non-negative.")
        if max_options == 0:
            return []
        generated = generator.generate(self._engine.get_state(), self.current_flow, max_options)
        return list(generated)[:max_options]

    def insert_dynamic_branch(self, operation: DynamicBranchOperation) -> bool:
        location = operation.location
        if location.chapter_id not in self._branches:
            raise UnresolvedChapterError(
                f"Chapter '{location.chapter_id}' does not exist.", location.chapter_id
            )
        if not self._engine.evaluator.evaluate_all(operation.conditions, self._engine.get_state()):
            logger.debug("Dynamic branch '%s' gated off; not inserted.", operation.branch_id)
            return False
        if self._find_branch(operation.branch_id) is not None:
            raise ValueError(f"Branch point '{operation.branch_id}' already exists.")
        known_options = {option.id for points in self._branches.values() for point in points for option in point.options}
        for option in operation.options:
            if option.id in known_options:
                raise ValueError(f"Branch option '{option.id}' already exists.")
            ensure_flag_effects(option.flag_effects, f"option '{option.id}' flag_effects")
        branch_point = BranchPointDef(
            id=operation.branch_id,
            name=operation.name or f"Dynamic Branch {operation.branch_id}",
            source_flow_id=location.flow_id,
            source_node_id=location.node_id,
            options=tuple(operation.options),
            branch_type=operation.branch_type,
            conditions=tuple(operation.conditions),
        )
        points = self._branches[location.chapter_id]
        same_spot = [
            index
            for index, point in enumerate(points)
            if point.source_flow_id == location.flow_id and point.source_node_id == location.node_id
        ]
        if not same_spot:
            points.append(branch_point)
        elif location.insertion_point == "before":
            points.insert(same_spot[0], branch_point)
        elif location.insertion_point == "replace":
            for index in reversed(same_spot):
                del points[index]
            points.insert(same_spot[0], branch_point)
        else:
            points.insert(same_spot[-1] + 1, branch_point)
        logger.debug(
            "Inserted dynamic branch '%s' into chapter '%s' (%s).",
            operation.branch_id,
            location.chapter_id,
            location.insertion_point,
        )
        return True

    def remove_dynamic_branch(self, branch_id: str) -> bool:
        found = self._find_branch(branch_id)
        if found is None:
            return False
        chapter_id, index = found
        del self._branches[chapter_id][index]
        logger.debug("Removed branch '%s' from chapter '%s'.", branch_id, chapter_id)
        return True

    def get_branch_history(self) -> List[BranchHistoryEntry]:
        return list(self._history)

    def get_branching_analytics(self) -> Dict[str, Any]:
        self._sync_position()
        analytics = asdict(self._analytics.copy())
        analytics.update(
            current_chapter_id=self._chapter_id,
            current_flow_id=self._flow_id,
            history_length=len(self._history),
        )
        return analytics

    # Internals

    def _execute(self, option_id: str) -> TransitionResult:
        self._sync_position()
        node_id = self._engine.current_node_id
        branch_point, option = self._resolve_option(option_id)
        chapter_id, flow = self._resolve_flow(option.target_flow_id)
        entry_node_id = self._resolve_entry_node(flow, option)
        def record_branch() -> None:
            self._chapter_id = chapter_id
            self._flow_id = flow.id
            timestamp = isoformat(self._engine.clock.now())
            self._history.append(
                BranchHistoryEntry(
                    id=self._ids.next_id(),
                    branch_point_id=branch_point.id,
                    option_id=option.id,
                    from_node_id=node_id,
                    to_node_id=entry_node_id,
                    timestamp=timestamp,
                    flags=self._engine.get_flags(),
                )
            )
            if len(self._history) > self._history_limit:
                del self._history[: self._history_prune]
            self._analytics.record(branch_point.id, option.id, timestamp)

        # Runs inside the commit, before listeners.
        result = self._engine.apply_branch(
            entry_node_id,
            option.flag_effects,
            {"branch_point_id": branch_point.id, "option_id": option.id},
            on_commit=record_branch,
        )
        logger.debug("Executed branch option '%s' -> %s/%s.", option.id, flow.id, entry_node_id)
        return result

    def _resolve_option(self, option_id: str) -> Tuple[BranchPointDef, BranchOptionDef]:
        node_id = self._engine.current_node_id
        state = self._engine.get_state()
        evaluator = self._engine.evaluator
        for branch_point in self._points_at(self._chapter_id, self._flow_id, node_id):
            if not evaluator.evaluate(branch_point, state):
                continue
            for option in branch_point.options:
                if option.id == option_id and evaluator.evaluate(option, state):
                    return branch_point, option
        raise UnresolvedOptionError(
            f"Branch option '{option_id}' is not available at node '{node_id}'.", option_id
        )

    def _resolve_flow(self, flow_id: str) -> Tuple[str, FlowDef]:
        found = self._flows.get(flow_id)
        if found is None or not found[1].nodes:
            raise UnresolvedFlowError(f"Flow '{flow_id}' does not exist or has no nodes.", flow_id)
        return found

    def _resolve_entry_node(self, flow: FlowDef, option: BranchOptionDef) -> str:
        if option.target_node_id:
            node_id = option.target_node_id
        elif flow.entry_points:
            # Highest priority wins; ties keep declaration order.
            node_id = max(flow.entry_points, key=lambda entry: entry.priority).node_id
        else:
            node_id = flow.nodes[0].id
        if not flow.has_node(node_id) or not self._engine.graph.has(node_id):
            raise UnresolvedNodeError(f"Node '{node_id}' is not part of flow '{flow.id}'.", node_id)
        return node_id

    def _points_at(self, chapter_id: str, flow_id: str, node_id: str) -> List[BranchPointDef]:
        return [
            point
            for point in self._branches.get(chapter_id, [])
            if point.source_flow_id == flow_id and point.source_node_id == node_id
        ]

    def _find_branch(self, branch_id: str) -> Tuple[str, int] | None:
        for chapter_id, points in self._branches.items():
            for index, point in enumerate(points):
                if point.id == branch_id:
                    return chapter_id, index
        return None

    def _sync_position(self) -> None:
        node_id = self._engine.current_node_id
        if self._flows[self._flow_id][1].has_node(node_id):
            return
        chapter = self._chapters[self._chapter_id]
        candidates = [flow for flow in chapter.flows if flow.has_node(node_id)]
        if not candidates:
            candidates = [flow for _, flow in self._flows.values() if flow.has_node(node_id)]
        if not candidates:
            logger.warning("Node '%s' belongs to no flow; keeping flow '%s'.", node_id, self._flow_id)
            return
        self._chapter_id, flow = self._flows[candidates[0].id]
        self._flow_id = flow.id

    def _reset_context(self) -> None:
        first_chapter = self._story.chapters[0]
        self._chapter_id = first_chapter.id
        self._flow_id = first_chapter.flows[0].id
        self._branches = {chapter.id: list(chapter.branches) for chapter in self._story.chapters}
        self._history = []
        self._analytics = BranchAnalytics()

    def _export_section(self) -> Dict[str, Any]:
        self._sync_position()
        return {
            "chapter_id": self._chapter_id,
            "flow_id": self._flow_id,
            "branch_history": [asdict(entry) for entry in self._history],
            "analytics": asdict(self._analytics),
        }

    def _parse_section(self, raw: Any) -> SectionApply:
        if not isinstance(raw, Mapping):
            raise SaveLoadError("branching section must be an object.")
        chapter_id = raw.get("chapter_id")
        flow_id = raw.get("flow_id")
        if chapter_id not in self._chapters:
            raise SaveLoadError(f"branching section references unknown chapter {chapter_id!r}.")
        if flow_id not in self._flows:
            raise SaveLoadError(f"branching section references unknown flow {flow_id!r}.")
        raw_history = raw.get("branch_history") or []
        if not isinstance(raw_history, list):
            raise SaveLoadError("branching.branch_history must be a list.")
        history = [_history_entry_from_dict(entry) for entry in raw_history]
        analytics = _analytics_from_dict(raw.get("analytics") or {})

        def apply() -> None:
            self._chapter_id = chapter_id
            self._flow_id = flow_id
            self._history = history
            self._analytics = analytics
            for entry in history:
                self._ids.advance_past(entry.id)

        return apply


def create_branching_engine(
    story: BranchingStoryDef,
    *,
    history: HistoryManager | None = None,
    config: EngineConfig | None = None,
    history_limit: int | None = None,
    history_prune: int | None = None,
    **engine_kwargs: Any,
) -> BranchingEngine:
    """Build a TransitionEngine over the flattened story and wrap it.

    Limits left as None come from ``config.branching``.
    """
    engine = TransitionEngine(
        branching_loader.build_graph_from_story(story), history=history, config=config, **engine_kwargs
    )
    return BranchingEngine(story, engine, history_limit=history_limit, history_prune=history_prune)


def _history_entry_from_dict(raw: object) -> BranchHistoryEntry:
    if not isinstance(raw, Mapping):
        raise SaveLoadError("branch history entries must be objects.")
    try:
        entry = BranchHistoryEntry(
            id=raw["id"],
            branch_point_id=raw["branch_point_id"],
            option_id=raw["option_id"],
            from_node_id=raw["from_node_id"],
            to_node_id=raw["to_node_id"],
            timestamp=raw["timestamp"],
            flags=dict(raw.get("flags") or {}),
        )
    except KeyError as exc:
        raise SaveLoadError(f"branch history entry is missing {exc}.") from exc
    text_fields = (entry.id, entry.branch_point_id, entry.option_id, entry.from_node_id, entry.to_node_id, entry.timestamp)
    if not all(isinstance(value, str) for value in text_fields):
        raise SaveLoadError("branch history entry fields must be strings.")
    return entry


def _analytics_from_dict(raw: object) -> BranchAnalytics:
    if not isinstance(raw, Mapping):
        raise SaveLoadError("branching.analytics must be an object.")
    total = raw.get("total_branches_traversed", 0)
    if isinstance(total, bool) or not isinstance(total, int) or total < 0:
        raise SaveLoadError("analytics.total_branches_traversed must be a non-negative integer.")
    counters: Dict[str, Dict[str, Any]] = {}
    for name in ("option_usage", "branch_point_usage", "branch_point_last_used"):
        value = raw.get(name) or {}
        if not isinstance(value, Mapping):
            raise SaveLoadError(f"analytics.{name} must be an object.")
        for key, item in value.items():
            if name == "branch_point_last_used":
                valid = isinstance(item, str)
            else:
                valid = not isinstance(item, bool) and isinstance(item, int) and item >= 0
            if not isinstance(key, str) or not valid:
                raise SaveLoadError(f"analytics.{name} has an invalid entry for {key!r}.")
        counters[name] = dict(value)
    most_popular = raw.get("most_popular") or []
    if not isinstance(most_popular, list) or not all(isinstance(item, str) for item in most_popular):
        raise SaveLoadError("analytics.most_popular must be a list of strings.")
    return BranchAnalytics(
        total_branches_traversed=total,
        option_usage=counters["option_usage"],
        branch_point_usage=counters["branch_point_usage"],
        branch_point_last_used=counters["branch_point_last_used"],
        most_popular=list(most_popular),
    )
