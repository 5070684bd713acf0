"""Deterministic story progression engine."""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping

from storyloom.config import EngineConfig
from storyloom.core.clock import Clock, SystemClock
from storyloom.core.types import ActionKind
from storyloom.data import story_loader
from storyloom.domain.defs import StoryChoiceDef, StoryNodeDef
from storyloom.domain.history_models import HistoryEntry
from storyloom.domain.state import EngineState, ensure_flag_effects, ensure_json_value
from storyloom.domain.story_graph import StoryGraph
from storyloom.services.condition_evaluator import ConditionEvaluator
from storyloom.services.errors import BrokenReferenceError, InvalidChoiceError, SaveLoadError
from storyloom.services.history_service import HistoryManager, UndoRedoResult
from storyloom.services.save_service import Envelope, Migration, SaveService
from storyloom.services.story_graph_validator import ensure_valid_graph

logger = logging.getLogger(__name__)

SectionApply = Callable[[], None]


@dataclass(slots=True)
class TransitionResult:
    """Summary of one committed action."""

    action: ActionKind
    from_node_id: str
    to_node_id: str
    changed_flags: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CommitEvent:
    """Passed to commit listeners after a mutation has been committed."""

    action: ActionKind
    state: EngineState
    entry: HistoryEntry | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)


CommitListener = Callable[[CommitEvent], None]


@dataclass(slots=True)
class EnvelopeSection:
    """A named payload section contributed by a collaborator.

    ``parse`` must validate without side effects and return a thunk that
    applies the parsed data; it raises SaveLoadError for bad input. ``reset``
    runs when the narrative is reset.
    """

    name: str
    export: Callable[[], Any]
    parse: Callable[[Any], SectionApply]
    reset: Callable[[], None] | None = None


class TransitionEngine:
    """Owns the engine state and funnels every mutation through one commit path.

    Readers always receive copies. A mutation either fully commits (state
    swapped, history recorded, listeners notified) or raises before touching
    anything. A failing listener is logged and does not undo the commit.
    """

    def __init__(
        self,
        graph: StoryGraph | Mapping[str, Any],
        *,
        evaluator: ConditionEvaluator | None = None,
        history: HistoryManager | None = None,
        save_service: SaveService | None = None,
        clock: Clock | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        if isinstance(graph, StoryGraph):
            self._graph = ensure_valid_graph(graph)
        else:
            self._graph = story_loader.load_story_graph(graph)
        self._clock = clock or SystemClock()
        self._evaluator = evaluator or ConditionEvaluator()
        self._config = config or EngineConfig()
        undo_redo = self._config.undo_redo
        self._history = history or HistoryManager(
            enabled=undo_redo.enabled,
            max_undo_entries=undo_redo.max_undo_entries,
            max_redo_entries=undo_redo.max_redo_entries,
            clock=self._clock,
        )
        self._save_service = save_service or SaveService(self._graph, clock=self._clock)
        self._state = self._initial_state()
        self._listeners: List[CommitListener] = []
        self._sections: Dict[str, EnvelopeSection] = {}

    @property
    def graph(self) -> StoryGraph:
        return self._graph

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def evaluator(self) -> ConditionEvaluator:
        return self._evaluator

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def history_manager(self) -> HistoryManager:
        return self._history

    @property
    def save_service(self) -> SaveService:
        return self._save_service

    # Reads

    def get_state(self) -> EngineState:
        return self._state.copy()

    def get_flags(self) -> Dict[str, Any]:
        return copy.deepcopy(self._state.flags)

    def get_history(self) -> List[str]:
        return list(self._state.history)

    @property
    def current_node_id(self) -> str:
        return self._state.current_node_id

    def get_current_node(self) -> StoryNodeDef:
        return self._resolve_node(self._state.current_node_id)

    def get_available_choices(self) -> List[StoryChoiceDef]:
        """Return the current node's choices that pass evaluation, in authored order."""
        node = self.get_current_node()
        return self._evaluator.filter_choices(node.choices, self._state.copy())

    # Mutations

    def select_choice(self, choice: StoryChoiceDef) -> TransitionResult:
        available = self.get_available_choices()
        if not any(candidate is choice or candidate == choice for candidate in available):
            raise InvalidChoiceError(
                f"Choice '{getattr(choice, 'text', choice)}' is not available at node "
                f"'{self._state.current_node_id}'.",
                choice=choice,
                available=available,
            )
        self._resolve_node(choice.next_node_id)
        changed = copy.deepcopy(dict(choice.flag_effects))
        after = self._advance(choice.next_node_id, changed)
        return self._commit(
            "choice",
            after,
            {"node_id": self._state.current_node_id, "choice_text": choice.text, "changed_flags": changed},
        )

    def choose(self, index: int) -> TransitionResult:
        """Select by position in ``get_available_choices()``."""
        available = self.get_available_choices()
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(available):
            raise InvalidChoiceError(
                f"Choice index {index!r} is invalid for node '{self._state.current_node_id}'.",
                choice=index,
                available=available,
            )
        return self.select_choice(available[index])

    def set_flag(self, key: str, value: Any) -> TransitionResult:
        if not isinstance(key, str) or not key:
            raise ValueError("Flag key must be a non-empty string.")
        ensure_json_value(value, f"flags.{key}")
        after = self._state.copy()
        after.flags[key] = copy.deepcopy(value)
        return self._commit(
            "flag-change",
            after,
            {"node_id": self._state.current_node_id, "changed_flags": {key: copy.deepcopy(value)}},
        )

    def apply_branch(
        self,
        target_node_id: str,
        flag_effects: Mapping[str, Any],
        metadata: Mapping[str, Any] | None = None,
        *,
        on_commit: SectionApply | None = None,
    ) -> TransitionResult:
        """Commit a branch move: merge ``flag_effects`` and jump to ``target_node_id``.

        ``on_commit`` runs after the new state is in place and before any
        listener is notified.
        """
        self._resolve_node(target_node_id)
        ensure_flag_effects(flag_effects)
        changed = copy.deepcopy(dict(flag_effects))
        after = self._advance(target_node_id, changed)
        details = {"node_id": self._state.current_node_id, "changed_flags": changed}
        details.update(metadata or {})
        return self._commit("branch", after, details, before_notify=[on_commit] if on_commit else None)

    def restore_state(
        self,
        state: EngineState,
        action: ActionKind = "checkpoint-restore",
        metadata: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        """Swap in a whole snapshot as one undoable action."""
        self._resolve_node(state.current_node_id)
        details = {"node_id": self._state.current_node_id}
        details.update(metadata or {})
        return self._commit(action, state.copy(), details)

    def reset_narrative(self) -> None:
        """Return to the initial node with empty flags, history and undo/redo stacks."""
        self._state = self._initial_state()
        self._history.clear()
        for section in self._sections.values():
            if section.reset is not None:
                section.reset()
        logger.info("Narrative reset to '%s'.", self._graph.initial_node_id)

    # Undo/redo

    def undo(self) -> UndoRedoResult:
        result = self._history.undo()
        if result.success and result.restored_state is not None:
            self._state = result.restored_state.copy()
        return result

    def redo(self) -> UndoRedoResult:
        result = self._history.redo()
        if result.success and result.restored_state is not None:
            self._state = result.restored_state.copy()
        return result

    def can_undo(self) -> bool:
        return self._history.can_undo()

    def can_redo(self) -> bool:
        return self._history.can_redo()

    def configure_undo_redo(
        self,
        *,
        enabled: bool | None = None,
        max_undo_entries: int | None = None,
        max_redo_entries: int | None = None,
    ) -> None:
        self._history.configure(
            enabled=enabled,
            max_undo_entries=max_undo_entries,
            max_redo_entries=max_redo_entries,
        )

    # Collaborators

    def add_commit_listener(self, listener: CommitListener) -> Callable[[], None]:
        """Register ``listener``; the returned callable unregisters it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def register_section(self, section: EnvelopeSection) -> None:
        if section.name in ("current_node_id", "flags", "history", "meta"):
            raise ValueError(f"Section name '{section.name}' is reserved.")
        if section.name in self._sections:
            raise ValueError(f"Section '{section.name}' is already registered.")
        self._sections[section.name] = section

    # Persistence

    def export_envelope(self, meta: Mapping[str, Any] | None = None) -> Envelope:
        sections = {name: section.export() for name, section in self._sections.items()}
        return self._save_service.serialize(self._state, meta, sections)

    def load_state(
        self,
        envelope: Envelope | Mapping[str, Any],
        *,
        validate_checksum: bool = False,
        skip_compatibility_check: bool = False,
        migrate: Migration | None = None,
    ) -> TransitionResult:
        """Replace the state with an envelope's contents, atomically.

        Every section is parsed before anything is applied, so a failure
        anywhere leaves state, history and collaborators untouched.
        """
        loaded = self._save_service.deserialize(
            envelope,
            validate_checksum=validate_checksum,
            skip_compatibility_check=skip_compatibility_check,
            migrate=migrate,
        )
        appliers: List[SectionApply] = []
        for name, section in self._sections.items():
            if name not in loaded.sections:
                continue
            try:
                appliers.append(section.parse(loaded.sections[name]))
            except SaveLoadError:
                raise
            except (TypeError, ValueError, KeyError) as exc:
                raise SaveLoadError(f"Invalid '{name}' section: {exc}") from exc
        for name in loaded.sections:
            if name not in self._sections:
                logger.debug("Ignoring unregistered save section '%s'.", name)
        result = self._commit(
            "state-load",
            loaded.state,
            {"node_id": self._state.current_node_id, "meta": loaded.meta},
            before_notify=appliers,
        )
        logger.info("Loaded state at node '%s'.", loaded.state.current_node_id)
        return result

    # Internals

    def _initial_state(self) -> EngineState:
        initial = self._graph.initial_node_id
        return EngineState(current_node_id=initial, flags={}, history=[initial])

    def _resolve_node(self, node_id: str) -> StoryNodeDef:
        if not self._graph.has(node_id):
            raise BrokenReferenceError(f"Node '{node_id}' does not exist in the story graph.", node_id)
        return self._graph.get(node_id)

    def _advance(self, node_id: str, flag_effects: Mapping[str, Any]) -> EngineState:
        after = self._state.copy()
        after.flags.update(copy.deepcopy(dict(flag_effects)))
        after.history.append(node_id)
        after.current_node_id = node_id
        return after

    def _commit(
        self,
        action: ActionKind,
        after: EngineState,
        metadata: Dict[str, Any],
        before_notify: List[SectionApply] | None = None,
    ) -> TransitionResult:
        before = self._state
        self._state = after
        entry = self._history.record(action, before, after, metadata)
        for apply in before_notify or ():
            apply()
        logger.debug(
            "Committed %s: %s -> %s.", action, before.current_node_id, after.current_node_id
        )
        event = CommitEvent(action=action, state=after.copy(), entry=entry, metadata=dict(metadata))
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Commit listener %r failed after %s.", listener, action)
        return TransitionResult(
            action=action,
            from_node_id=before.current_node_id,
            to_node_id=after.current_node_id,
            changed_flags=copy.deepcopy(metadata.get("changed_flags", {})),
        )
