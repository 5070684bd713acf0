"""Manual checkpoints and throttled autosave snapshots."""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence

from storyloom.config import AutosaveConfig
from storyloom.core.clock import isoformat
from storyloom.core.ids import IdSequence
from storyloom.core.types import AutosaveTrigger
from storyloom.domain.history_models import Checkpoint
from storyloom.domain.state import EngineState, ensure_json_flags
from storyloom.services.errors import SaveLoadError
from storyloom.services.transition_engine import (
    CommitEvent,
    EnvelopeSection,
    SectionApply,
    TransitionEngine,
    TransitionResult,
)

logger = logging.getLogger(__name__)

AUTOSAVE_TAG = "autosave"
DEFAULT_MAX_CHECKPOINTS = 50

_ACTION_TRIGGERS: Dict[str, AutosaveTrigger] = {
    "choice": "choice",
    "flag-change": "flag-change",
    "branch": "branch",
    "state-load": "state-load",
}


@dataclass(slots=True)
class AutosaveResult:
    """Outcome of an autosave request.

    ``pending`` means the request fell inside the throttle window and will be
    written by a later ``poll()`` or trigger.
    """

    success: bool
    trigger: AutosaveTrigger | None = None
    checkpoint_id: str | None = None
    pending: bool = False
    error: str | None = None


@dataclass(slots=True)
class _PendingAutosave:
    trigger: AutosaveTrigger
    requested_at: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class CheckpointManager:
    """Keeps named checkpoints plus a ring buffer of autosaves for one engine.

    Autosaves follow engine commits (undo and redo never commit, so they never
    autosave). Requests closer together than ``throttle_ms`` are coalesced: the
    latest one stays pending and is written once the window has passed, with
    whatever the state is at that moment.
    """

    def __init__(
        self,
        engine: TransitionEngine,
        config: AutosaveConfig | None = None,
        *,
        max_checkpoints: int = DEFAULT_MAX_CHECKPOINTS,
    ) -> None:
        if max_checkpoints < 1:
            raise ValueError("max_checkpoints must be at least 1.")
        self._engine = engine
        self._clock = engine.clock
        self._config = config or engine.config.autosave
        self._max_checkpoints = max_checkpoints
        self._checkpoints: "OrderedDict[str, Checkpoint]" = OrderedDict()
        self._checkpoint_ids = IdSequence("checkpoint")
        self._autosave_ids = IdSequence("autosave")
        self._pending: _PendingAutosave | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._last_write: float | None = None
        self._started_at = self._clock.monotonic()
        self._write_count = 0
        engine.add_commit_listener(self._on_commit)
        engine.register_section(
            EnvelopeSection(
                name="checkpoints",
                export=self._export_checkpoints,
                parse=self._parse_checkpoints,
            )
        )
        engine.register_section(
            EnvelopeSection(
                name="autosave",
                export=self._export_autosave,
                parse=self._parse_autosave,
                reset=self._cancel_pending,
            )
        )

    @property
    def config(self) -> AutosaveConfig:
        return self._config

    def configure(self, config: AutosaveConfig) -> None:
        self._config = config
        if not config.enabled:
            self._cancel_pending()
        self._evict_autosaves()

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    # Manual checkpoints

    def create_checkpoint(self, name: str | None = None, tags: Sequence[str] = ()) -> Checkpoint:
        checkpoint_id = self._checkpoint_ids.next_id()
        checkpoint = self._snapshot(checkpoint_id, name or checkpoint_id, list(tags), include_metadata=True)
        self._checkpoints[checkpoint_id] = checkpoint
        manual = [key for key, value in self._checkpoints.items() if AUTOSAVE_TAG not in value.tags]
        for stale in manual[: max(len(manual) - self._max_checkpoints, 0)]:
            del self._checkpoints[stale]
        logger.debug("Created checkpoint %s at '%s'.", checkpoint_id, checkpoint.state.current_node_id)
        return _copy_checkpoint(checkpoint)

    def list_checkpoints(self, *, include_autosaves: bool = True) -> List[Checkpoint]:
        """Return checkpoints oldest first."""
        return [
            _copy_checkpoint(checkpoint)
            for checkpoint in self._checkpoints.values()
            if include_autosaves or AUTOSAVE_TAG not in checkpoint.tags
        ]

    def list_autosaves(self) -> List[Checkpoint]:
        return [
            _copy_checkpoint(checkpoint)
            for checkpoint in self._checkpoints.values()
            if AUTOSAVE_TAG in checkpoint.tags
        ]

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        checkpoint = self._checkpoints.get(checkpoint_id)
        return _copy_checkpoint(checkpoint) if checkpoint is not None else None

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        return self._checkpoints.pop(checkpoint_id, None) is not None

    def restore_checkpoint(self, checkpoint_id: str) -> TransitionResult:
        """Restore a checkpoint as one undoable ``checkpoint-restore`` action."""
        checkpoint = self._checkpoints.get(checkpoint_id)
        if checkpoint is None:
            raise KeyError(checkpoint_id)
        return self._engine.restore_state(
            checkpoint.state,
            "checkpoint-restore",
            {"checkpoint_id": checkpoint_id, "checkpoint_name": checkpoint.name},
        )

    # Autosave

    def manual_autosave(self, metadata: Mapping[str, Any] | None = None) -> AutosaveResult:
        """Write immediately, ignoring the throttle and replacing any pending write."""
        self._cancel_pending()
        return self._write("manual", dict(metadata or {}))

    def request_autosave(
        self, trigger: AutosaveTrigger, metadata: Mapping[str, Any] | None = None
    ) -> AutosaveResult:
        if not self._config.enabled:
            return AutosaveResult(success=False, trigger=trigger, error="Autosave is disabled")
        if trigger not in self._config.triggers:
            return AutosaveResult(success=False, trigger=trigger, error=f"Trigger '{trigger}' is not enabled")
        now = self._clock.monotonic()
        remaining = self._throttle_remaining(now)
        if remaining > 0:
            self._pending = _PendingAutosave(trigger=trigger, requested_at=now, metadata=dict(metadata or {}))
            self._schedule_flush(remaining)
            logger.debug("Autosave for '%s' coalesced; %.3fs left in throttle window.", trigger, remaining)
            return AutosaveResult(success=True, trigger=trigger, pending=True)
        self._cancel_pending()
        return self._write(trigger, dict(metadata or {}))

    def poll(self) -> AutosaveResult | None:
        """Flush a due pending autosave or fire the interval trigger.

        Returns None when nothing was written.
        """
        now = self._clock.monotonic()
        if self._pending is not None:
            if self._throttle_remaining(now) > 0:
                return None
            pending = self._pending
            self._cancel_pending()
            return self._write(pending.trigger, pending.metadata)
        if (
            self._config.enabled
            and self._config.interval_ms > 0
            and "interval" in self._config.triggers
        ):
            since = self._last_write if self._last_write is not None else self._started_at
            if (now - since) * 1000 >= self._config.interval_ms:
                return self._write("interval", {})
        return None

    # Internals

    def _on_commit(self, event: CommitEvent) -> None:
        trigger = _ACTION_TRIGGERS.get(event.action)
        if trigger is None or not self._config.enabled or trigger not in self._config.triggers:
            return
        self.request_autosave(trigger, {"action": event.action})

    def _throttle_remaining(self, now: float) -> float:
        if self._last_write is None or self._config.throttle_ms <= 0:
            return 0.0
        return max(self._config.throttle_ms / 1000 - (now - self._last_write), 0.0)

    def _schedule_flush(self, delay: float) -> None:
        if self._timer is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer = loop.call_later(delay, self._flush_from_timer)

    def _flush_from_timer(self) -> None:
        self._timer = None
        if self.poll() is None and self._pending is not None:
            # The loop may fire a timer slightly early; try again once due.
            remaining = self._throttle_remaining(self._clock.monotonic())
            self._schedule_flush(max(remaining, 0.001))

    def _cancel_pending(self) -> None:
        self._pending = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _write(self, trigger: AutosaveTrigger, metadata: Dict[str, Any]) -> AutosaveResult:
        autosave_id = self._autosave_ids.next_id()
        checkpoint = self._snapshot(
            autosave_id,
            f"Autosave ({trigger})",
            [AUTOSAVE_TAG, trigger],
            include_metadata=self._config.include_metadata,
        )
        if self._config.include_metadata:
            checkpoint.metadata.update(metadata)
            checkpoint.metadata["trigger"] = trigger
        self._checkpoints[autosave_id] = checkpoint
        self._evict_autosaves()
        self._last_write = self._clock.monotonic()
        self._write_count += 1
        logger.debug("Autosaved %s (%s) at '%s'.", autosave_id, trigger, checkpoint.state.current_node_id)
        return AutosaveResult(success=True, trigger=trigger, checkpoint_id=autosave_id)

    def _evict_autosaves(self) -> None:
        autosaves = [key for key, value in self._checkpoints.items() if AUTOSAVE_TAG in value.tags]
        for stale in autosaves[: max(len(autosaves) - self._config.max_entries, 0)]:
            del self._checkpoints[stale]

    def _snapshot(
        self, checkpoint_id: str, name: str, tags: List[str], *, include_metadata: bool
    ) -> Checkpoint:
        state = self._engine.get_state()
        metadata: Dict[str, Any] = {}
        if include_metadata:
            metadata = {
                "node_id": state.current_node_id,
                "flag_count": len(state.flags),
                "history_length": len(state.history),
            }
        return Checkpoint(
            id=checkpoint_id,
            name=name,
            state=state,
            timestamp=isoformat(self._clock.now()),
            tags=tags,
            metadata=metadata,
        )

    def _export_checkpoints(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": checkpoint.id,
                "name": checkpoint.name,
                "state": checkpoint.state.to_dict(),
                "timestamp": checkpoint.timestamp,
                "tags": list(checkpoint.tags),
                "metadata": dict(checkpoint.metadata),
            }
            for checkpoint in self._checkpoints.values()
        ]

    def _parse_checkpoints(self, raw: Any) -> SectionApply:
        if not isinstance(raw, list):
            raise SaveLoadError("checkpoints section must be a list.")
        parsed: "OrderedDict[str, Checkpoint]" = OrderedDict()
        for index, entry in enumerate(raw):
            checkpoint = self._checkpoint_from_dict(entry, f"checkpoints[{index}]")
            parsed[checkpoint.id] = checkpoint

        def apply() -> None:
            self._checkpoints = parsed
            for checkpoint_id in parsed:
                self._checkpoint_ids.advance_past(checkpoint_id)
                self._autosave_ids.advance_past(checkpoint_id)
            self._evict_autosaves()

        return apply

    def _checkpoint_from_dict(self, raw: object, context: str) -> Checkpoint:
        if not isinstance(raw, Mapping):
            raise SaveLoadError(f"{context} must be an object.")
        for key in ("id", "name", "timestamp"):
            if not isinstance(raw.get(key), str):
                raise SaveLoadError(f"{context}.{key} must be a string.")
        state_raw = raw.get("state")
        if not isinstance(state_raw, Mapping) or not isinstance(state_raw.get("current_node_id"), str):
            raise SaveLoadError(f"{context}.state is invalid.")
        flags = state_raw.get("flags") or {}
        history = state_raw.get("history") or []
        if not isinstance(flags, Mapping):
            raise SaveLoadError(f"{context}.state.flags must be an object.")
        try:
            ensure_json_flags(flags, f"{context}.state.flags")
        except ValueError as exc:
            raise SaveLoadError(str(exc)) from exc
        if not isinstance(history, list) or not all(isinstance(item, str) for item in history):
            raise SaveLoadError(f"{context}.state.history must be a list of strings.")
        state = EngineState.from_dict(state_raw)
        graph = self._engine.graph
        unknown = [node_id for node_id in [state.current_node_id, *state.history] if not graph.has(node_id)]
        if unknown:
            raise SaveLoadError(f"{context} references unknown nodes: {', '.join(unknown)}.")
        tags = raw.get("tags") or []
        metadata = raw.get("metadata") or {}
        if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
            raise SaveLoadError(f"{context}.tags must be a list of strings.")
        if not isinstance(metadata, Mapping):
            raise SaveLoadError(f"{context}.metadata must be an object.")
        return Checkpoint(
            id=raw["id"],
            name=raw["name"],
            state=state,
            timestamp=raw["timestamp"],
            tags=list(tags),
            metadata=dict(metadata),
        )

    def _export_autosave(self) -> Dict[str, Any]:
        return {"write_count": self._write_count}

    def _parse_autosave(self, raw: Any) -> SectionApply:
        if not isinstance(raw, Mapping):
            raise SaveLoadError("autosave section must be an object.")
        write_count = raw.get("write_count", 0)
        if isinstance(write_count, bool) or not isinstance(write_count, int) or write_count < 0:
            raise SaveLoadError("autosave.write_count must be a non-negative integer.")

        def apply() -> None:
            self._cancel_pending()
            self._write_count = write_count

        return apply


def _copy_checkpoint(checkpoint: Checkpoint) -> Checkpoint:
    return Checkpoint(
        id=checkpoint.id,
        name=checkpoint.name,
        state=checkpoint.state.copy(),
        timestamp=checkpoint.timestamp,
        tags=list(checkpoint.tags),
        metadata=dict(checkpoint.metadata),
    )
