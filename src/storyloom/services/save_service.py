"""Serialization helpers for the versioned, checksummed save envelope."""
from __future__ import annotations

import copy
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping

from storyloom import ENGINE_VERSION
from storyloom.core.clock import Clock, SystemClock, isoformat
from storyloom.domain.state import EngineState, ensure_json_flags
from storyloom.domain.story_graph import StoryGraph
from storyloom.services.errors import IncompatibleVersionError, IntegrityError, SaveLoadError

logger = logging.getLogger(__name__)

SavePayload = Dict[str, Any]
Migration = Callable[[Dict[str, Any]], Dict[str, Any]]

CHECKSUM_ALGORITHM = "sha256-canonical-json/1"
CHECKSUM_PREFIX = "sha256:"
STATE_KEYS = ("current_node_id", "flags", "history")
_ENVELOPE_KEYS = ("version", "engine_version", "timestamp", "checksum_algorithm", "checksum", "payload")


def canonical_json(payload: Mapping[str, Any]) -> str:
    """Return the byte-stable JSON form the checksum is computed over."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_checksum(payload: Mapping[str, Any]) -> str:
    digest = hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
    return f"{CHECKSUM_PREFIX}{digest}"


@dataclass(slots=True)
class Envelope:
    """Durable form of engine state plus optional sections."""

    version: int
    engine_version: str
    timestamp: str
    checksum_algorithm: str
    checksum: str
    payload: SavePayload = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "engine_version": self.engine_version,
            "timestamp": self.timestamp,
            "checksum_algorithm": self.checksum_algorithm,
            "checksum": self.checksum,
            "payload": copy.deepcopy(self.payload),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Envelope":
        if not isinstance(data, Mapping):
            raise SaveLoadError("Save data must be a JSON object.")
        missing = [key for key in _ENVELOPE_KEYS if key not in data]
        if missing:
            raise SaveLoadError(f"Save data is missing required fields: {', '.join(missing)}.")
        payload = data["payload"]
        if not isinstance(payload, Mapping):
            raise SaveLoadError("Save payload must be a JSON object.")
        return cls(
            version=data["version"],
            engine_version=data["engine_version"],
            timestamp=data["timestamp"],
            checksum_algorithm=data["checksum_algorithm"],
            checksum=data["checksum"],
            payload=copy.deepcopy(dict(payload)),
        )


@dataclass(slots=True)
class LoadedEnvelope:
    """Validated envelope contents, not yet applied to any engine."""

    state: EngineState
    sections: Dict[str, Any]
    meta: Dict[str, Any]
    envelope: Envelope


class SaveService:
    """Converts engine state to/from a validated, versioned envelope."""

    SAVE_VERSION = 1

    def __init__(
        self,
        graph: StoryGraph | None = None,
        *,
        clock: Clock | None = None,
        engine_version: str = ENGINE_VERSION,
    ) -> None:
        self._graph = graph
        self._clock = clock or SystemClock()
        self._engine_version = engine_version

    def serialize(
        self,
        state: EngineState,
        meta: Mapping[str, Any] | None = None,
        sections: Mapping[str, Any] | None = None,
    ) -> Envelope:
        """Snapshot ``state`` into a new envelope; nothing is shared with the caller."""
        payload: SavePayload = state.to_dict()
        for name, value in (sections or {}).items():
            if value is not None:
                payload[name] = copy.deepcopy(value)
        if meta:
            payload["meta"] = copy.deepcopy(dict(meta))
        try:
            checksum = compute_checksum(payload)
        except (TypeError, ValueError) as exc:
            raise SaveLoadError(f"Save payload is not JSON serializable: {exc}") from exc
        return Envelope(
            version=self.SAVE_VERSION,
            engine_version=self._engine_version,
            timestamp=isoformat(self._clock.now()),
            checksum_algorithm=CHECKSUM_ALGORITHM,
            checksum=checksum,
            payload=payload,
        )

    def deserialize(
        self,
        envelope: Envelope | Mapping[str, Any],
        *,
        validate_checksum: bool = False,
        skip_compatibility_check: bool = False,
        migrate: Migration | None = None,
    ) -> LoadedEnvelope:
        """Validate an envelope and rebuild its state without side effects."""
        if isinstance(envelope, Envelope):
            raw = envelope.to_dict()
        elif isinstance(envelope, Mapping):
            raw = copy.deepcopy(dict(envelope))
        else:
            raise SaveLoadError("Save data must be a JSON object.")
        if migrate is not None:
            try:
                raw = migrate(raw)
            except Exception as exc:
                raise SaveLoadError(f"Save migration failed: {exc}") from exc
        parsed = Envelope.from_dict(raw)

        if isinstance(parsed.version, bool) or parsed.version != self.SAVE_VERSION:
            raise SaveLoadError(
                f"Unsupported save version {parsed.version!r}; expected {self.SAVE_VERSION}."
            )
        if not isinstance(parsed.engine_version, str):
            raise SaveLoadError("engine_version must be a string.")
        if not skip_compatibility_check:
            self._check_compatibility(parsed.engine_version)
        if validate_checksum:
            self._check_integrity(parsed)

        payload = parsed.payload
        state = EngineState(
            current_node_id=self._require_str(payload.get("current_node_id"), "payload.current_node_id"),
            flags=self._coerce_flags(payload.get("flags")),
            history=self._coerce_history(payload.get("history")),
        )
        self._validate_node_refs(state)
        meta = payload.get("meta") or {}
        if not isinstance(meta, Mapping):
            raise SaveLoadError("payload.meta must be an object if provided.")
        sections = {key: copy.deepcopy(payload[key]) for key in payload if key not in STATE_KEYS and key != "meta"}
        logger.debug("Deserialized envelope at node '%s'.", state.current_node_id)
        return LoadedEnvelope(state=state, sections=sections, meta=dict(meta), envelope=parsed)

    def _check_compatibility(self, engine_version: str) -> None:
        saved_major = _major(engine_version)
        current_major = _major(self._engine_version)
        if saved_major is None:
            raise SaveLoadError(f"Unrecognized engine_version {engine_version!r}.")
        if saved_major != current_major:
            raise IncompatibleVersionError(
                f"Save was written by engine {engine_version}; this engine is {self._engine_version}."
            )

    @staticmethod
    def _check_integrity(envelope: Envelope) -> None:
        if envelope.checksum_algorithm != CHECKSUM_ALGORITHM:
            raise IntegrityError(
                f"Cannot verify checksum algorithm {envelope.checksum_algorithm!r}."
            )
        if not isinstance(envelope.checksum, str):
            raise IntegrityError("Save checksum must be a string.")
        try:
            expected = compute_checksum(envelope.payload)
        except (TypeError, ValueError) as exc:
            raise IntegrityError(f"Save payload cannot be hashed: {exc}") from exc
        if expected != envelope.checksum:
            raise IntegrityError("Save checksum does not match its payload.")

    def _validate_node_refs(self, state: EngineState) -> None:
        if self._graph is None:
            return
        if not self._graph.has(state.current_node_id):
            raise SaveLoadError(f"Save references unknown node '{state.current_node_id}'.")
        unknown = [node_id for node_id in state.history if not self._graph.has(node_id)]
        if unknown:
            raise SaveLoadError(f"Save history references unknown nodes: {', '.join(unknown)}.")

    @staticmethod
    def _coerce_flags(value: object) -> Dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            raise SaveLoadError("payload.flags must be an object.")
        try:
            ensure_json_flags(value, "payload.flags")
        except ValueError as exc:
            raise SaveLoadError(str(exc)) from exc
        return copy.deepcopy(dict(value))

    @staticmethod
    def _coerce_history(value: object) -> List[str]:
        if value is None:
            return []
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise SaveLoadError("payload.history must be a list of strings.")
        return list(value)

    @staticmethod
    def _require_str(value: object, context: str) -> str:
        if not isinstance(value, str):
            raise SaveLoadError(f"{context} must be a string.")
        return value


def _major(version: str) -> int | None:
    head = version.split(".", 1)[0]
    if not head.isdigit():
        return None
    return int(head)
