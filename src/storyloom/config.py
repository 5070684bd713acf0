"""Engine configuration and its persistence helpers."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

logger = logging.getLogger(__name__)

AUTOSAVE_TRIGGERS: Tuple[str, ...] = ("choice", "flag-change", "branch", "state-load", "manual", "interval")
_DEFAULT_TRIGGERS: Tuple[str, ...] = ("choice", "flag-change", "branch", "state-load")


@dataclass(slots=True)
class UndoRedoConfig:
    enabled: bool = True
    max_undo_entries: int = 50
    max_redo_entries: int = 25


@dataclass(slots=True)
class AutosaveConfig:
    """Autosave behaviour; times are milliseconds on the engine's monotonic clock."""

    enabled: bool = True
    triggers: Tuple[str, ...] = _DEFAULT_TRIGGERS
    max_entries: int = 10
    throttle_ms: int = 100
    interval_ms: int = 0
    include_metadata: bool = True

    def __post_init__(self) -> None:
        unknown = [trigger for trigger in self.triggers if trigger not in AUTOSAVE_TRIGGERS]
        if unknown:
            raise ValueError(f"Unknown autosave triggers: {', '.join(unknown)}.")
        if self.max_entries < 1:
            raise ValueError("max_entries must be at least 1.")
        if self.throttle_ms < 0 or self.interval_ms < 0:
            raise ValueError("throttle_ms and interval_ms must be non-negative.")
        self.triggers = tuple(self.triggers)


@dataclass(slots=True)
class BranchingConfig:
    history_limit: int = 1000
    history_prune: int = 100
    max_generated_options: int = 3


@dataclass(slots=True)
class EngineConfig:
    undo_redo: UndoRedoConfig = field(default_factory=UndoRedoConfig)
    autosave: AutosaveConfig = field(default_factory=AutosaveConfig)
    branching: BranchingConfig = field(default_factory=BranchingConfig)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["autosave"]["triggers"] = list(self.autosave.triggers)
        return payload


def get_user_data_dir() -> Path:
    """Return the per-user data directory."""
    if os.name == "nt":
        base = os.environ.get("APPDATA")
        if base:
            return Path(base) / "Storyloom"
        return Path.home() / "Storyloom"
    return Path.home() / ".config" / "storyloom"


def get_default_config_path() -> Path:
    """Return the default per-user config path."""
    return get_user_data_dir() / "config.json"


def get_save_dir() -> Path:
    """Return the per-user save directory used by FileStorageAdapter."""
    return get_user_data_dir() / "saves"


def load_config(path: Path | None = None) -> EngineConfig:
    """Load config from disk or return defaults.

    Unreadable files fall back to defaults; individual out-of-range values
    fall back to their own default.
    """
    config_path = path or get_default_config_path()
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return EngineConfig()
    except (OSError, ValueError):
        logger.warning("Ignoring unreadable config file %s.", config_path, exc_info=True)
        return EngineConfig()
    if not isinstance(raw, dict):
        return EngineConfig()
    return normalize_config(raw)


def save_config(config: EngineConfig, path: Path | None = None) -> None:
    """Persist config to disk."""
    config_path = path or get_default_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    payload = normalize_config(config.to_dict()).to_dict()
    config_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")


def normalize_config(raw: Mapping[str, Any]) -> EngineConfig:
    undo_raw = _section(raw, "undo_redo")
    autosave_raw = _section(raw, "autosave")
    branching_raw = _section(raw, "branching")
    undo_defaults = UndoRedoConfig()
    autosave_defaults = AutosaveConfig()
    branching_defaults = BranchingConfig()

    triggers_raw = autosave_raw.get("triggers")
    if isinstance(triggers_raw, list):
        triggers = tuple(trigger for trigger in triggers_raw if trigger in AUTOSAVE_TRIGGERS)
    else:
        triggers = autosave_defaults.triggers

    return EngineConfig(
        undo_redo=UndoRedoConfig(
            enabled=_bool(undo_raw.get("enabled"), undo_defaults.enabled),
            max_undo_entries=_int(undo_raw.get("max_undo_entries"), undo_defaults.max_undo_entries, minimum=1),
            max_redo_entries=_int(undo_raw.get("max_redo_entries"), undo_defaults.max_redo_entries, minimum=1),
        ),
        autosave=AutosaveConfig(
            enabled=_bool(autosave_raw.get("enabled"), autosave_defaults.enabled),
            triggers=triggers,
            max_entries=_int(autosave_raw.get("max_entries"), autosave_defaults.max_entries, minimum=1),
            throttle_ms=_int(autosave_raw.get("throttle_ms"), autosave_defaults.throttle_ms, minimum=0),
            interval_ms=_int(autosave_raw.get("interval_ms"), autosave_defaults.interval_ms, minimum=0),
            include_metadata=_bool(autosave_raw.get("include_metadata"), autosave_defaults.include_metadata),
        ),
        branching=BranchingConfig(
            history_limit=_int(branching_raw.get("history_limit"), branching_defaults.history_limit, minimum=1),
            history_prune=_int(branching_raw.get("history_prune"), branching_defaults.history_prune, minimum=1),
            max_generated_options=_int(
                branching_raw.get("max_generated_options"), branching_defaults.max_generated_options, minimum=0
            ),
        ),
    )


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = raw.get(name)
    return value if isinstance(value, dict) else {}


def _bool(value: object, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _int(value: object, default: int, *, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        return default
    return value
