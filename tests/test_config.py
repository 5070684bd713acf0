import json
import logging
import os
from pathlib import Path

import pytest

from storyloom import config
from storyloom.config import AutosaveConfig, EngineConfig, load_config, save_config


def test_missing_file_returns_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "missing.json")
    assert loaded == EngineConfig()
    assert loaded.undo_redo.max_undo_entries == 50
    assert loaded.undo_redo.max_redo_entries == 25
    assert loaded.autosave.throttle_ms == 100
    assert loaded.branching.history_limit == 1000


def test_unreadable_file_warns_and_returns_defaults(tmp_path: Path, caplog) -> None:
    path = tmp_path / "config.json"
    path.write_text("{broken", encoding="utf-8")
    with caplog.at_level(logging.WARNING):
        assert load_config(path) == EngineConfig()
    assert "unreadable" in caplog.text


def test_non_object_returns_defaults(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("[1, 2]", encoding="utf-8")
    assert load_config(path) == EngineConfig()


def test_bad_values_fall_back_individually(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "undo_redo": {"enabled": "yes", "max_undo_entries": 0, "max_redo_entries": 7},
                "autosave": {"triggers": ["choice", "whenever"], "throttle_ms": -5, "max_entries": 4},
                "branching": "nope",
            }
        ),
        encoding="utf-8",
    )
    loaded = load_config(path)
    assert loaded.undo_redo.enabled is True
    assert loaded.undo_redo.max_undo_entries == 50
    assert loaded.undo_redo.max_redo_entries == 7
    assert loaded.autosave.triggers == ("choice",)
    assert loaded.autosave.throttle_ms == 100
    assert loaded.autosave.max_entries == 4
    assert loaded.branching.history_prune == 100


def test_save_then_load_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "config.json"
    original = EngineConfig(autosave=AutosaveConfig(enabled=False, triggers=("manual",), interval_ms=500))

    save_config(original, path)

    assert load_config(path) == original
    text = path.read_text(encoding="utf-8")
    assert text == json.dumps(json.loads(text), indent=2, sort_keys=True)


@pytest.mark.skipif(os.name == "nt", reason="POSIX home layout")
def test_default_paths_use_home(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    assert config.get_default_config_path() == tmp_path / ".config" / "storyloom" / "config.json"
    assert config.get_save_dir() == tmp_path / ".config" / "storyloom" / "saves"
