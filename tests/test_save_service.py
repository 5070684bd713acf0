import pytest

from storyloom.domain.state import EngineState
from storyloom.services.errors import IncompatibleVersionError, IntegrityError, SaveLoadError
from storyloom.services.save_service import (
    CHECKSUM_ALGORITHM,
    Envelope,
    SaveService,
    canonical_json,
    compute_checksum,
)
from storyloom.services.transition_engine import TransitionEngine

from tests.helpers.story_fixtures import FakeClock, make_linear_graph


def _engine() -> TransitionEngine:
    return TransitionEngine(make_linear_graph(), clock=FakeClock())


def test_envelope_shape() -> None:
    engine = _engine()
    engine.choose(0)

    data = engine.export_envelope({"slot": 1}).to_dict()

    assert data["version"] == SaveService.SAVE_VERSION
    assert data["engine_version"] == "1.2.0"
    assert data["timestamp"] == "2024-01-01T00:00:00+00:00"
    assert data["checksum_algorithm"] == CHECKSUM_ALGORITHM
    assert data["checksum"] == compute_checksum(data["payload"])
    assert data["payload"] == {
        "current_node_id": "a",
        "flags": {"x": 1},
        "history": ["start", "a"],
        "meta": {"slot": 1},
    }


def test_canonical_json_is_key_order_independent() -> None:
    assert canonical_json({"b": 1, "a": {"d": 2, "c": "é"}}) == '{"a":{"c":"é","d":2},"b":1}'
    assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})


def test_round_trip_restores_state() -> None:
    engine = _engine()
    engine.choose(0)
    engine.set_flag("bag", {"items": ["rope"]})
    saved = engine.get_state()
    data = engine.export_envelope().to_dict()

    other = _engine()
    other.load_state(data, validate_checksum=True)

    assert other.get_state() == saved


def test_serialize_snapshots_state() -> None:
    service = SaveService(clock=FakeClock())
    state = EngineState("start", {"bag": ["a"]}, ["start"])
    envelope = service.serialize(state)
    state.flags["bag"].append("b")
    assert envelope.payload["flags"] == {"bag": ["a"]}


def test_tampered_payload_raises_integrity_error() -> None:
    engine = _engine()
    engine.choose(0)
    data = engine.export_envelope().to_dict()
    data["payload"]["flags"]["x"] = 2
    before = engine.get_state()

    with pytest.raises(IntegrityError):
        engine.load_state(data, validate_checksum=True)

    assert engine.get_state() == before


def test_tampered_checksum_raises_integrity_error() -> None:
    engine = _engine()
    engine.choose(0)
    data = engine.export_envelope().to_dict()
    engine.set_flag("after", True)
    before = engine.get_state()
    data["checksum"] = "sha256:" + "0" * 64

    with pytest.raises(IntegrityError):
        engine.load_state(data, validate_checksum=True)

    assert engine.get_state() == before


def test_checksum_is_skipped_unless_requested() -> None:
    engine = _engine()
    data = engine.export_envelope().to_dict()
    data["checksum"] = "sha256:deadbeef"
    engine.load_state(data)
    assert engine.current_node_id == "start"


def test_unknown_checksum_algorithm_is_rejected() -> None:
    data = _engine().export_envelope().to_dict()
    data["checksum_algorithm"] = "md5"
    with pytest.raises(IntegrityError):
        SaveService().deserialize(data, validate_checksum=True)


def test_engine_major_version_mismatch() -> None:
    data = SaveService(engine_version="2.0.0", clock=FakeClock()).serialize(EngineState("start")).to_dict()
    with pytest.raises(IncompatibleVersionError):
        SaveService().deserialize(data)
    loaded = SaveService().deserialize(data, skip_compatibility_check=True)
    assert loaded.state.current_node_id == "start"


def test_minor_version_difference_is_compatible() -> None:
    data = SaveService(engine_version="1.0.5").serialize(EngineState("start")).to_dict()
    assert SaveService().deserialize(data, validate_checksum=True).state.current_node_id == "start"


@pytest.mark.parametrize(
    "mutate, message",
    [
        (lambda data: data.pop("checksum"), "missing required fields"),
        (lambda data: data.update(version=99), "Unsupported save version"),
        (lambda data: data.update(engine_version="banana"), "Unrecognized engine_version"),
        (lambda data: data.update(payload=[]), "payload must be a JSON object"),
        (lambda data: data["payload"].update(current_node_id=7), "current_node_id"),
        (lambda data: data["payload"].update(flags=[]), "flags must be an object"),
        (lambda data: data["payload"].update(history="start"), "history must be a list"),
        (lambda data: data["payload"].update(current_node_id="ghost"), "unknown node"),
        (lambda data: data["payload"].update(history=["start", "ghost"]), "unknown nodes"),
        (lambda data: data["payload"].update(meta="x"), "meta must be an object"),
    ],
)
def test_malformed_envelopes(mutate, message: str) -> None:
    engine = _engine()
    data = engine.export_envelope().to_dict()
    mutate(data)
    with pytest.raises(SaveLoadError, match=message):
        engine.load_state(data)
    assert engine.get_state() == EngineState("start", {}, ["start"])


def test_migration_hook_runs_first() -> None:
    engine = _engine()
    data = engine.export_envelope().to_dict()
    data["version"] = 0
    data["payload"]["flags"] = {"legacy": True}

    def migrate(raw: dict) -> dict:
        raw["version"] = 1
        return raw

    engine.load_state(data, migrate=migrate)
    assert engine.get_flags() == {"legacy": True}


def test_failing_migration_is_a_load_error() -> None:
    def migrate(raw: dict) -> dict:
        raise KeyError("shape")

    with pytest.raises(SaveLoadError, match="migration failed"):
        _engine().load_state(_engine().export_envelope().to_dict(), migrate=migrate)


def test_envelope_from_dict_rejects_non_mapping() -> None:
    with pytest.raises(SaveLoadError):
        Envelope.from_dict(["not", "a", "dict"])
