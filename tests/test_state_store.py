from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import TEST_SETTINGS, make_submission
from intake_graph.canonical import from_canonical_json, to_canonical_json
from intake_graph.models import CreditRecord, EdgeLabel, RunStatus, SessionContext, StageId, Transition
from intake_graph.state_store import (
    CreditsExhaustedError,
    FileKeyValueStore,
    InMemoryKeyValueStore,
    IntakeStateStore,
    StateStoreError,
    credits_remaining,
)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _context() -> SessionContext:
    return SessionContext(submission=make_submission(), plain_text="Project Brief: Sunrise Bakery")


@pytest.fixture(params=["file", "memory"])
def backend(request: pytest.FixtureRequest, tmp_path: Path):
    clock = FakeClock()
    if request.param == "file":
        return FileKeyValueStore(tmp_path / "state", clock=clock), clock
    return InMemoryKeyValueStore(clock=clock), clock


def test_get_missing_key_returns_none(backend) -> None:
    kv, _ = backend

    assert kv.get("session:nope") is None


def test_values_round_trip_and_expire(backend) -> None:
    kv, clock = backend
    kv.set("session:abc", {"status": "running", "count": 2}, ttl_seconds=60)
    kv.set("credits:someone", {"total": 3})

    assert kv.get("session:abc") == {"status": "running", "count": 2}

    clock.now += 59
    assert kv.get("session:abc") is not None

    clock.now += 1
    assert kv.get("session:abc") is None
    assert kv.get("credits:someone") == {"total": 3}


def test_non_positive_ttl_is_rejected(backend) -> None:
    kv, _ = backend

    with pytest.raises(ValueError, match="ttl_seconds must be positive"):
        kv.set("session:abc", {}, ttl_seconds=0)


def test_file_store_quotes_identifiers(tmp_path: Path) -> None:
    kv = FileKeyValueStore(tmp_path)

    path = kv.path_for("credits:maria@sunrisebakery.com/../x")

    assert path.parent == tmp_path / "credits"
    assert path.name == "maria%40sunrisebakery.com%2F..%2Fx.json"


@pytest.mark.parametrize("key", ["no-namespace", ":id", "session:"])
def test_file_store_rejects_malformed_keys(tmp_path: Path, key: str) -> None:
    with pytest.raises(ValueError, match="namespace:id"):
        FileKeyValueStore(tmp_path).path_for(key)


def test_file_store_writes_canonical_envelope(tmp_path: Path) -> None:
    kv = FileKeyValueStore(tmp_path, clock=FakeClock(100.0))
    kv.set("session:abc", {"b": 1, "a": [True, None]}, ttl_seconds=50)

    text = kv.path_for("session:abc").read_text(encoding="utf-8")

    assert text == '{"expires_at":150,"value":{"a":[true,null],"b":1}}'


def test_file_store_removes_expired_records(tmp_path: Path) -> None:
    clock = FakeClock()
    kv = FileKeyValueStore(tmp_path, clock=clock)
    kv.set("session:abc", {"x": 1}, ttl_seconds=10)
    clock.now += 10

    assert kv.get("session:abc") is None
    assert not kv.path_for("session:abc").exists()


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        '{"expires_at": null}',
        "[1, 2]",
        '{"expires_at": "soon", "value": 1}',
        '{"expires_at": [], "value": 1}',
    ],
)
def test_file_store_corrupt_record_raises(tmp_path: Path, content: str) -> None:
    kv = FileKeyValueStore(tmp_path)
    path = kv.path_for("session:abc")
    path.parent.mkdir(parents=True)
    path.write_text(content, encoding="utf-8")

    with pytest.raises(StateStoreError, match="session:abc"):
        kv.get("session:abc")


def test_in_memory_store_isolates_stored_values() -> None:
    kv = InMemoryKeyValueStore()
    value = {"items": [1]}
    kv.set("session:abc", value)
    value["items"].append(2)

    loaded = kv.get("session:abc")
    loaded["items"].append(3)

    assert kv.get("session:abc") == {"items": [1]}
    assert kv.keys() == ["session:abc"]


def test_canonical_json_sorts_keys_and_serializes_models() -> None:
    transition = Transition(
        from_stage=StageId.ASSESS,
        to_stage=StageId.GENERATE,
        edge=EdgeLabel.PROCEED,
        timestamp="2026-01-01T00:00:00+00:00",
        duration_ms=5,
    )

    text = to_canonical_json({"z": EdgeLabel.DONE, "a": transition})

    assert text.startswith('{"a":{"durationMs":5,"edge":"proceed","from":"assess"')
    assert text.endswith('"z":"done"}')
    assert from_canonical_json(text)["a"]["to"] == "generate"


def test_canonical_json_rejects_unknown_types() -> None:
    with pytest.raises(TypeError):
        to_canonical_json({"when": object()})


def test_session_round_trip_uses_camel_case(tmp_path: Path) -> None:
    store = IntakeStateStore(FileKeyValueStore(tmp_path), TEST_SETTINGS)
    state = store.create_session("s1", _context())
    store.save_session(state)

    raw = json.loads(store.kv.path_for("session:s1").read_text(encoding="utf-8"))["value"]
    loaded = store.load_session("s1")

    assert raw["sessionId"] == "s1"
    assert raw["currentStage"] == "assess"
    assert raw["context"]["plainText"] == "Project Brief: Sunrise Bakery"
    assert loaded is not None
    assert loaded.status is RunStatus.RUNNING
    assert loaded.context.submission.business.business_name == "Sunrise Bakery"


def test_create_session_does_not_write(store: IntakeStateStore) -> None:
    store.create_session("s1", _context())

    assert store.load_session("s1") is None


def test_sessions_expire_after_ttl() -> None:
    clock = FakeClock()
    store = IntakeStateStore(InMemoryKeyValueStore(clock=clock), TEST_SETTINGS)
    store.save_session(store.create_session("s1", _context()))

    clock.now += TEST_SETTINGS.session_ttl_seconds

    assert store.load_session("s1") is None


def test_invalid_session_payload_raises(store: IntakeStateStore, kv: InMemoryKeyValueStore) -> None:
    kv.set("session:bad", {"sessionId": "bad", "currentStage": "nowhere"})

    with pytest.raises(StateStoreError, match="failed validation"):
        store.load_session("bad")


def test_first_credit_lookup_grants_included_credits(store: IntakeStateStore) -> None:
    record = store.get_or_create_credits("Maria@SunriseBakery.com ")

    assert record.email == "maria@sunrisebakery.com"
    assert record.total == 3
    assert record.used == 0
    assert credits_remaining(record) == 3
    assert store.get_or_create_credits("maria@sunrisebakery.com").created_at == record.created_at


def test_credit_identity_is_case_insensitive(store: IntakeStateStore) -> None:
    store.deduct_credit("maria@sunrisebakery.com")
    store.deduct_credit("MARIA@sunrisebakery.com")

    record = store.load_credits("  maria@SUNRISEBAKERY.com")

    assert record is not None
    assert record.used == 2


def test_deduct_until_exhausted(store: IntakeStateStore) -> None:
    for expected in (2, 1, 0):
        assert credits_remaining(store.deduct_credit("maria@sunrisebakery.com")) == expected

    with pytest.raises(CreditsExhaustedError, match="No credits remaining"):
        store.deduct_credit("maria@sunrisebakery.com")
    assert store.load_credits("maria@sunrisebakery.com").used == 3


def test_credit_records_never_expire() -> None:
    clock = FakeClock()
    store = IntakeStateStore(InMemoryKeyValueStore(clock=clock), TEST_SETTINGS)
    store.deduct_credit("maria@sunrisebakery.com")

    clock.now += 10 * TEST_SETTINGS.session_ttl_seconds

    assert store.load_credits("maria@sunrisebakery.com").used == 1


def test_credits_remaining_never_negative() -> None:
    assert credits_remaining(CreditRecord(email="x@example.com", total=1, used=4)) == 0
