import json
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from app.core.config import Settings
from app.services.case_store import InMemoryCaseStore, InMemoryScorePromptStore
from app.services.errors import BadRequest, NotFound, ProviderError, Unauthorized
from app.services.openai_scoring_client import ScoreResult
from app.services.session_reconciler import SessionReconciler, extract_dynamic_variables, parse_stage
from app.services.simulation_store import InMemorySimulationStore
from app.services.webhook_signature import build_signature_header

SECRET = "whsec_unit"


class FakeScoringClient:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[Sequence[Mapping[str, Any]], str | None]] = []

    def score(self, transcript: Sequence[Mapping[str, Any]], custom_instructions: str | None = None) -> ScoreResult:
        self.calls.append((transcript, custom_instructions))
        if self.error:
            raise self.error
        return ScoreResult(score=71, score_reason="Solid.", full_analysis="Analysis.", turn_scores=[{"score": 71}])


@pytest.fixture
def simulation_store() -> InMemorySimulationStore:
    return InMemorySimulationStore()


@pytest.fixture
def case_store() -> InMemoryCaseStore:
    store = InMemoryCaseStore()
    store.create_case(case_id="case-1", organization_id="org-1", client_id="client-1")
    return store


def _reconciler(
    simulation_store: InMemorySimulationStore,
    case_store: InMemoryCaseStore,
    scoring_client: FakeScoringClient,
    prompt_store: InMemoryScorePromptStore | None = None,
) -> SessionReconciler:
    settings = Settings(elevenlabs_webhook_secret=SECRET, simulations_store="memory")
    return SessionReconciler(
        settings,
        simulation_store=simulation_store,
        case_store=case_store,
        prompt_store=prompt_store,
        scoring_client=scoring_client,
    )


def _signed(payload: Mapping[str, Any]) -> tuple[bytes, str]:
    body = json.dumps(payload).encode("utf-8")
    return body, build_signature_header(body, SECRET)


def _payload(**data: Any) -> dict[str, Any]:
    base: dict[str, Any] = {
        "conversation_id": "conv-1",
        "dynamic_variables": {"case_id": "case-1", "stage": "3"},
        "transcript": [{"role": "agent", "message": "Q"}, {"role": "user", "message": "A"}],
    }
    base.update(data)
    return {"type": "post_call_transcription", "data": base}


def test_handle_event_rejects_unsigned_and_tampered_bodies(
    simulation_store: InMemorySimulationStore,
    case_store: InMemoryCaseStore,
) -> None:
    reconciler = _reconciler(simulation_store, case_store, FakeScoringClient())
    body, header = _signed(_payload())

    with pytest.raises(Unauthorized, match="Missing"):
        reconciler.handle_event(body, None)
    with pytest.raises(Unauthorized, match="Invalid signature"):
        reconciler.handle_event(body + b" ", header)


def test_handle_event_requires_data_object(
    simulation_store: InMemorySimulationStore,
    case_store: InMemoryCaseStore,
) -> None:
    reconciler = _reconciler(simulation_store, case_store, FakeScoringClient())
    body, header = _signed({"type": "post_call_transcription"})

    with pytest.raises(BadRequest):
        reconciler.handle_event(body, header)


def test_handle_event_rejects_unknown_case(
    simulation_store: InMemorySimulationStore,
    case_store: InMemoryCaseStore,
) -> None:
    reconciler = _reconciler(simulation_store, case_store, FakeScoringClient())
    body, header = _signed(_payload(dynamic_variables={"case_id": "case-404"}))

    with pytest.raises(NotFound):
        reconciler.handle_event(body, header)
    assert simulation_store.list_by_case("case-404", limit=10) == []


def test_handle_event_uses_organization_prompt(
    simulation_store: InMemorySimulationStore,
    case_store: InMemoryCaseStore,
) -> None:
    prompt_store = InMemoryScorePromptStore()
    prompt_store.save_score_prompt(None, "Global rubric.")
    scoring_client = FakeScoringClient()
    reconciler = _reconciler(simulation_store, case_store, scoring_client, prompt_store)
    body, header = _signed(_payload())

    ack = reconciler.handle_event(body, header)

    assert scoring_client.calls[0][1] == "Global rubric."
    record = simulation_store.get_by_id(ack.simulation_id)
    assert record["score"] == 71
    assert record["stage"] == 3
    assert record["scoring_error"] is None


def test_handle_event_records_scoring_error(
    simulation_store: InMemorySimulationStore,
    case_store: InMemoryCaseStore,
) -> None:
    reconciler = _reconciler(simulation_store, case_store, FakeScoringClient(ProviderError("OpenAI API HTTP 500: boom")))
    body, header = _signed(_payload())

    ack = reconciler.handle_event(body, header)

    record = simulation_store.get_by_id(ack.simulation_id)
    assert record["score"] == 0
    assert record["scoring_error"] == "OpenAI API HTTP 500: boom"


def test_handle_event_does_not_claim_stub_outside_window(
    simulation_store: InMemorySimulationStore,
    case_store: InMemoryCaseStore,
) -> None:
    stale, _ = simulation_store.find_or_create(
        case_id="case-1",
        conversation_id=None,
        created_after=datetime.now(UTC),
    )
    simulation_store._records[0]["created_at"] = datetime.now(UTC) - timedelta(minutes=10)
    reconciler = _reconciler(simulation_store, case_store, FakeScoringClient())
    body, header = _signed(_payload())

    ack = reconciler.handle_event(body, header)

    assert ack.simulation_id != stale["_id"]
    assert len(simulation_store.list_by_case("case-1", limit=10)) == 2


def test_handle_event_surfaces_store_failure(
    simulation_store: InMemorySimulationStore,
    case_store: InMemoryCaseStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def failing_update(simulation_id: str, updates: Mapping[str, Any]) -> None:
        raise RuntimeError("store down")

    monkeypatch.setattr(simulation_store, "update", failing_update)
    reconciler = _reconciler(simulation_store, case_store, FakeScoringClient())
    body, header = _signed(_payload())

    with pytest.raises(ProviderError):
        reconciler.handle_event(body, header)


def test_extract_dynamic_variables_checks_known_locations_in_order() -> None:
    assert extract_dynamic_variables({"dynamic_variables": {"case_id": "a"}}) == {"case_id": "a"}
    assert extract_dynamic_variables(
        {"conversation_initiation_client_data": {"dynamic_variables": {"case_id": "b"}}},
    ) == {"case_id": "b"}
    assert extract_dynamic_variables({"metadata": {"dynamic_variables": {"case_id": "c"}}}) == {"case_id": "c"}
    assert extract_dynamic_variables({"metadata": "oops"}) is None


@pytest.mark.parametrize(
    ("raw_stage", "expected"),
    [(1, 1), ("4", 4), (2.0, 2), (0, None), (5, None), ("two", None), (None, None), (True, None)],
)
def test_parse_stage_accepts_only_known_stages(raw_stage: object, expected: int | None) -> None:
    assert parse_stage(raw_stage) == expected


def test_handle_event_keeps_record_when_scoring_crashes(
    simulation_store: InMemorySimulationStore,
    case_store: InMemoryCaseStore,
) -> None:
    reconciler = _reconciler(simulation_store, case_store, FakeScoringClient(RuntimeError("socket gone")))
    body, header = _signed(_payload())

    ack = reconciler.handle_event(body, header)

    record = simulation_store.get_by_id(ack.simulation_id)
    assert record["score"] == 0
    assert len(record["transcript"]) == 2
    assert "socket gone" in record["scoring_error"]
