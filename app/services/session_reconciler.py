from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from app.core.config import Settings
from app.schemas.simulation import WebhookAckResponse
from app.services.case_store import CaseStore, ScorePromptStore
from app.services.errors import (
    BadRequest,
    NotFound,
    ProviderError,
    SimulationServiceError,
    Unauthorized,
)
from app.services.openai_scoring_client import OpenAIScoringClient, ScoreResult
from app.services.simulation_store import SimulationStore
from app.services.webhook_signature import verify_signature

logger = logging.getLogger(__name__)

DYNAMIC_VARIABLE_PATHS = (
    ("dynamic_variables",),
    ("conversation_initiation_client_data", "dynamic_variables"),
    ("metadata", "dynamic_variables"),
)
VALID_STAGES = range(1, 5)


class SessionReconciler:
    """Merges a verified "conversation ended" webhook into its simulation record."""

    def __init__(
        self,
        settings: Settings,
        simulation_store: SimulationStore,
        case_store: CaseStore,
        prompt_store: ScorePromptStore | None = None,
        scoring_client: OpenAIScoringClient | None = None,
    ) -> None:
        self.settings = settings
        self.simulation_store = simulation_store
        self.case_store = case_store
        self.prompt_store = prompt_store
        self.scoring_client = scoring_client or OpenAIScoringClient(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout_seconds=settings.openai_api_timeout_seconds,
            api_base_url=settings.openai_api_url,
        )

    def handle_event(
        self,
        raw_body: bytes,
        signature_header: str | None,
        log: logging.Logger | logging.LoggerAdapter = logger,
    ) -> WebhookAckResponse:
        if not signature_header:
            raise Unauthorized("Missing ElevenLabs-Signature header.")
        if not verify_signature(
            raw_body,
            signature_header,
            self.settings.elevenlabs_webhook_secret,
            max_skew_seconds=self.settings.webhook_max_skew_seconds,
        ):
            raise Unauthorized("Invalid signature.")

        event = self._parse_event(raw_body)
        event_type = _to_text(event.get("type"))
        data = event.get("data")
        if not isinstance(data, Mapping):
            raise BadRequest("Missing data object.")

        dynamic_variables = extract_dynamic_variables(data)
        case_id = _to_text(dynamic_variables.get("case_id")) if dynamic_variables else None
        if not case_id:
            raise BadRequest("Missing/invalid case_id.")

        case = self._get_case(case_id)
        conversation_id = _to_text(data.get("conversation_id"))
        simulation, created = self._resolve_simulation(case_id, conversation_id)
        simulation_id = str(simulation["_id"])
        log.info(
            "Simulation resolved case_id=%s conversation_id=%s simulation_id=%s created=%s",
            case_id,
            conversation_id,
            simulation_id,
            created,
        )

        transcript = data.get("transcript")
        updates = self._extract_fields(
            event_type=event_type,
            data=data,
            dynamic_variables=dynamic_variables or {},
        )
        if isinstance(transcript, list) and transcript:
            updates["transcript"] = transcript
            updates.update(self._score_transcript(transcript, case, log))

        try:
            self.simulation_store.update(simulation_id, updates)
        except Exception as exc:
            raise ProviderError("Unable to persist simulation.") from exc

        try:
            self.case_store.touch_last_activity(case_id)
        except Exception:
            log.exception("Case activity update failed case_id=%s", case_id)

        log.info(
            "Webhook processed case_id=%s simulation_id=%s score=%s turn_scores=%s",
            case_id,
            simulation_id,
            updates.get("score"),
            len(updates.get("turn_scores") or []),
        )
        return WebhookAckResponse(
            case_id=case_id,
            event_type=event_type,
            conversation_id=conversation_id,
            simulation_id=simulation_id,
        )

    def _parse_event(self, raw_body: bytes) -> Mapping[str, Any]:
        try:
            event = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise BadRequest("Invalid JSON.") from exc
        if not isinstance(event, Mapping):
            raise BadRequest("Request body must be a JSON object.")
        return event

    def _get_case(self, case_id: str) -> Mapping[str, Any]:
        try:
            case = self.case_store.get_case(case_id)
        except Exception as exc:
            raise ProviderError("Unable to query case storage.") from exc
        if not case:
            raise NotFound(f"Case not found: {case_id}")
        return case

    def _resolve_simulation(
        self,
        case_id: str,
        conversation_id: str | None,
    ) -> tuple[dict[str, Any], bool]:
        created_after = datetime.now(UTC) - timedelta(seconds=self.settings.stub_match_window_seconds)
        try:
            return self.simulation_store.find_or_create(
                case_id=case_id,
                conversation_id=conversation_id,
                created_after=created_after,
            )
        except Exception as exc:
            raise ProviderError("Unable to resolve simulation record.") from exc

    def _score_transcript(
        self,
        transcript: list[Any],
        case: Mapping[str, Any],
        log: logging.Logger | logging.LoggerAdapter,
    ) -> dict[str, Any]:
        custom_instructions = self._get_score_prompt(case, log)
        try:
            result = self.scoring_client.score(transcript, custom_instructions)
        except SimulationServiceError as exc:
            log.warning("Transcript scoring failed; storing zero score error=%s", exc.message)
            return _failed_score_updates(exc.message)
        except Exception as exc:
            log.exception("Transcript scoring crashed; storing zero score")
            return _failed_score_updates(f"Unexpected scoring failure: {exc!r}")
        return _score_updates(result)

    def _get_score_prompt(
        self,
        case: Mapping[str, Any],
        log: logging.Logger | logging.LoggerAdapter,
    ) -> str | None:
        if self.prompt_store is None:
            return None
        organization_id = _to_text(case.get("organization_id"))
        try:
            return self.prompt_store.get_active_score_prompt(organization_id)
        except Exception:
            log.exception("Score prompt lookup failed organization_id=%s", organization_id)
            return None

    def _extract_fields(
        self,
        *,
        event_type: str | None,
        data: Mapping[str, Any],
        dynamic_variables: Mapping[str, Any],
    ) -> dict[str, Any]:
        metadata = data.get("metadata") if isinstance(data.get("metadata"), Mapping) else {}
        analysis = data.get("analysis") if isinstance(data.get("analysis"), Mapping) else {}
        fields: dict[str, Any] = {
            "event_type": event_type,
            "agent_id": _to_text(data.get("agent_id")),
            "status": _to_text(data.get("status")),
            "stage": parse_stage(dynamic_variables.get("stage")),
            "call_duration_secs": _to_int(metadata.get("call_duration_secs")),
            "transcript_summary": _to_text(analysis.get("transcript_summary")),
            "call_summary_title": _to_text(analysis.get("call_summary_title")),
            "client_id": _to_text(dynamic_variables.get("client_id")),
        }
        return {key: value for key, value in fields.items() if value is not None}


def extract_dynamic_variables(data: Mapping[str, Any]) -> Mapping[str, Any] | None:
    for path in DYNAMIC_VARIABLE_PATHS:
        value: Any = data
        for segment in path:
            if not isinstance(value, Mapping):
                value = None
                break
            value = value.get(segment)
        if isinstance(value, Mapping):
            return value
    return None


def parse_stage(value: Any) -> int | None:
    stage = _to_int(value)
    if stage is None or stage not in VALID_STAGES:
        return None
    return stage


def _score_updates(result: ScoreResult) -> dict[str, Any]:
    updates = result.to_dict()
    updates["scoring_error"] = None
    return updates


def _failed_score_updates(message: str) -> dict[str, Any]:
    return {
        "score": 0,
        "score_reason": "",
        "full_analysis": None,
        "turn_scores": [],
        "scoring_error": message,
    }


def _to_text(value: Any) -> str | None:
    if value is None or isinstance(value, Mapping | list):
        return None
    text = str(value).strip()
    return text or None


def _to_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        try:
            return int(cleaned)
        except ValueError:
            return None
    return None
