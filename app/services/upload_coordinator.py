from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from app.core.config import Settings
from app.services.case_store import CaseStore
from app.services.errors import BadRequest, NotFound, ProviderError
from app.services.object_storage_client import S3ObjectStorageClient
from app.services.simulation_store import SimulationStore

logger = logging.getLogger(__name__)

MAX_PART_NUMBER = 10_000
RECORDING_CONTENT_TYPE = "video/webm"


@dataclass
class UploadInit:
    upload_id: str
    key: str


@dataclass
class UploadCompletion:
    key: str
    simulation_id: str
    created_stub: bool


def generate_recording_key(case_id: str, conversation_id: str | None, extension: str = "webm") -> str:
    scope = conversation_id or f"case-{int(time.time() * 1000)}"
    return f"recordings/{case_id}/{scope}/{uuid4()}.{extension}"


class UploadCoordinator:
    def __init__(
        self,
        settings: Settings,
        storage: S3ObjectStorageClient,
        simulation_store: SimulationStore,
        case_store: CaseStore,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.simulation_store = simulation_store
        self.case_store = case_store

    def initiate(
        self,
        case_id: str,
        conversation_id: str | None = None,
        log: logging.Logger | logging.LoggerAdapter = logger,
    ) -> UploadInit:
        self._require_case(case_id)
        key = generate_recording_key(case_id, conversation_id)
        upload_id = self.storage.create_multipart_upload(key, content_type=RECORDING_CONTENT_TYPE)
        log.info("Multipart upload started case_id=%s key=%s", case_id, key)
        return UploadInit(upload_id=upload_id, key=key)

    def get_part_urls(
        self,
        upload_id: str,
        key: str,
        part_numbers: Sequence[int],
    ) -> dict[int, str]:
        if not upload_id or not key:
            raise BadRequest("uploadId and key are required.")
        if not part_numbers:
            raise BadRequest("partNumbers must not be empty.")
        for part_number in part_numbers:
            if isinstance(part_number, bool) or not isinstance(part_number, int):
                raise BadRequest("partNumbers must be integers.")
            if not 1 <= part_number <= MAX_PART_NUMBER:
                raise BadRequest(f"Part number {part_number} is out of range.")

        return {
            part_number: self.storage.presign_upload_part(
                key,
                upload_id,
                part_number,
                expires_in=self.settings.presigned_url_ttl_seconds,
            )
            for part_number in sorted(set(part_numbers))
        }

    def complete(
        self,
        upload_id: str,
        key: str,
        parts: Sequence[Mapping[str, Any]],
        case_id: str,
        conversation_id: str | None = None,
        log: logging.Logger | logging.LoggerAdapter = logger,
    ) -> UploadCompletion:
        normalized_parts = self._validate_parts(parts)
        if not upload_id or not key:
            raise BadRequest("uploadId and key are required.")
        self._require_case(case_id)

        self.storage.complete_multipart_upload(key, upload_id, normalized_parts)
        log.info("Multipart upload completed key=%s parts=%s", key, len(normalized_parts))

        created_after = datetime.now(UTC) - timedelta(seconds=self.settings.stub_match_window_seconds)
        try:
            simulation, created = self.simulation_store.find_or_create(
                case_id=case_id,
                conversation_id=conversation_id,
                created_after=created_after,
                require_unanalyzed=False,
                defaults={"status": "completed"},
            )
            simulation_id = str(simulation["_id"])
            self.simulation_store.update(simulation_id, {"recording_key": key})
        except Exception as exc:
            raise ProviderError("Unable to attach the recording to a simulation.") from exc

        log.info(
            "Recording attached simulation_id=%s key=%s created_stub=%s",
            simulation_id,
            key,
            created,
        )
        return UploadCompletion(key=key, simulation_id=simulation_id, created_stub=created)

    def abort(self, upload_id: str, key: str) -> None:
        if not upload_id or not key:
            raise BadRequest("uploadId and key are required.")
        self.storage.abort_multipart_upload(key, upload_id)

    def get_view_url(self, key: str, expires_in: int | None = None) -> str:
        return self.storage.presign_get_object(
            key,
            expires_in=expires_in or self.settings.presigned_url_ttl_seconds,
        )

    def get_recording_url(self, simulation_id: str) -> str:
        try:
            simulation = self.simulation_store.get_by_id(simulation_id)
        except Exception as exc:
            raise ProviderError("Unable to query simulation storage.") from exc
        if not simulation:
            raise NotFound("Simulation not found.")
        recording_key = simulation.get("recording_key")
        if not recording_key:
            raise NotFound("No recording for this simulation.")
        return self.get_view_url(str(recording_key))

    def _validate_parts(self, parts: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        if not parts:
            raise BadRequest("parts must not be empty.")

        normalized: list[dict[str, Any]] = []
        seen: set[int] = set()
        for part in parts:
            part_number = part.get("part_number")
            etag = part.get("etag")
            if isinstance(part_number, bool) or not isinstance(part_number, int) or part_number < 1:
                raise BadRequest("Every part needs a positive partNumber.")
            if not isinstance(etag, str) or not etag.strip():
                raise BadRequest(f"Part {part_number} is missing its ETag.")
            if part_number in seen:
                raise BadRequest(f"Part {part_number} was reported more than once.")
            seen.add(part_number)
            normalized.append({"part_number": part_number, "etag": etag.strip()})
        normalized.sort(key=lambda item: item["part_number"])
        return normalized

    def _require_case(self, case_id: str) -> dict[str, Any]:
        if not case_id:
            raise BadRequest("caseId is required.")
        try:
            case = self.case_store.get_case(case_id)
        except Exception as exc:
            raise ProviderError("Unable to query case storage.") from exc
        if not case:
            raise NotFound("Case not found.")
        return case
