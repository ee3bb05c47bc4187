from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol
from urllib import error, request

from app.core.config import DEFAULT_UPLOAD_PART_SIZE_BYTES, get_settings

logger = logging.getLogger(__name__)


class RecordingUploadError(Exception):
    pass


@dataclass
class UploadOutcome:
    ok: bool
    error: str | None = None
    key: str | None = None
    simulation_id: str | None = None


@dataclass
class UploadProgress:
    phase: str
    percent: float


class UploadApi(Protocol):
    def upload_init(self, *, case_id: str, conversation_id: str | None) -> Mapping[str, Any]: ...

    def upload_urls(self, *, upload_id: str, key: str, part_numbers: list[int]) -> Mapping[str, Any]: ...

    def upload_complete(
        self,
        *,
        upload_id: str,
        key: str,
        parts: list[dict[str, Any]],
        case_id: str,
        conversation_id: str | None,
    ) -> Mapping[str, Any]: ...


class HttpUploadApi:
    """Calls the upload-init / upload-urls / upload-complete routes over HTTP."""

    def __init__(self, api_base_url: str, timeout_seconds: float = 30.0) -> None:
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def upload_init(self, *, case_id: str, conversation_id: str | None) -> Mapping[str, Any]:
        return self._post(
            "/simulations/video/upload-init",
            {"caseId": case_id, "conversationId": conversation_id},
        )

    def upload_urls(self, *, upload_id: str, key: str, part_numbers: list[int]) -> Mapping[str, Any]:
        return self._post(
            "/simulations/video/upload-urls",
            {"uploadId": upload_id, "key": key, "partNumbers": part_numbers},
        )

    def upload_complete(
        self,
        *,
        upload_id: str,
        key: str,
        parts: list[dict[str, Any]],
        case_id: str,
        conversation_id: str | None,
    ) -> Mapping[str, Any]:
        return self._post(
            "/simulations/video/upload-complete",
            {
                "uploadId": upload_id,
                "key": key,
                "parts": [
                    {"partNumber": part["part_number"], "etag": part["etag"]} for part in parts
                ],
                "caseId": case_id,
                "conversationId": conversation_id,
            },
        )

    def _post(self, path: str, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        req = request.Request(
            f"{self.api_base_url}{path}",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                body = response.read()
        except error.HTTPError as exc:
            body = exc.read()
        except error.URLError as exc:
            raise RecordingUploadError(f"Upload API connection error: {exc.reason}") from exc
        except TimeoutError as exc:
            raise RecordingUploadError("Upload API request timed out.") from exc

        try:
            parsed = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise RecordingUploadError("Upload API returned invalid JSON.") from exc
        if not isinstance(parsed, dict):
            raise RecordingUploadError("Upload API response is not a JSON object.")
        return parsed


def split_into_parts(data: bytes, part_size: int = DEFAULT_UPLOAD_PART_SIZE_BYTES) -> list[bytes]:
    if part_size <= 0:
        raise ValueError("part_size must be positive")
    return [data[offset : offset + part_size] for offset in range(0, len(data), part_size)]


class RecordingUploader:
    """Pushes a recording to object storage in fixed-size parts via presigned URLs.

    Parts go up one at a time so only a single chunk is in flight. Any failed
    ``PUT`` or missing ``ETag`` stops the upload; nothing is completed with a
    partial part list.
    """

    def __init__(
        self,
        api: UploadApi,
        part_size: int | None = None,
        put_timeout_seconds: float = 120.0,
    ) -> None:
        self.api = api
        self.part_size = part_size or get_settings().upload_part_size_bytes
        self.put_timeout_seconds = put_timeout_seconds

    def upload(
        self,
        data: bytes,
        *,
        case_id: str,
        conversation_id: str | None = None,
        on_progress: Callable[[UploadProgress], None] | None = None,
    ) -> UploadOutcome:
        if not case_id:
            return UploadOutcome(ok=False, error="caseId required")
        if not data:
            return UploadOutcome(ok=False, error="Recording is empty")

        chunks = split_into_parts(data, self.part_size)
        part_numbers = list(range(1, len(chunks) + 1))

        try:
            init_data = self.api.upload_init(case_id=case_id, conversation_id=conversation_id)
            if not init_data.get("ok"):
                return UploadOutcome(ok=False, error=_error_text(init_data, "Upload init failed"))
            if not init_data.get("uploadId") or not init_data.get("key"):
                return UploadOutcome(ok=False, error="Upload init response missing uploadId or key")
            upload_id = str(init_data["uploadId"])
            key = str(init_data["key"])

            urls_data = self.api.upload_urls(upload_id=upload_id, key=key, part_numbers=part_numbers)
            if not urls_data.get("ok"):
                return UploadOutcome(
                    ok=False,
                    error=_error_text(urls_data, "Failed to get upload URLs"),
                    key=key,
                )
            urls = _parse_part_urls(urls_data.get("urls"))
            if urls is None:
                return UploadOutcome(ok=False, error="Upload URLs response is malformed", key=key)

            completed_parts: list[dict[str, Any]] = []
            for part_number, chunk in zip(part_numbers, chunks):
                url = urls.get(part_number)
                if not url:
                    return UploadOutcome(ok=False, error=f"No URL for part {part_number}", key=key)
                etag = self._put_part(part_number, url, chunk)
                completed_parts.append({"part_number": part_number, "etag": etag})
                if on_progress:
                    on_progress(UploadProgress("upload", part_number / len(chunks) * 100))

            if on_progress:
                on_progress(UploadProgress("analyzing", 100.0))

            complete_data = self.api.upload_complete(
                upload_id=upload_id,
                key=key,
                parts=completed_parts,
                case_id=case_id,
                conversation_id=conversation_id,
            )
        except RecordingUploadError as exc:
            logger.warning("Recording upload failed case_id=%s error=%s", case_id, exc)
            return UploadOutcome(ok=False, error=str(exc))

        if not complete_data.get("ok"):
            return UploadOutcome(
                ok=False,
                error=_error_text(complete_data, "Upload complete failed"),
                key=key,
            )
        simulation_id = complete_data.get("simulationId")
        return UploadOutcome(
            ok=True,
            key=key,
            simulation_id=str(simulation_id) if simulation_id else None,
        )

    def _put_part(self, part_number: int, url: str, chunk: bytes) -> str:
        req = request.Request(url, data=chunk, method="PUT")
        try:
            with request.urlopen(req, timeout=self.put_timeout_seconds) as response:
                etag = response.headers.get("ETag")
        except error.HTTPError as exc:
            raise RecordingUploadError(f"Part {part_number} upload failed: {exc.code}") from exc
        except error.URLError as exc:
            raise RecordingUploadError(f"Part {part_number} upload failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise RecordingUploadError(f"Part {part_number} upload timed out") from exc

        if not etag:
            raise RecordingUploadError(f"Part {part_number} missing ETag")
        return etag


def _error_text(payload: Mapping[str, Any], fallback: str) -> str:
    message = payload.get("error") or payload.get("detail")
    return str(message) if message else fallback


def _parse_part_urls(raw_urls: Any) -> dict[int, str] | None:
    if not isinstance(raw_urls, Mapping):
        return None
    try:
        return {int(number): str(url) for number, url in raw_urls.items()}
    except (TypeError, ValueError):
        return None
