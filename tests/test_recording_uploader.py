import io
import json
from collections.abc import Mapping
from typing import Any
from urllib import error

import pytest

from app.core.config import get_settings
from app.services.recording_uploader import (
    HttpUploadApi,
    RecordingUploadError,
    RecordingUploader,
    UploadProgress,
    split_into_parts,
)


class FakeUploadApi:
    def __init__(self, complete_payload: Mapping[str, Any] | None = None) -> None:
        self.completed_parts: list[dict[str, Any]] | None = None
        self.requested_parts: list[int] = []
        self._complete_payload = complete_payload or {"ok": True, "simulationId": "sim-1"}

    def upload_init(self, *, case_id: str, conversation_id: str | None) -> Mapping[str, Any]:
        return {"ok": True, "uploadId": "upload-1", "key": f"recordings/{case_id}/x.webm"}

    def upload_urls(self, *, upload_id: str, key: str, part_numbers: list[int]) -> Mapping[str, Any]:
        self.requested_parts = list(part_numbers)
        return {"ok": True, "urls": {str(number): f"https://s3.test/part/{number}" for number in part_numbers}}

    def upload_complete(
        self,
        *,
        upload_id: str,
        key: str,
        parts: list[dict[str, Any]],
        case_id: str,
        conversation_id: str | None,
    ) -> Mapping[str, Any]:
        self.completed_parts = parts
        return self._complete_payload


class _FakePutResponse:
    def __init__(self, etag: str | None) -> None:
        self.headers = {"ETag": etag} if etag else {}

    def __enter__(self) -> "_FakePutResponse":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> bool:
        return False


def _install_fake_put(monkeypatch: pytest.MonkeyPatch, outcomes: list[object]) -> list[bytes]:
    bodies: list[bytes] = []

    def fake_urlopen(req: Any, **kwargs: object) -> _FakePutResponse:
        bodies.append(req.data)
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr("app.services.recording_uploader.request.urlopen", fake_urlopen)
    return bodies


def test_split_into_parts_keeps_remainder() -> None:
    assert split_into_parts(b"abcdefg", 3) == [b"abc", b"def", b"g"]
    assert split_into_parts(b"", 3) == []


def test_upload_sends_parts_sequentially_and_completes(monkeypatch: pytest.MonkeyPatch) -> None:
    api = FakeUploadApi()
    bodies = _install_fake_put(
        monkeypatch,
        [_FakePutResponse('"e1"'), _FakePutResponse('"e2"'), _FakePutResponse('"e3"')],
    )
    progress: list[UploadProgress] = []

    outcome = RecordingUploader(api, part_size=4).upload(
        b"0123456789",
        case_id="case-1",
        conversation_id="conv-1",
        on_progress=progress.append,
    )

    assert outcome.ok is True
    assert outcome.simulation_id == "sim-1"
    assert outcome.key == "recordings/case-1/x.webm"
    assert bodies == [b"0123", b"4567", b"89"]
    assert api.requested_parts == [1, 2, 3]
    assert api.completed_parts == [
        {"part_number": 1, "etag": '"e1"'},
        {"part_number": 2, "etag": '"e2"'},
        {"part_number": 3, "etag": '"e3"'},
    ]
    assert progress[-1] == UploadProgress("analyzing", 100.0)


def test_upload_fails_when_part_has_no_etag(monkeypatch: pytest.MonkeyPatch) -> None:
    api = FakeUploadApi()
    _install_fake_put(monkeypatch, [_FakePutResponse('"e1"'), _FakePutResponse(None)])

    outcome = RecordingUploader(api, part_size=4).upload(b"01234567", case_id="case-1")

    assert outcome.ok is False
    assert outcome.error == "Part 2 missing ETag"
    assert api.completed_parts is None


def test_upload_fails_when_part_put_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    api = FakeUploadApi()
    forbidden = error.HTTPError("https://s3.test/part/1", 403, "Forbidden", hdrs=None, fp=io.BytesIO(b""))
    _install_fake_put(monkeypatch, [forbidden])

    outcome = RecordingUploader(api, part_size=4).upload(b"0123", case_id="case-1")

    assert outcome.ok is False
    assert outcome.error == "Part 1 upload failed: 403"
    assert api.completed_parts is None


def test_upload_surfaces_complete_error(monkeypatch: pytest.MonkeyPatch) -> None:
    api = FakeUploadApi(complete_payload={"ok": False, "error": "Case not found."})
    _install_fake_put(monkeypatch, [_FakePutResponse('"e1"')])

    outcome = RecordingUploader(api, part_size=4).upload(b"0123", case_id="case-1")

    assert outcome.ok is False
    assert outcome.error == "Case not found."


def test_upload_requires_case_and_data() -> None:
    uploader = RecordingUploader(FakeUploadApi())

    assert uploader.upload(b"data", case_id="").error == "caseId required"
    assert uploader.upload(b"", case_id="case-1").error == "Recording is empty"


class _StaticUploadApi(FakeUploadApi):
    def __init__(self, init_payload: Mapping[str, Any], urls_payload: Mapping[str, Any] | None = None) -> None:
        super().__init__()
        self._init_payload = init_payload
        self._urls_payload = urls_payload

    def upload_init(self, *, case_id: str, conversation_id: str | None) -> Mapping[str, Any]:
        return self._init_payload

    def upload_urls(self, *, upload_id: str, key: str, part_numbers: list[int]) -> Mapping[str, Any]:
        if self._urls_payload is None:
            return super().upload_urls(upload_id=upload_id, key=key, part_numbers=part_numbers)
        return self._urls_payload


class _FakeJsonResponse:
    def __init__(self, body: bytes) -> None:
        self._body = body

    def __enter__(self) -> "_FakeJsonResponse":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> bool:
        return False

    def read(self) -> bytes:
        return self._body


def test_uploader_defaults_part_size_to_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("UPLOAD_PART_SIZE_BYTES", "5")
    get_settings.cache_clear()
    try:
        uploader = RecordingUploader(FakeUploadApi())
    finally:
        monkeypatch.undo()
        get_settings.cache_clear()

    assert uploader.part_size == 5
    assert RecordingUploader(FakeUploadApi(), part_size=7).part_size == 7


def test_upload_fails_when_init_omits_upload_id() -> None:
    api = _StaticUploadApi({"ok": True, "key": "recordings/case-1/x.webm"})

    outcome = RecordingUploader(api, part_size=4).upload(b"0123", case_id="case-1")

    assert outcome.ok is False
    assert outcome.error == "Upload init response missing uploadId or key"


def test_upload_fails_when_part_urls_are_malformed() -> None:
    api = _StaticUploadApi(
        {"ok": True, "uploadId": "upload-1", "key": "recordings/case-1/x.webm"},
        {"ok": True, "urls": {"first": "https://s3.test/part/1"}},
    )

    outcome = RecordingUploader(api, part_size=4).upload(b"0123", case_id="case-1")

    assert outcome.ok is False
    assert outcome.error == "Upload URLs response is malformed"
    assert api.completed_parts is None


def test_http_upload_api_posts_camel_case_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    sent: list[tuple[str, dict[str, Any]]] = []

    def fake_urlopen(req: Any, **kwargs: object) -> _FakeJsonResponse:
        sent.append((req.full_url, json.loads(req.data.decode("utf-8"))))
        return _FakeJsonResponse(b'{"ok": true, "uploadId": "upload-1", "key": "k"}')

    monkeypatch.setattr("app.services.recording_uploader.request.urlopen", fake_urlopen)

    data = HttpUploadApi("https://api.test/api/").upload_init(case_id="case-1", conversation_id="conv-1")

    assert data == {"ok": True, "uploadId": "upload-1", "key": "k"}
    assert sent == [
        (
            "https://api.test/api/simulations/video/upload-init",
            {"caseId": "case-1", "conversationId": "conv-1"},
        ),
    ]


def test_http_upload_api_returns_error_body_from_http_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req: Any, **kwargs: object) -> _FakeJsonResponse:
        raise error.HTTPError(
            req.full_url,
            404,
            "Not Found",
            hdrs=None,
            fp=io.BytesIO(b'{"ok": false, "error": "Case not found."}'),
        )

    monkeypatch.setattr("app.services.recording_uploader.request.urlopen", fake_urlopen)

    outcome = RecordingUploader(HttpUploadApi("https://api.test/api"), part_size=4).upload(
        b"0123",
        case_id="case-404",
    )

    assert outcome.ok is False
    assert outcome.error == "Case not found."


def test_http_upload_api_rejects_non_json_body(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "app.services.recording_uploader.request.urlopen",
        lambda req, **kwargs: _FakeJsonResponse(b"<html>Bad Gateway</html>"),
    )
    api = HttpUploadApi("https://api.test/api")

    with pytest.raises(RecordingUploadError, match="invalid JSON"):
        api.upload_urls(upload_id="upload-1", key="k", part_numbers=[1])

    outcome = RecordingUploader(api, part_size=4).upload(b"0123", case_id="case-1")
    assert outcome.ok is False
    assert outcome.error == "Upload API returned invalid JSON."
