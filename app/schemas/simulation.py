from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TurnScore(BaseModel):
    question: str = ""
    response: str = ""
    score: int = Field(default=0, ge=0, le=100)
    score_reason: str = ""
    improvement: str = ""


class SimulationRecord(BaseModel):
    id: str
    case_id: str
    client_id: str | None = None
    conversation_id: str | None = None
    stage: int | None = None
    agent_id: str | None = None
    event_type: str | None = None
    status: str | None = None
    transcript: list[dict[str, Any]] | None = None
    score: int | None = None
    score_reason: str | None = None
    full_analysis: str | None = None
    turn_scores: list[TurnScore] = Field(default_factory=list)
    scoring_error: str | None = None
    call_duration_secs: int | None = None
    transcript_summary: str | None = None
    call_summary_title: str | None = None
    stage_status: str | None = None
    recording_key: str | None = None
    body_analysis: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime | None = None


class SimulationRecordsResponse(BaseModel):
    items: list[SimulationRecord]


class WebhookAckResponse(BaseModel):
    ok: bool = True
    case_id: str
    event_type: str | None = None
    conversation_id: str | None = None
    simulation_id: str


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UploadInitRequest(_CamelModel):
    case_id: str = Field(alias="caseId", min_length=1)
    conversation_id: str | None = Field(default=None, alias="conversationId")


class UploadInitResponse(_CamelModel):
    ok: bool = True
    upload_id: str = Field(alias="uploadId")
    key: str


class UploadUrlsRequest(_CamelModel):
    upload_id: str = Field(alias="uploadId", min_length=1)
    key: str = Field(min_length=1)
    part_numbers: list[int] = Field(alias="partNumbers")


class UploadUrlsResponse(_CamelModel):
    ok: bool = True
    urls: dict[int, str]


class UploadedPart(_CamelModel):
    part_number: int = Field(alias="partNumber")
    etag: str | None = None


class UploadCompleteRequest(_CamelModel):
    upload_id: str = Field(alias="uploadId", min_length=1)
    key: str = Field(min_length=1)
    parts: list[UploadedPart]
    case_id: str = Field(alias="caseId", min_length=1)
    conversation_id: str | None = Field(default=None, alias="conversationId")


class UploadCompleteResponse(_CamelModel):
    ok: bool = True
    simulation_id: str = Field(alias="simulationId")


class UploadAbortRequest(_CamelModel):
    upload_id: str = Field(alias="uploadId", min_length=1)
    key: str = Field(min_length=1)


class UploadAckResponse(BaseModel):
    ok: bool = True


class RecordingUrlResponse(BaseModel):
    ok: bool = True
    url: str


class DefaultScorePromptResponse(BaseModel):
    prompt: str
