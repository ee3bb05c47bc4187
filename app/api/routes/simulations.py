import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from app.core.config import get_settings
from app.core.log_context import bind_logger, resolve_request_id
from app.schemas.simulation import (
    RecordingUrlResponse,
    SimulationRecord,
    SimulationRecordsResponse,
    UploadAbortRequest,
    UploadAckResponse,
    UploadCompleteRequest,
    UploadCompleteResponse,
    UploadInitRequest,
    UploadInitResponse,
    UploadUrlsRequest,
    UploadUrlsResponse,
)
from app.services.case_store import create_case_store
from app.services.errors import NotFound, ProviderError
from app.services.object_storage_client import S3ObjectStorageClient, create_object_storage_client
from app.services.recording_analysis import RecordingAnalyzer, dispatch_recording_analysis
from app.services.simulation_store import create_simulation_store
from app.services.upload_coordinator import UploadCoordinator

router = APIRouter(prefix="/simulations", tags=["simulations"])
logger = logging.getLogger(__name__)


def get_object_storage_client() -> S3ObjectStorageClient:
    return create_object_storage_client(get_settings())


def get_recording_analyzer() -> RecordingAnalyzer | None:
    """Downstream recording analysis hook; none is wired by default."""
    return None


def get_upload_coordinator(
    storage: S3ObjectStorageClient = Depends(get_object_storage_client),
) -> UploadCoordinator:
    settings = get_settings()
    return UploadCoordinator(
        settings,
        storage=storage,
        simulation_store=create_simulation_store(settings),
        case_store=create_case_store(settings),
    )


@router.post("/video/upload-init", response_model=UploadInitResponse)
def upload_init(
    payload: UploadInitRequest,
    request: Request,
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
) -> UploadInitResponse:
    log = bind_logger(logger, request_id=resolve_request_id(request.headers), case_id=payload.case_id)
    upload = coordinator.initiate(payload.case_id, payload.conversation_id, log=log)
    return UploadInitResponse(upload_id=upload.upload_id, key=upload.key)


@router.post("/video/upload-urls", response_model=UploadUrlsResponse)
def upload_urls(
    payload: UploadUrlsRequest,
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
) -> UploadUrlsResponse:
    urls = coordinator.get_part_urls(payload.upload_id, payload.key, payload.part_numbers)
    return UploadUrlsResponse(urls=urls)


@router.post("/video/upload-complete", response_model=UploadCompleteResponse)
def upload_complete(
    payload: UploadCompleteRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
    analyzer: RecordingAnalyzer | None = Depends(get_recording_analyzer),
) -> UploadCompleteResponse:
    log = bind_logger(logger, request_id=resolve_request_id(request.headers), case_id=payload.case_id)
    completion = coordinator.complete(
        payload.upload_id,
        payload.key,
        [part.model_dump() for part in payload.parts],
        case_id=payload.case_id,
        conversation_id=payload.conversation_id,
        log=log,
    )
    background_tasks.add_task(
        dispatch_recording_analysis,
        analyzer=analyzer,
        store=coordinator.simulation_store,
        simulation_id=completion.simulation_id,
        recording_key=completion.key,
        log=log,
    )
    return UploadCompleteResponse(simulation_id=completion.simulation_id)


@router.post("/video/upload-abort", response_model=UploadAckResponse)
def upload_abort(
    payload: UploadAbortRequest,
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
) -> UploadAckResponse:
    coordinator.abort(payload.upload_id, payload.key)
    return UploadAckResponse()


@router.get("", response_model=SimulationRecordsResponse)
def list_simulations(case_id: str, limit: int = 50) -> SimulationRecordsResponse:
    store = create_simulation_store(get_settings())
    normalized_limit = min(max(limit, 1), 100)
    try:
        records = store.list_by_case(case_id, limit=normalized_limit)
    except Exception as exc:
        raise ProviderError("Unable to query simulation storage.") from exc
    return SimulationRecordsResponse(items=[_map_record(record) for record in records])


@router.get("/{simulation_id}/recording-url", response_model=RecordingUrlResponse)
def get_recording_url(
    simulation_id: str,
    coordinator: UploadCoordinator = Depends(get_upload_coordinator),
) -> RecordingUrlResponse:
    return RecordingUrlResponse(url=coordinator.get_recording_url(simulation_id))


@router.get("/{simulation_id}", response_model=SimulationRecord)
def get_simulation(simulation_id: str) -> SimulationRecord:
    store = create_simulation_store(get_settings())
    try:
        record = store.get_by_id(simulation_id)
    except Exception as exc:
        raise ProviderError("Unable to query simulation storage.") from exc
    if not record:
        raise NotFound("Simulation not found.")
    return _map_record(record)


def _map_record(record: dict) -> SimulationRecord:
    payload = {key: value for key, value in record.items() if key != "_id"}
    payload["id"] = str(record["_id"])
    return SimulationRecord.model_validate(payload)
