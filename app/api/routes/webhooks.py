import logging

from fastapi import APIRouter, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from app.core.config import get_settings
from app.core.log_context import bind_logger, resolve_request_id
from app.schemas.simulation import WebhookAckResponse
from app.services.case_store import create_case_store, create_score_prompt_store
from app.services.errors import SimulationServiceError
from app.services.session_reconciler import SessionReconciler
from app.services.simulation_store import create_simulation_store
from app.services.webhook_signature import SIGNATURE_HEADER_NAME

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/elevenlabs", response_model=WebhookAckResponse)
async def receive_elevenlabs_webhook(request: Request) -> WebhookAckResponse:
    # Signature covers the exact bytes; the body must not be parsed before verification.
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER_NAME)
    log = bind_logger(logger, request_id=resolve_request_id(request.headers))
    log.info(
        "Webhook received provider=elevenlabs path=%s has_signature=%s",
        str(request.url.path),
        bool(signature),
    )

    settings = get_settings()
    reconciler = SessionReconciler(
        settings,
        simulation_store=create_simulation_store(settings),
        case_store=create_case_store(settings),
        prompt_store=create_score_prompt_store(settings),
    )
    try:
        response = await run_in_threadpool(reconciler.handle_event, raw_body, signature, log)
    except SimulationServiceError as exc:
        log.warning(
            "Webhook rejected provider=elevenlabs status_code=%s detail=%s",
            exc.status_code,
            exc.message,
        )
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    except Exception:
        log.exception("Webhook processing failed provider=elevenlabs")
        raise

    log.info(
        "Webhook processed provider=elevenlabs case_id=%s conversation_id=%s simulation_id=%s",
        response.case_id,
        response.conversation_id,
        response.simulation_id,
    )
    return response
