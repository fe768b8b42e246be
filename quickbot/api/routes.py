import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from quickbot.api.schemas import (
    ChatRequest,
    ChatResponse,
    ErrorResponse,
    FieldGenerateRequest,
    FieldGenerateResponse,
    IngestRequest,
    IngestResponse,
)
from quickbot.core.field_generation import FieldGenerationError
from quickbot.core.metrics import metrics
from quickbot.core.pipeline import ChatError, ChatTurnRequest

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/ready")
def ready(request: Request):
    services = getattr(request.app.state, "services", None)
    if services is None:
        return JSONResponse(status_code=503, content={"status": "starting"})
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint():
    return metrics.snapshot()


@router.post("/v1/chat/{bot_id}")
async def chat(bot_id: str, request: Request):
    trace_id, request_id = _extract_ids(request)
    payload = await _parse_body(request, ChatRequest)
    if payload is None:
        return _error_response(400, "invalid_request", "Invalid request body.", trace_id, request_id)

    turn = ChatTurnRequest(
        bot_id=bot_id,
        session_id=request.headers.get("x-session-id"),
        message=payload.message,
        chat_history=[item.model_dump() for item in payload.chat_history],
        api_key_token=_bearer_token(request),
        model_override=payload.model_override,
        trace_id=trace_id,
        request_id=request_id,
    )
    try:
        result = await request.app.state.services.pipeline.run(turn)
    except ChatError as exc:
        return _error_response(exc.status_code, exc.code, exc.message, trace_id, request_id, exc.headers)
    except Exception:
        logger.exception("chat turn failed for bot %s", bot_id)
        metrics.inc("chat_turn_total", {"outcome": "internal_error"})
        return _error_response(500, "internal_error", "Internal server error", trace_id, request_id)

    response = ChatResponse(answer=result.answer, suggestedQuestions=result.suggested_questions)
    return JSONResponse(content=response.model_dump(), headers=_response_headers(trace_id, request_id))


@router.post("/v1/rag/ingest")
async def ingest(request: Request):
    trace_id, request_id = _extract_ids(request)
    payload = await _parse_body(request, IngestRequest)
    if payload is None:
        return _error_response(400, "invalid_request", "Invalid botId", trace_id, request_id)
    success = await request.app.state.services.ingestor.ingest_bot_content(payload.botId)
    if not success:
        logger.warning("ingestion did not complete for bot %s", payload.botId)
    return JSONResponse(
        content=IngestResponse(success=success).model_dump(),
        headers=_response_headers(trace_id, request_id),
    )


@router.post("/v1/fields/generate")
async def generate_field(request: Request):
    trace_id, request_id = _extract_ids(request)
    payload = await _parse_body(request, FieldGenerateRequest)
    if payload is None:
        return _error_response(400, "invalid_request", "Invalid input", trace_id, request_id)
    try:
        value = await request.app.state.services.field_generator.generate(
            payload.botId,
            payload.field,
            user_hint=payload.context.userHint,
            current_value=payload.currentValue,
        )
    except FieldGenerationError as exc:
        return _error_response(exc.status_code, "field_generation_failed", exc.message, trace_id, request_id)
    except Exception:
        logger.exception("field generation failed for bot %s", payload.botId)
        return _error_response(500, "internal_error", "Internal server error", trace_id, request_id)
    response = FieldGenerateResponse(field=payload.field, value=value)
    return JSONResponse(content=response.model_dump(), headers=_response_headers(trace_id, request_id))


async def _parse_body(request: Request, model: type[BaseModel]) -> Optional[Any]:
    try:
        body = await request.json()
    except Exception:
        return None
    if not isinstance(body, dict):
        return None
    try:
        return model.model_validate(body)
    except ValidationError:
        return None


def _bearer_token(request: Request) -> Optional[str]:
    auth = (request.headers.get("authorization") or "").strip()
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip()


def _extract_ids(request: Request) -> tuple[str, str]:
    trace_id = request.headers.get("x-trace-id")
    request_id = request.headers.get("x-request-id")
    if not trace_id:
        trace_id = f"trace_{uuid.uuid4().hex}"
    if not request_id:
        request_id = f"req_{uuid.uuid4().hex}"
    return trace_id, request_id


def _response_headers(trace_id: str, request_id: str) -> dict[str, str]:
    return {"x-trace-id": trace_id, "x-request-id": request_id}


def _error_response(
    status_code: int,
    code: str,
    message: str,
    trace_id: str,
    request_id: str,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    payload = ErrorResponse(error=message, code=code, trace_id=trace_id, request_id=request_id)
    merged = _response_headers(trace_id, request_id)
    merged.update(headers or {})
    return JSONResponse(status_code=status_code, content=payload.model_dump(), headers=merged)
