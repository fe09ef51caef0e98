"""Chat endpoint: POST /api/chat.

Converts the JSON body into a :class:`~llmchat.providers.CompletionRequest`,
streams Server-Sent Events for streaming requests, and maps classified
errors to HTTP status codes.
"""

import json
import time
import uuid
from collections.abc import AsyncGenerator
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from opentelemetry import trace
from opentelemetry.trace import StatusCode
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask

from llmchat.providers import (
    ChatMessage,
    ChatService,
    CompletionRequest,
    DeltaStream,
    ErrorKind,
    ValidationError,
    classify,
)

router = APIRouter(prefix="/api", tags=["chat"])

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)

# ---------------------------------------------------------------------------
# HTTP status codes for each error kind
# ---------------------------------------------------------------------------
ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONTEXT_LENGTH: 400,
    ErrorKind.AUTH_ERROR: 401,
    ErrorKind.MODEL_ERROR: 404,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.NETWORK_ERROR: 502,
    ErrorKind.SERVER_ERROR: 502,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.UNKNOWN: 500,
}


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _Message(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    """Body of ``POST /api/chat``."""

    messages: list[_Message]
    model: str
    provider: str
    stream: bool = True
    tags: list[str] = Field(default_factory=list)
    max_tokens: int | None = Field(default=None, gt=0)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    gateway_key: str | None = Field(default=None, repr=False)


# ---------------------------------------------------------------------------
# Dependency
# ---------------------------------------------------------------------------


def get_service(request: Request) -> ChatService:
    """Return the shared :class:`ChatService` from ``app.state``."""
    service: ChatService | None = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Chat service not initialised")
    return service


def error_response(exc: Exception) -> HTTPException:
    """Classify *exc* and wrap it in an :class:`HTTPException`."""
    classified = classify(exc)
    return HTTPException(
        status_code=ERROR_STATUS.get(classified.kind, 500),
        detail=classified.to_dict(),
    )


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------


@router.post("/chat", response_model=None)
async def chat(
    body: ChatRequest,
    service: ChatService = Depends(get_service),
) -> StreamingResponse | JSONResponse:
    """Send a conversation to the selected model.

    Returns:
        A ``text/event-stream`` of ``{"content": ...}`` frames terminated by
        ``[DONE]`` when ``body.stream`` is true, otherwise the assistant
        message as JSON.
    """
    request_id = str(uuid.uuid4())
    start_time = time.monotonic()
    log = _log.bind(
        request_id=request_id,
        model=body.model,
        provider=body.provider,
        stream=body.stream,
    )

    with _tracer.start_as_current_span("api.chat") as span:
        span.set_attribute("gen_ai.system", body.provider)
        span.set_attribute("gen_ai.request.model", body.model)
        span.set_attribute("llm.stream", body.stream)
        log.info("chat_request_start", messages=len(body.messages))

        try:
            completion_request = CompletionRequest.from_dicts(
                [m.model_dump() for m in body.messages],
                model=body.model,
                provider=body.provider,
                tags=tuple(body.tags),
                max_tokens=body.max_tokens,
                temperature=body.temperature,
                gateway_key=body.gateway_key,
            )
            result = await service.send(completion_request, streaming=body.stream)
        except ValidationError as exc:
            span.set_status(StatusCode.ERROR, exc.message)
            raise error_response(exc) from exc
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(StatusCode.ERROR, str(exc))
            log.error(
                "chat_request_error",
                error_type=type(exc).__name__,
                error=str(exc),
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            )
            raise error_response(exc) from exc

        if isinstance(result, ChatMessage):
            log.info(
                "chat_request_complete",
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            )
            return JSONResponse(content=result.to_dict(), headers={"X-Request-ID": request_id})

        return StreamingResponse(
            _stream_sse(result, log, start_time),
            media_type="text/event-stream",
            background=BackgroundTask(result.aclose),
            headers={
                "X-Request-ID": request_id,
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


async def _stream_sse(
    deltas: DeltaStream,
    log: Any,
    start_time: float,
) -> AsyncGenerator[str, None]:
    """Yield one SSE frame per text delta.

    Errors after the response has started are sent as a final ``error``
    frame, since the HTTP status can no longer change.
    """
    chunks = 0
    try:
        async for text in deltas:
            chunks += 1
            yield f"data: {json.dumps({'content': text})}\n\n"
    except Exception as exc:
        classified = classify(exc)
        log.error(
            "chat_stream_error",
            error_type=type(exc).__name__,
            error=str(exc),
            kind=classified.code,
        )
        yield f"data: {json.dumps({'error': classified.to_dict()})}\n\n"
    finally:
        await deltas.aclose()
        log.info(
            "chat_request_complete",
            chunks=chunks,
            duration_ms=round((time.monotonic() - start_time) * 1000, 2),
        )
    yield "data: [DONE]\n\n"
