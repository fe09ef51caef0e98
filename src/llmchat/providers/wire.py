"""Per-vendor request building and stream frame decoding.

Each wire format turns a :class:`~llmchat.providers.models.CompletionRequest`
into an HTTP request and turns one decoded line of the response body into at
most one :class:`~llmchat.providers.models.StreamEvent`.  Lines that carry no
event for the caller (keep-alives, metadata frames, malformed JSON) decode to
``None``.

===============  ============================  ==========================
Format           Text location                 End of stream
===============  ============================  ==========================
OpenAI           ``choices[0].delta.content``  ``[DONE]`` or close
Anthropic        ``content_block_delta`` /     ``message_stop``
                 ``text_delta``
Gateway          ``0:<raw text>``              ``[DONE]``
===============  ============================  ==========================
"""

import json
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from llmchat.providers.models import (
    CompletionRequest,
    Done,
    ProviderId,
    StreamError,
    StreamEvent,
    TextDelta,
)

_log = structlog.get_logger(__name__)

DONE_SENTINEL = "[DONE]"
GATEWAY_TAGS_HEADER = "x-gateway-tags"


@dataclass(frozen=True)
class HTTPCall:
    """Everything needed to issue one completion request."""

    url: str
    headers: dict[str, str]
    body: dict[str, Any]


class WireFormat(Protocol):
    provider: ProviderId
    # True when a clean transport close is itself the end-of-stream signal.
    terminates_on_close: bool

    def build_call(self, request: CompletionRequest, credential: str | None) -> HTTPCall: ...

    def decode_line(self, line: str) -> StreamEvent | None: ...


def _sse_payload(line: str) -> str | None:
    """Return the payload of a ``data:`` line, or ``None`` for other SSE fields."""
    if line.startswith("data:"):
        return line[5:].strip()
    return None


def _load_json(payload: str, provider: ProviderId) -> Any:
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        _log.debug("stream_frame_malformed", provider=provider.value, frame=payload[:200])
        return None


def _error_event(frame: Any) -> StreamError | None:
    if isinstance(frame, dict) and frame.get("error"):
        return StreamError(raw=frame["error"])
    return None


class OpenAIWire:
    """OpenAI chat-completions streaming (newline-delimited JSON chunks)."""

    provider = ProviderId.OPENAI
    terminates_on_close = True

    def __init__(self, base_url: str) -> None:
        self._base_url = base_url.rstrip("/")

    def build_call(self, request: CompletionRequest, credential: str | None) -> HTTPCall:
        headers = {"Content-Type": "application/json"}
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        return HTTPCall(
            url=f"{self._base_url}/v1/chat/completions",
            headers=headers,
            body=openai_body(request),
        )

    def decode_line(self, line: str) -> StreamEvent | None:
        line = line.strip()
        if not line:
            return None
        payload = _sse_payload(line)
        if payload is None:
            # Bare JSON objects are accepted as well as SSE ``data:`` frames.
            if not line.startswith("{"):
                return None
            payload = line
        if payload == DONE_SENTINEL:
            return Done()

        chunk = _load_json(payload, self.provider)
        if not isinstance(chunk, dict):
            return None
        error = _error_event(chunk)
        if error is not None:
            return error

        choices = chunk.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return None
        delta = choices[0].get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        if content:
            return TextDelta(text=content)
        return None


class AnthropicWire:
    """Anthropic Messages API streaming (typed SSE frames)."""

    provider = ProviderId.ANTHROPIC
    terminates_on_close = False

    def __init__(self, base_url: str, api_version: str, default_max_tokens: int) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_version = api_version
        self._default_max_tokens = default_max_tokens

    def build_call(self, request: CompletionRequest, credential: str | None) -> HTTPCall:
        system_parts = [m.content for m in request.messages if m.role == "system"]
        body: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens or self._default_max_tokens,
            "messages": [m.to_wire() for m in request.messages if m.role != "system"],
            "stream": True,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        if request.temperature is not None:
            body["temperature"] = request.temperature

        headers = {
            "Content-Type": "application/json",
            "anthropic-version": self._api_version,
        }
        if credential:
            headers["x-api-key"] = credential
        return HTTPCall(url=f"{self._base_url}/v1/messages", headers=headers, body=body)

    def decode_line(self, line: str) -> StreamEvent | None:
        payload = _sse_payload(line.strip())
        if not payload:
            # ``event:`` lines repeat the frame type carried in the JSON.
            return None
        if payload == DONE_SENTINEL:
            return Done()

        frame = _load_json(payload, self.provider)
        if not isinstance(frame, dict):
            return None

        frame_type = frame.get("type")
        if frame_type == "content_block_delta":
            delta = frame.get("delta")
            if isinstance(delta, dict) and delta.get("type") == "text_delta" and delta.get("text"):
                return TextDelta(text=delta["text"])
            return None
        if frame_type == "message_stop":
            return Done()
        if frame_type == "error":
            return StreamError(raw=frame.get("error") or frame)
        return None


class GatewayWire:
    """Gateway-unified line protocol (``0:`` text lines, ``[DONE]`` terminator)."""

    provider = ProviderId.GATEWAY
    terminates_on_close = False

    def __init__(self, base_url: str) -> None:
        self._base_url = base_url.rstrip("/")

    def build_call(self, request: CompletionRequest, credential: str | None) -> HTTPCall:
        headers = {"Content-Type": "application/json"}
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        if request.tags:
            headers[GATEWAY_TAGS_HEADER] = ",".join(request.tags)
        return HTTPCall(
            url=f"{self._base_url}/v1/chat/completions",
            headers=headers,
            body=openai_body(request),
        )

    def decode_line(self, line: str) -> StreamEvent | None:
        # Text after ``0:`` is raw; only the line terminator is removed.
        line = line.rstrip("\r")
        if line.startswith("0:"):
            text = line[2:]
            return TextDelta(text=text) if text else None

        payload = line.strip()
        if payload.startswith("data:"):
            payload = payload[5:].strip()
        if payload == DONE_SENTINEL:
            return Done()
        return None


def openai_body(request: CompletionRequest) -> dict[str, Any]:
    """OpenAI-compatible request body shared by OpenAI and the gateway."""
    body: dict[str, Any] = {
        "model": request.model,
        "messages": [m.to_wire() for m in request.messages],
        "stream": True,
    }
    if request.max_tokens is not None:
        body["max_tokens"] = request.max_tokens
    if request.temperature is not None:
        body["temperature"] = request.temperature
    return body
