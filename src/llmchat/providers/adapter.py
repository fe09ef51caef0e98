"""Chat completion adapter over the OpenAI, Anthropic, and gateway wire formats.

The adapter issues the HTTP call and normalizes the response body into
:data:`~llmchat.providers.models.StreamEvent` values.  It does not classify
or retry: transport and decode errors propagate unchanged, and a non-2xx
answer becomes a :class:`~llmchat.providers.errors.ProviderHTTPError`
carrying the vendor's own message.  Retrying is the caller's job
(:mod:`llmchat.providers.retry`).
"""

import logging
import time
import uuid
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass
from typing import assert_never

import httpx
import litellm
import structlog
from opentelemetry import trace
from opentelemetry.trace import StatusCode

from llmchat.providers.errors import ConfigurationError
from llmchat.providers.gateway import error_from_response
from llmchat.providers.models import (
    ChatMessage,
    CompletionRequest,
    ProviderId,
    StreamEvent,
    TextDelta,
)
from llmchat.providers.streaming import StreamReassembler, decode_stream
from llmchat.providers.wire import AnthropicWire, GatewayWire, OpenAIWire, WireFormat

# LiteLLM is only used for token estimates; keep its logging quiet.
logging.getLogger("LiteLLM").setLevel(logging.WARNING)

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)


@dataclass(frozen=True)
class ProviderCredentials:
    """Credentials resolved out-of-band (server environment)."""

    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    gateway_api_key: str | None = None


class CompletionStream:
    """An open streaming response.

    Iterate it for stream events; leaving ``async with`` or calling
    :meth:`aclose` releases the HTTP connection, even mid-stream.
    """

    def __init__(self, response: httpx.Response, wire: WireFormat, request_id: str) -> None:
        self._response = response
        self._wire = wire
        self.request_id = request_id
        self._events: AsyncGenerator[StreamEvent, None] | None = None

    @property
    def provider(self) -> ProviderId:
        return self._wire.provider

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._events is None:
            self._events = self._iterate()
        return self._events

    async def _iterate(self) -> AsyncGenerator[StreamEvent, None]:
        try:
            async for event in decode_stream(self._response.aiter_bytes(), self._wire):
                yield event
        finally:
            await self._response.aclose()

    async def aclose(self) -> None:
        if self._events is not None:
            await self._events.aclose()
        await self._response.aclose()

    async def __aenter__(self) -> "CompletionStream":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


class ChatCompletionAdapter:
    """Issues chat completions against one of the three wire formats.

    Example::

        adapter = ChatCompletionAdapter(ProviderCredentials(anthropic_api_key="sk-ant-..."))
        request = CompletionRequest.from_dicts(
            [{"role": "user", "content": "Hello"}],
            model="claude-3-5-sonnet-20241022",
            provider="anthropic",
        )
        async for event in adapter.stream(request):
            ...

    Args:
        credentials: Vendor and gateway keys.
        http_client: Shared ``httpx.AsyncClient``; one is created when omitted.
        openai_base_url: Vendor A root URL.
        anthropic_base_url: Vendor B root URL.
        gateway_base_url: Gateway root URL; ``None`` disables the gateway.
        anthropic_version: Value of the ``anthropic-version`` header.
        anthropic_max_tokens: ``max_tokens`` sent when the request has none.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        credentials: ProviderCredentials,
        http_client: httpx.AsyncClient | None = None,
        openai_base_url: str = "https://api.openai.com",
        anthropic_base_url: str = "https://api.anthropic.com",
        gateway_base_url: str | None = None,
        anthropic_version: str = "2023-06-01",
        anthropic_max_tokens: int = 4096,
        timeout: float = 60.0,
    ) -> None:
        self._credentials = credentials
        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None
        self._timeout = timeout
        self._openai = OpenAIWire(openai_base_url)
        self._anthropic = AnthropicWire(
            anthropic_base_url, anthropic_version, anthropic_max_tokens
        )
        self._gateway = GatewayWire(gateway_base_url) if gateway_base_url else None

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def open_stream(self, request: CompletionRequest) -> CompletionStream:
        """Send *request* and return the open response stream.

        Only connection setup and the status check happen here, which is
        what makes this call safe to retry.

        Raises:
            ConfigurationError: No credential or endpoint for the provider.
            ProviderHTTPError: The provider answered with a non-2xx status.
            httpx.TransportError: Network failure or timeout.
        """
        wire, credential = self._resolve(request)
        call = wire.build_call(request, credential)
        request_id = str(uuid.uuid4())

        with _tracer.start_as_current_span("llm.api_call") as span:
            span.set_attribute("gen_ai.system", request.provider.value)
            span.set_attribute("gen_ai.request.model", request.model)
            span.set_attribute("llm.prompt_tokens_estimate", self.count_prompt_tokens(request))

            http_request = self._http.build_request(
                "POST", call.url, headers=call.headers, json=call.body, timeout=self._timeout
            )
            response = await self._http.send(http_request, stream=True)
            span.set_attribute("http.status_code", response.status_code)

            if response.is_error:
                try:
                    await response.aread()
                finally:
                    await response.aclose()
                error = error_from_response(response, provider=request.provider.value)
                span.set_status(StatusCode.ERROR, error.message)
                _log.warning(
                    "llm_request_rejected",
                    request_id=request_id,
                    provider=request.provider.value,
                    model=request.model,
                    status_code=response.status_code,
                    error=error.message,
                )
                raise error

        _log.info(
            "llm_stream_opened",
            request_id=request_id,
            provider=request.provider.value,
            model=request.model,
        )
        return CompletionStream(response, wire, request_id)

    async def stream(self, request: CompletionRequest) -> AsyncGenerator[StreamEvent, None]:
        """Yield stream events for *request* in arrival order.

        Closing the generator early closes the underlying connection.
        """
        start_time = time.monotonic()
        deltas = 0
        async with await self.open_stream(request) as events:
            try:
                async for event in events:
                    if isinstance(event, TextDelta):
                        deltas += 1
                    yield event
            finally:
                _log.info(
                    "llm_stream_closed",
                    request_id=events.request_id,
                    deltas=deltas,
                    duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                )

    async def complete(self, request: CompletionRequest) -> ChatMessage:
        """Collect the whole reply into one assistant :class:`ChatMessage`.

        Uses the same event stream and extraction rules as :meth:`stream`.
        """
        with _tracer.start_as_current_span("llm.complete") as span:
            span.set_attribute("gen_ai.system", request.provider.value)
            span.set_attribute("gen_ai.request.model", request.model)
            reassembler = StreamReassembler()
            async with aclosing(self.stream(request)) as events:
                content = await reassembler.consume(events)
            span.set_attribute("llm.completed", reassembler.completed)
        return ChatMessage(
            role="assistant",
            content=content,
            model=request.model,
            provider=request.provider,
        )

    def count_prompt_tokens(self, request: CompletionRequest) -> int:
        """Estimate the prompt size with LiteLLM's token counter.

        Falls back to a word-count approximation when the model is unknown
        to LiteLLM.
        """
        messages = [m.to_wire() for m in request.messages]
        try:
            return litellm.token_counter(model=request.model, messages=messages)
        except Exception as exc:
            _log.debug(
                "token_counting_failed",
                model=request.model,
                error=str(exc),
                fallback="word_count_approximation",
            )
            words = sum(len(m["content"].split()) for m in messages)
            return max(1, round(words * 1.3))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _resolve(self, request: CompletionRequest) -> tuple[WireFormat, str | None]:
        provider = request.provider
        match provider:
            case ProviderId.OPENAI:
                if not self._credentials.openai_api_key:
                    raise ConfigurationError("OpenAI API key not configured", provider="openai")
                return self._openai, self._credentials.openai_api_key
            case ProviderId.ANTHROPIC:
                if not self._credentials.anthropic_api_key:
                    raise ConfigurationError(
                        "Anthropic API key not configured", provider="anthropic"
                    )
                return self._anthropic, self._credentials.anthropic_api_key
            case ProviderId.GATEWAY:
                if self._gateway is None:
                    raise ConfigurationError(
                        "Gateway API key or base URL not configured",
                        provider="gateway",
                    )
                # The gateway may run without auth, so a missing key is allowed.
                return self._gateway, request.gateway_key or self._credentials.gateway_api_key
            case _:
                assert_never(provider)
