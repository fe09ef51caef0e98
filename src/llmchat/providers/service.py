"""Inbound facade used by the HTTP layer and by scripts.

Ties the catalog, the adapter and the retry orchestrator together so a
caller only deals with requests, messages, and text deltas.
"""

import time
from collections.abc import AsyncGenerator, AsyncIterator, Callable

import structlog
from prometheus_client import Counter

from llmchat.providers.adapter import ChatCompletionAdapter, CompletionStream
from llmchat.providers.catalog import ModelCatalog
from llmchat.providers.errors import ClassifiedError, ModelNotFoundError, classify
from llmchat.providers.models import ChatMessage, CompletionRequest, ModelDescriptor
from llmchat.providers.retry import RetryPolicy, run_with_policy
from llmchat.providers.streaming import StreamReassembler

_log = structlog.get_logger(__name__)

COMPLETIONS = Counter(
    "llmchat_completions_total",
    "Chat completions by provider, mode and outcome.",
    ["provider", "mode", "outcome"],
)


class ChatService:
    """Send chat requests and serve the model catalog.

    Args:
        adapter: Issues the provider calls.
        catalog: Source of truth for which models may be requested.
        retry_policy: Retry budget applied to every provider call.
    """

    def __init__(
        self,
        adapter: ChatCompletionAdapter,
        catalog: ModelCatalog,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.adapter = adapter
        self.catalog = catalog
        self.retry_policy = retry_policy or RetryPolicy()

    async def send(
        self,
        request: CompletionRequest,
        streaming: bool = False,
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> "ChatMessage | DeltaStream":
        """Send *request* to its provider.

        Returns the assistant :class:`ChatMessage` when *streaming* is false.
        Otherwise the connection is opened (under retry) before this returns,
        and the result is a :class:`DeltaStream` of text deltas.  Failures after
        the first byte are not retried.

        Raises:
            ModelNotFoundError: The model is not in the catalog for the provider.
        """
        await self._check_model(request)
        if streaming:
            return await self._open(request, on_retry)
        return await self._complete(request, on_retry)

    async def list_models(self) -> list[ModelDescriptor]:
        return await self.catalog.get_models()

    async def refresh_models(self) -> list[ModelDescriptor]:
        return await self.catalog.refresh()

    def classify(self, error: object) -> ClassifiedError:
        return classify(error)

    async def _check_model(self, request: CompletionRequest) -> None:
        if await self.catalog.find(request.model, request.provider) is None:
            raise ModelNotFoundError(
                f"model '{request.model}' not found for provider '{request.provider.value}'",
                provider=request.provider.value,
            )

    async def _complete(
        self,
        request: CompletionRequest,
        on_retry: Callable[[int, BaseException], None] | None,
    ) -> ChatMessage:
        start_time = time.monotonic()
        try:
            message = await run_with_policy(
                lambda: self.adapter.complete(request), self.retry_policy, on_retry=on_retry
            )
        except Exception as exc:
            COMPLETIONS.labels(request.provider.value, "complete", classify(exc).code).inc()
            raise
        COMPLETIONS.labels(request.provider.value, "complete", "ok").inc()
        _log.info(
            "chat_completed",
            provider=request.provider.value,
            model=request.model,
            chars=len(message.content),
            duration_ms=round((time.monotonic() - start_time) * 1000, 2),
        )
        return message

    async def _open(
        self,
        request: CompletionRequest,
        on_retry: Callable[[int, BaseException], None] | None,
    ) -> "DeltaStream":
        try:
            stream = await run_with_policy(
                lambda: self.adapter.open_stream(request), self.retry_policy, on_retry=on_retry
            )
        except Exception as exc:
            COMPLETIONS.labels(request.provider.value, "stream", classify(exc).code).inc()
            raise
        return DeltaStream(request.provider.value, stream)


class DeltaStream:
    """Text deltas read from an open :class:`CompletionStream`.

    Owns the connection: :meth:`aclose` (or leaving ``async with``) releases
    it whether or not anything was read.
    """

    def __init__(self, provider: str, stream: CompletionStream) -> None:
        self._provider = provider
        self._stream = stream
        self._started = False
        self._closed = False
        self._deltas = self._iterate()

    def __aiter__(self) -> AsyncIterator[str]:
        return self._deltas

    async def _iterate(self) -> AsyncGenerator[str, None]:
        self._started = True
        reassembler = StreamReassembler()
        outcome = "ok"
        try:
            async for event in self._stream:
                before = len(reassembler.content)
                reassembler.feed(event)
                if len(reassembler.content) > before:
                    yield reassembler.content[before:]
        except Exception as exc:
            outcome = classify(exc).code
            raise
        finally:
            await self._stream.aclose()
            if outcome == "ok" and not reassembler.completed:
                outcome = "partial"
            COMPLETIONS.labels(self._provider, "stream", outcome).inc()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._deltas.aclose()
        await self._stream.aclose()
        if not self._started:
            COMPLETIONS.labels(self._provider, "stream", "abandoned").inc()

    async def __aenter__(self) -> "DeltaStream":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
