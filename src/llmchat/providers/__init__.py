"""LLM provider abstraction layer.

Public surface area for the providers package.  Import from here rather than
from the individual submodules so internal structure can change freely.

Example::

    from llmchat.providers import (
        ChatCompletionAdapter,
        CompletionRequest,
        ProviderCredentials,
        StreamReassembler,
        classify,
    )

    adapter = ChatCompletionAdapter(ProviderCredentials(anthropic_api_key="sk-ant-..."))
    request = CompletionRequest.from_dicts(
        [{"role": "user", "content": "Hello"}],
        model="claude-3-5-sonnet-20241022",
        provider="anthropic",
    )
    try:
        message = await adapter.complete(request)
    except Exception as exc:
        print(classify(exc).message)
"""

from llmchat.providers.adapter import (
    ChatCompletionAdapter,
    CompletionStream,
    ProviderCredentials,
)
from llmchat.providers.cache import (
    CacheBackend,
    MemoryCache,
    NoCache,
    RedisCache,
    cache_from_url,
)
from llmchat.providers.catalog import CatalogCache, ModelCatalog
from llmchat.providers.errors import (
    ClassifiedError,
    ConfigurationError,
    ErrorKind,
    GatewayResponseError,
    ModelNotFoundError,
    ProviderError,
    ProviderHTTPError,
    UpstreamStreamError,
    ValidationError,
    classify,
)
from llmchat.providers.gateway import GatewayClient, GatewayConfig
from llmchat.providers.models import (
    BUILTIN_MODELS,
    ChatMessage,
    CompletionRequest,
    Done,
    Features,
    ModelCapabilities,
    ModelDescriptor,
    ProviderId,
    StreamError,
    StreamEvent,
    TextDelta,
    VirtualKey,
)
from llmchat.providers.retry import RetryPolicy, retry_with_backoff, run_with_policy
from llmchat.providers.service import ChatService, DeltaStream
from llmchat.providers.streaming import LineBuffer, StreamReassembler, decode_stream

__all__ = [
    # Models
    "BUILTIN_MODELS",
    "ChatMessage",
    "CompletionRequest",
    "ModelDescriptor",
    "ProviderId",
    "StreamEvent",
    "TextDelta",
    "Done",
    "StreamError",
    "ModelCapabilities",
    "Features",
    "VirtualKey",
    # Calling providers
    "ChatCompletionAdapter",
    "CompletionStream",
    "ProviderCredentials",
    "ChatService",
    "DeltaStream",
    "GatewayClient",
    "GatewayConfig",
    # Streams
    "LineBuffer",
    "StreamReassembler",
    "decode_stream",
    # Catalog and caching
    "ModelCatalog",
    "CatalogCache",
    "CacheBackend",
    "MemoryCache",
    "NoCache",
    "RedisCache",
    "cache_from_url",
    # Retry
    "RetryPolicy",
    "retry_with_backoff",
    "run_with_policy",
    # Errors
    "ProviderError",
    "ValidationError",
    "ConfigurationError",
    "ModelNotFoundError",
    "ProviderHTTPError",
    "GatewayResponseError",
    "UpstreamStreamError",
    "ErrorKind",
    "ClassifiedError",
    "classify",
]
