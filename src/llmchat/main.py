import httpx
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import make_asgi_app
from pydantic import SecretStr

from llmchat.api.chat import router as chat_router
from llmchat.api.health import router as health_router
from llmchat.api.keys import router as keys_router
from llmchat.api.models import router as models_router
from llmchat.config import settings
from llmchat.providers import (
    CatalogCache,
    ChatCompletionAdapter,
    ChatService,
    GatewayClient,
    GatewayConfig,
    ModelCatalog,
    ProviderCredentials,
    RedisCache,
    RetryPolicy,
    cache_from_url,
)

# ---------------------------------------------------------------------------
# Structured logging
# ---------------------------------------------------------------------------
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        structlog.stdlib.NAME_TO_LEVEL.get(settings.log_level.lower(), 20)
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

log = structlog.get_logger()

# ---------------------------------------------------------------------------
# OpenTelemetry
# ---------------------------------------------------------------------------
resource = Resource.create({"service.name": settings.otel_service_name})
tracer_provider = TracerProvider(resource=resource)
otlp_exporter = OTLPSpanExporter(
    endpoint=f"{settings.otel_exporter_otlp_endpoint}/v1/traces",
)
tracer_provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
trace.set_tracer_provider(tracer_provider)

# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------
app = FastAPI(
    title="LLM Chat Core",
    version=settings.app_version,
    description=(
        "Multi-provider chat backend: OpenAI, Anthropic and a LiteLLM gateway "
        "behind one streaming API, with a merged model catalog."
    ),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Prometheus metrics endpoint mounted as a sub-application
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# Routers
app.include_router(health_router)
app.include_router(chat_router)
app.include_router(models_router)
app.include_router(keys_router)

# Instrument *after* routes are registered
FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider)


def _secret(value: SecretStr | None) -> str | None:
    return value.get_secret_value() if value is not None else None


# ---------------------------------------------------------------------------
# Lifecycle events
# ---------------------------------------------------------------------------
@app.on_event("startup")
async def _startup() -> None:
    # One connection pool shared by the adapter and the gateway client.
    http_client = httpx.AsyncClient()
    gateway_config = GatewayConfig(
        base_url=settings.litellm_base_url,
        api_key=_secret(settings.litellm_api_key),
        enabled=settings.litellm_enabled,
        timeout=settings.litellm_timeout,
    )
    model_info_cache = cache_from_url(settings.model_info_cache_url)
    gateway = GatewayClient(gateway_config, http_client=http_client, cache=model_info_cache)
    adapter = ChatCompletionAdapter(
        ProviderCredentials(
            openai_api_key=_secret(settings.openai_api_key),
            anthropic_api_key=_secret(settings.anthropic_api_key),
            gateway_api_key=_secret(settings.litellm_api_key),
        ),
        http_client=http_client,
        openai_base_url=settings.openai_base_url,
        anthropic_base_url=settings.anthropic_base_url,
        gateway_base_url=settings.litellm_base_url if gateway_config.is_configured else None,
        anthropic_version=settings.anthropic_version,
        anthropic_max_tokens=settings.anthropic_max_tokens,
        timeout=settings.llm_timeout,
    )
    catalog = ModelCatalog(gateway=gateway, cache=CatalogCache(ttl=settings.catalog_ttl_seconds))

    app.state.http_client = http_client
    app.state.model_info_cache = model_info_cache
    app.state.gateway = gateway
    app.state.service = ChatService(
        adapter,
        catalog,
        RetryPolicy(
            max_retries=settings.llm_max_retries,
            initial_delay=settings.llm_retry_initial_delay,
            max_delay=settings.llm_retry_max_delay,
        ),
    )

    log.info(
        "llm_chat_ready",
        host=settings.host,
        port=settings.port,
        gateway_enabled=gateway_config.is_configured,
        llm_timeout=settings.llm_timeout,
        llm_max_retries=settings.llm_max_retries,
        otel_endpoint=settings.otel_exporter_otlp_endpoint,
    )


@app.on_event("shutdown")
async def _shutdown() -> None:
    log.info("llm_chat_shutting_down")
    http_client: httpx.AsyncClient | None = getattr(app.state, "http_client", None)
    if http_client is not None:
        await http_client.aclose()
    cache = getattr(app.state, "model_info_cache", None)
    if isinstance(cache, RedisCache):
        await cache.aclose()
    tracer_provider.shutdown()
