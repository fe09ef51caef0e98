"""Client for a LiteLLM-style gateway that fronts many LLM vendors.

Covers the gateway's management surface: model discovery, per-model
capability lookup, and virtual-key issuance.  Chat traffic to the gateway
goes through :class:`~llmchat.providers.adapter.ChatCompletionAdapter`.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx
import structlog
from opentelemetry import trace

from llmchat.providers.cache import CacheBackend, MemoryCache
from llmchat.providers.errors import GatewayResponseError, ProviderHTTPError
from llmchat.providers.models import (
    Budget,
    Features,
    ModelCapabilities,
    RateLimit,
    VirtualKey,
)
from llmchat.providers.naming import display_name, infer_vendor, strip_vendor_prefix

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)

MODEL_INFO_TTL_SECONDS = 24 * 60 * 60

# Gateway model mode -> Features field
_MODE_FEATURES: dict[str, str] = {
    "chat": "chat",
    "completion": "completion",
    "embedding": "embeddings",
    "image_generation": "image_generation",
    "audio_transcription": "audio_transcription",
    "audio_speech": "audio_generation",
    "moderation": "moderation",
    "rerank": "reranking",
    "realtime": "realtime",
    "ocr": "ocr",
    "batch": "batch",
}


@dataclass(frozen=True)
class GatewayConfig:
    """Where the gateway lives and how to authenticate against it.

    Attributes:
        base_url: Gateway root, e.g. ``http://localhost:4000``.
        api_key: Master key; optional when the gateway does not require auth.
        enabled: Feature flag; a disabled gateway is never contacted.
        timeout: Bound on management calls, in seconds.
    """

    base_url: str
    api_key: str | None = None
    enabled: bool = False
    timeout: float = 10.0

    @property
    def is_configured(self) -> bool:
        return self.enabled and bool(self.base_url)


def error_from_response(response: httpx.Response, provider: str) -> ProviderHTTPError:
    """Build a :class:`ProviderHTTPError` from a non-2xx response.

    The body must already be read.  The vendor's own error message is kept so
    keyword classification can see it.
    """
    detail = ""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            detail = str(error.get("message") or error.get("type") or "")
        elif error:
            detail = str(error)
        else:
            detail = str(body.get("message") or body.get("detail") or "")
    if not detail:
        detail = response.text[:500]

    message = f"{response.status_code} {response.reason_phrase}"
    if detail:
        message = f"{message}: {detail}"
    return ProviderHTTPError(message, status_code=response.status_code, provider=provider)


def parse_model_info(raw: dict[str, Any]) -> ModelCapabilities:
    """Reduce a gateway ``/model/info`` entry to :class:`ModelCapabilities`."""
    info = raw.get("model_info") or {}
    model_name = raw.get("model_name") or info.get("id") or ""
    params = raw.get("litellm_params") or {}
    provider = info.get("litellm_provider") or infer_vendor(params.get("model") or model_name)
    return ModelCapabilities(
        id=model_name,
        name=display_name(strip_vendor_prefix(model_name)),
        provider=provider,
        mode=info.get("mode") or "chat",
        max_tokens=info.get("max_tokens"),
        max_input_tokens=info.get("max_input_tokens"),
        max_output_tokens=info.get("max_output_tokens"),
        input_cost=info.get("input_cost_per_token"),
        output_cost=info.get("output_cost_per_token"),
        supports_function_calling=info.get("supports_function_calling"),
        supports_vision=info.get("supports_vision"),
        supports_system_messages=info.get("supports_system_messages"),
    )


def aggregate_features(models: Iterable[ModelCapabilities]) -> Features:
    """Union of what every model in *models* supports."""
    flags: dict[str, bool] = {}
    for model in models:
        feature = _MODE_FEATURES.get(model.mode)
        if feature is not None:
            flags[feature] = True
        if model.supports_vision:
            flags["vision"] = True
        if model.supports_function_calling:
            flags["function_calling"] = True
    return Features(**flags)


def _parse_budget(raw: dict[str, Any]) -> Budget | None:
    if raw.get("max_budget") is None:
        return None
    maximum = float(raw["max_budget"])
    spent = float(raw.get("spend") or 0)
    return Budget(
        max=maximum,
        spent=spent,
        remaining=max(0.0, maximum - spent),
        duration=raw.get("budget_duration"),
    )


def _parse_rate_limit(raw: dict[str, Any]) -> RateLimit | None:
    keys = ("tpm_limit", "rpm_limit", "max_parallel_requests")
    if all(raw.get(k) is None for k in keys):
        return None
    return RateLimit(
        tpm=raw.get("tpm_limit"),
        rpm=raw.get("rpm_limit"),
        max_parallel=raw.get("max_parallel_requests"),
    )


def _parse_expiry(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        _log.warning("gateway_key_expiry_unparseable", expires=value)
        return None


class GatewayClient:
    """Async client for the gateway's management endpoints.

    Example::

        client = GatewayClient(GatewayConfig("http://localhost:4000", "sk-master", True))
        entries = await client.fetch_model_entries()
        key = await client.request_key(user_id="user-123", duration="24h")

    Args:
        config: Gateway location and credentials.
        http_client: Shared ``httpx.AsyncClient``; one is created when omitted.
        cache: Backend for model-info lookups; in-memory when omitted.
    """

    def __init__(
        self,
        config: GatewayConfig,
        http_client: httpx.AsyncClient | None = None,
        cache: CacheBackend | None = None,
    ) -> None:
        self._config = config
        self._base_url = config.base_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None
        self._cache = cache if cache is not None else MemoryCache()

    @property
    def config(self) -> GatewayConfig:
        return self._config

    @property
    def is_configured(self) -> bool:
        return self._config.is_configured

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def fetch_model_entries(self) -> list[dict[str, Any]]:
        """Return the raw ``data`` entries of ``GET /v1/models``.

        Raises:
            ProviderHTTPError: The gateway answered with a non-2xx status.
            GatewayResponseError: The payload has no ``data`` list.
            httpx.TransportError: Network failure or timeout.
        """
        with _tracer.start_as_current_span("gateway.list_models") as span:
            span.set_attribute("gateway.url", self._base_url)
            data = await self._request("GET", "/v1/models")

            entries = data.get("data") if isinstance(data, dict) else None
            if not isinstance(entries, list):
                raise GatewayResponseError(
                    "Invalid response from gateway /v1/models endpoint", provider="gateway"
                )
            valid = [e for e in entries if isinstance(e, dict) and e.get("id")]
            span.set_attribute("gateway.model_count", len(valid))
            _log.info("gateway_models_fetched", count=len(valid))
            return valid

    async def model_info(self, model_id: str) -> ModelCapabilities:
        """Capabilities of *model_id*, cached for 24 hours.

        Never raises for a lookup failure: a basic chat-mode descriptor is
        returned instead so one bad model does not spoil a whole key.
        """
        cache_key = f"model_info:{model_id}"
        cached = await self._cache.get(cache_key)
        if cached:
            return parse_model_info(cached)

        try:
            raw = await self._request("GET", "/model/info", params={"model": model_id})
        except (ProviderHTTPError, GatewayResponseError, httpx.HTTPError) as exc:
            _log.warning("gateway_model_info_failed", model=model_id, error=str(exc))
            return ModelCapabilities(id=model_id, name=model_id, provider="unknown", mode="chat")

        # The endpoint answers either with the entry itself or ``{"data": [entry]}``.
        if isinstance(raw, dict) and isinstance(raw.get("data"), list) and raw["data"]:
            raw = raw["data"][0]
        if not isinstance(raw, dict):
            _log.warning("gateway_model_info_malformed", model=model_id)
            return ModelCapabilities(id=model_id, name=model_id, provider="unknown", mode="chat")

        raw.setdefault("model_name", model_id)
        await self._cache.set(cache_key, raw, ttl=MODEL_INFO_TTL_SECONDS)
        return parse_model_info(raw)

    # ------------------------------------------------------------------
    # Virtual keys
    # ------------------------------------------------------------------

    async def request_key(self, **params: Any) -> VirtualKey:
        """Issue a virtual key and describe everything it allows.

        *params* are forwarded to ``POST /key/generate`` unchanged
        (``user_id``, ``team_id``, ``duration``, ``models``, ``tags``,
        ``max_budget`` and so on).
        """
        raw = await self._request("POST", "/key/generate", json=params)
        if not isinstance(raw, dict):
            raise GatewayResponseError(
                "Invalid response from gateway /key/generate endpoint", provider="gateway"
            )

        models = tuple([await self.model_info(m) for m in raw.get("models") or []])
        key = VirtualKey(
            key=raw.get("key") or raw.get("token") or "",
            models=models,
            features=aggregate_features(models),
            budget=_parse_budget(raw),
            rate_limit=_parse_rate_limit(raw),
            tags=tuple(raw.get("tags") or ()),
            expires_at=_parse_expiry(raw.get("expires")),
            user_id=raw.get("user_id"),
            team_id=raw.get("team_id"),
            metadata=raw.get("metadata") or {},
            aliases=raw.get("aliases") or {},
        )
        _log.info(
            "gateway_key_issued",
            user_id=key.user_id,
            team_id=key.team_id,
            model_count=len(models),
        )
        return key

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = {"Content-Type": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"

        response = await self._http.request(
            method,
            f"{self._base_url}{path}",
            headers=headers,
            timeout=self._config.timeout,
            **kwargs,
        )
        if response.is_error:
            raise error_from_response(response, provider="gateway")
        try:
            return response.json()
        except ValueError as exc:
            raise GatewayResponseError(
                f"Gateway returned non-JSON body for {path}",
                provider="gateway",
                original_error=exc,
            ) from exc
