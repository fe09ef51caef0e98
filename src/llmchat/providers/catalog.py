"""Merged model catalog: built-in models plus whatever the gateway offers.

The gateway list is cached for a fixed TTL.  When a refresh fails the last
good list keeps being served, and with no cache at all the built-in models
are still returned, so a gateway outage never empties the catalog.
"""

import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog
from opentelemetry import trace

from llmchat.providers.gateway import GatewayClient
from llmchat.providers.models import BUILTIN_MODELS, ModelDescriptor, ProviderId
from llmchat.providers.naming import display_name, estimate_context_window

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)

CATALOG_TTL_SECONDS = 5 * 60


@dataclass
class CatalogCache:
    """Gateway models from the last successful fetch."""

    ttl: float = CATALOG_TTL_SECONDS
    entries: dict[str, ModelDescriptor] = field(default_factory=dict)
    fetched_at: float | None = None

    @property
    def populated(self) -> bool:
        return self.fetched_at is not None

    def is_fresh(self, now: float) -> bool:
        return self.fetched_at is not None and now - self.fetched_at < self.ttl

    def store(self, models: Iterable[ModelDescriptor], now: float) -> None:
        self.entries = {m.id: m for m in dedupe(models)}
        self.fetched_at = now

    def clear(self) -> None:
        self.entries = {}
        self.fetched_at = None


def descriptor_from_entry(entry: dict[str, Any]) -> ModelDescriptor:
    """Turn one gateway ``/v1/models`` entry into a :class:`ModelDescriptor`."""
    model_id = str(entry["id"])
    return ModelDescriptor(
        id=model_id,
        display_name=display_name(model_id),
        provider=ProviderId.GATEWAY,
        context_window_tokens=estimate_context_window(model_id),
    )


def dedupe(models: Iterable[ModelDescriptor]) -> list[ModelDescriptor]:
    """Drop every descriptor whose id was already seen; first occurrence wins."""
    seen: set[str] = set()
    unique: list[ModelDescriptor] = []
    for model in models:
        if model.id in seen:
            continue
        seen.add(model.id)
        unique.append(model)
    return unique


def merge(*sources: Iterable[ModelDescriptor]) -> list[ModelDescriptor]:
    """Concatenate, dedupe by id, and sort by provider then display name."""
    combined = dedupe(m for source in sources for m in source)
    return sorted(combined, key=lambda m: (m.provider.value, m.display_name, m.id))


class ModelCatalog:
    """Serves the merged model list.

    Args:
        gateway: Discovery client; ``None`` (or an unconfigured gateway)
            means built-in models only.
        cache: Holder for the gateway list.  Injected so callers can share
            or inspect it; a fresh one is created when omitted.
        builtin: Models that are always present.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        gateway: GatewayClient | None = None,
        cache: CatalogCache | None = None,
        builtin: Iterable[ModelDescriptor] = BUILTIN_MODELS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._gateway = gateway
        self._cache = cache if cache is not None else CatalogCache()
        self._builtin = tuple(builtin)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._generation = 0

    @property
    def cache(self) -> CatalogCache:
        return self._cache

    @property
    def gateway_configured(self) -> bool:
        return self._gateway is not None and self._gateway.is_configured

    async def get_models(self) -> list[ModelDescriptor]:
        """Merged catalog; hits the gateway at most once per TTL window."""
        if not self.gateway_configured:
            return merge(self._builtin)
        if self._cache.is_fresh(self._clock()):
            return merge(self._builtin, self._cache.entries.values())
        return merge(self._builtin, await self._fetch(force=False))

    async def refresh(self) -> list[ModelDescriptor]:
        """Re-fetch the gateway list regardless of the TTL."""
        if not self.gateway_configured:
            return merge(self._builtin)
        return merge(self._builtin, await self._fetch(force=True))

    async def find(
        self, model_id: str, provider: ProviderId | None = None
    ) -> ModelDescriptor | None:
        """Descriptor for *model_id*, optionally restricted to *provider*."""
        for model in await self.get_models():
            if model.id == model_id and (provider is None or model.provider == provider):
                return model
        return None

    async def _fetch(self, force: bool) -> list[ModelDescriptor]:
        # Callers that queued behind an in-flight fetch reuse its result.
        generation = self._generation
        async with self._lock:
            if self._cache.populated and (
                self._generation != generation
                or (not force and self._cache.is_fresh(self._clock()))
            ):
                return list(self._cache.entries.values())

            assert self._gateway is not None
            with _tracer.start_as_current_span("catalog.refresh") as span:
                try:
                    entries = await self._gateway.fetch_model_entries()
                    models = [descriptor_from_entry(e) for e in entries]
                except Exception as exc:
                    span.record_exception(exc)
                    if self._cache.populated:
                        _log.warning(
                            "catalog_refresh_failed_serving_stale",
                            error_type=type(exc).__name__,
                            error=str(exc),
                            cached_models=len(self._cache.entries),
                        )
                        return list(self._cache.entries.values())
                    _log.error(
                        "catalog_refresh_failed",
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    return []

                if not models:
                    _log.warning("catalog_gateway_returned_no_models")
                self._cache.store(models, self._clock())
                self._generation += 1
                span.set_attribute("catalog.gateway_models", len(self._cache.entries))
                _log.info(
                    "catalog_refreshed",
                    gateway_models=len(self._cache.entries),
                    builtin_models=len(self._builtin),
                )
                return list(self._cache.entries.values())
