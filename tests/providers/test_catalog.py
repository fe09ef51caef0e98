"""Unit tests for ModelCatalog, CatalogCache and the merge helpers."""

import asyncio

import httpx
import pytest

from llmchat.providers.catalog import (
    CatalogCache,
    ModelCatalog,
    dedupe,
    descriptor_from_entry,
    merge,
)
from llmchat.providers.gateway import GatewayClient, GatewayConfig
from llmchat.providers.models import BUILTIN_MODELS, ModelDescriptor, ProviderId

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _FakeGateway:
    """Records /v1/models calls and answers from a script of responses."""

    def __init__(self, *responses: httpx.Response | Exception, delay: float = 0.0) -> None:
        self.responses = list(responses)
        self.calls = 0
        self.delay = delay

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.responses[min(self.calls, len(self.responses)) - 1]
        if isinstance(result, Exception):
            raise result
        return result


def _models(*ids: str) -> httpx.Response:
    return httpx.Response(200, json={"object": "list", "data": [{"id": i} for i in ids]})


def _catalog(
    fake: _FakeGateway | None,
    clock: _Clock | None = None,
    enabled: bool = True,
    ttl: float = 300,
) -> ModelCatalog:
    gateway = None
    if fake is not None:
        gateway = GatewayClient(
            GatewayConfig("http://gateway:4000", "sk-master", enabled=enabled),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake)),
        )
    return ModelCatalog(gateway=gateway, cache=CatalogCache(ttl=ttl), clock=clock or _Clock())


def _ids(models: list[ModelDescriptor]) -> list[str]:
    return [m.id for m in models]


# ---------------------------------------------------------------------------
# Helpers under test
# ---------------------------------------------------------------------------


class TestMergeHelpers:
    def test_descriptor_from_entry(self) -> None:
        model = descriptor_from_entry({"id": "gpt-4o", "owned_by": "openai"})
        assert model == ModelDescriptor("gpt-4o", "GPT-4o", ProviderId.GATEWAY, 128000)

    def test_dedupe_first_wins(self) -> None:
        a = ModelDescriptor("x", "First", ProviderId.OPENAI, 1)
        b = ModelDescriptor("x", "Second", ProviderId.GATEWAY, 2)
        assert dedupe([a, b]) == [a]

    def test_merge_sorts_by_provider_then_name(self) -> None:
        models = merge(
            [ModelDescriptor("z", "Zed", ProviderId.OPENAI, 1)],
            [
                ModelDescriptor("b", "Beta", ProviderId.GATEWAY, 1),
                ModelDescriptor("a", "Alpha", ProviderId.GATEWAY, 1),
            ],
            [ModelDescriptor("c", "Claude", ProviderId.ANTHROPIC, 1)],
        )
        assert _ids(models) == ["c", "a", "b", "z"]


class TestCatalogCache:
    def test_freshness(self) -> None:
        cache = CatalogCache(ttl=10)
        assert not cache.populated
        assert not cache.is_fresh(0)
        cache.store([], now=100)
        assert cache.populated
        assert cache.is_fresh(109.9)
        assert not cache.is_fresh(110)

    def test_clear(self) -> None:
        cache = CatalogCache()
        cache.store([ModelDescriptor("x", "X", ProviderId.GATEWAY, 1)], now=1)
        cache.clear()
        assert cache.entries == {}
        assert not cache.populated


# ---------------------------------------------------------------------------
# ModelCatalog
# ---------------------------------------------------------------------------


class TestBuiltinOnly:
    async def test_no_gateway(self) -> None:
        models = await _catalog(None).get_models()
        assert sorted(_ids(models)) == sorted(m.id for m in BUILTIN_MODELS)

    async def test_disabled_gateway_never_contacted(self) -> None:
        fake = _FakeGateway(_models("gpt-4o"))
        catalog = _catalog(fake, enabled=False)
        models = await catalog.get_models()
        assert fake.calls == 0
        assert len(models) == len(BUILTIN_MODELS)
        assert not catalog.gateway_configured

    async def test_refresh_without_gateway_returns_builtins(self) -> None:
        models = await _catalog(None).refresh()
        assert len(models) == len(BUILTIN_MODELS)

    async def test_builtins_sorted_anthropic_first(self) -> None:
        models = await _catalog(None).get_models()
        assert models[0].provider is ProviderId.ANTHROPIC
        assert models[-1].provider is ProviderId.OPENAI


class TestGatewayMerge:
    async def test_gateway_models_added(self) -> None:
        catalog = _catalog(_FakeGateway(_models("mistral-large", "gemini-pro")))
        models = await catalog.get_models()
        gateway_models = [m for m in models if m.provider is ProviderId.GATEWAY]
        assert _ids(gateway_models) == ["gemini-pro", "mistral-large"]
        assert gateway_models[0].display_name == "Gemini Pro"
        assert gateway_models[0].context_window_tokens == 32000

    async def test_ids_unique_builtin_wins(self) -> None:
        catalog = _catalog(_FakeGateway(_models("gpt-4", "gpt-4", "llama-3-8b")))
        models = await catalog.get_models()
        ids = _ids(models)
        assert len(ids) == len(set(ids))
        gpt4 = next(m for m in models if m.id == "gpt-4")
        assert gpt4.provider is ProviderId.OPENAI

    async def test_single_fetch_within_ttl(self) -> None:
        clock = _Clock()
        fake = _FakeGateway(_models("gpt-4o"))
        catalog = _catalog(fake, clock)

        await catalog.get_models()
        clock.now += 299
        await catalog.get_models()

        assert fake.calls == 1

    async def test_refetch_after_ttl(self) -> None:
        clock = _Clock()
        fake = _FakeGateway(_models("gpt-4o"), _models("gpt-4o", "gemini-pro"))
        catalog = _catalog(fake, clock)

        await catalog.get_models()
        clock.now += 301
        models = await catalog.get_models()

        assert fake.calls == 2
        assert "gemini-pro" in _ids(models)

    async def test_refresh_ignores_ttl(self) -> None:
        fake = _FakeGateway(_models("gpt-4o"), _models("gemini-pro"))
        catalog = _catalog(fake)

        await catalog.get_models()
        models = await catalog.refresh()

        assert fake.calls == 2
        assert "gemini-pro" in _ids(models)
        assert "gpt-4o" not in _ids(models)

    async def test_concurrent_callers_share_one_fetch(self) -> None:
        fake = _FakeGateway(_models("gpt-4o"), delay=0.05)
        catalog = _catalog(fake)

        results = await asyncio.gather(*(catalog.get_models() for _ in range(5)))

        assert fake.calls == 1
        assert all(_ids(r) == _ids(results[0]) for r in results)

    async def test_find(self) -> None:
        catalog = _catalog(_FakeGateway(_models("gpt-4o")))
        assert (await catalog.find("gpt-4o")).provider is ProviderId.GATEWAY
        assert await catalog.find("gpt-4o", ProviderId.OPENAI) is None
        assert (await catalog.find("gpt-4", ProviderId.OPENAI)).display_name == "GPT-4"
        assert await catalog.find("nope") is None


class TestFailures:
    async def test_stale_list_served_when_refresh_fails(self) -> None:
        clock = _Clock()
        fake = _FakeGateway(_models("gpt-4o"), httpx.Response(503, text="down"))
        catalog = _catalog(fake, clock)

        first = await catalog.get_models()
        clock.now += 301
        second = await catalog.get_models()

        assert fake.calls == 2
        assert _ids(second) == _ids(first)
        assert "gpt-4o" in _ids(second)

    @pytest.mark.parametrize(
        "failure",
        [
            httpx.Response(500, text="boom"),
            httpx.Response(200, json={"unexpected": True}),
            httpx.ConnectError("refused"),
            httpx.ReadTimeout("slow"),
        ],
    )
    async def test_failure_without_cache_returns_builtins(self, failure) -> None:
        catalog = _catalog(_FakeGateway(failure))
        models = await catalog.get_models()
        assert sorted(_ids(models)) == sorted(m.id for m in BUILTIN_MODELS)
        assert not catalog.cache.populated

    async def test_failed_refresh_retried_on_next_call(self) -> None:
        fake = _FakeGateway(httpx.ConnectError("refused"), _models("gpt-4o"))
        catalog = _catalog(fake)

        await catalog.get_models()
        models = await catalog.get_models()

        assert fake.calls == 2
        assert "gpt-4o" in _ids(models)

    async def test_empty_gateway_list_is_cached(self) -> None:
        fake = _FakeGateway(_models())
        catalog = _catalog(fake)

        await catalog.get_models()
        await catalog.get_models()

        assert fake.calls == 1
        assert catalog.cache.populated
