"""Integration tests for the complete chat HTTP flow.

These tests make *real* API calls and require valid API keys in the environment.
All tests are marked ``integration`` and are excluded from the default ``pytest``
run.  Run them explicitly when you have keys and infrastructure available:

    # Run only integration tests
    pytest -m integration -v

    # Run with a specific provider key only
    ANTHROPIC_API_KEY=sk-ant-... pytest -m integration -v

Gateway tests additionally require a LiteLLM proxy (``LITELLM_BASE_URL``).
"""

# Load .env before any app imports so Settings and the skip checks see the keys.
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent.parent / ".env", override=True)

import json  # noqa: E402
import os  # noqa: E402
from collections.abc import AsyncGenerator  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from llmchat.main import app  # noqa: E402
from llmchat.providers import (  # noqa: E402
    CatalogCache,
    ChatCompletionAdapter,
    ChatService,
    GatewayClient,
    GatewayConfig,
    ModelCatalog,
    ProviderCredentials,
    RetryPolicy,
)

# ---------------------------------------------------------------------------
# Module-level integration marker, applied to every test in this file
# ---------------------------------------------------------------------------
pytestmark = pytest.mark.integration

# ---------------------------------------------------------------------------
# Skip conditions evaluated at collection time
# ---------------------------------------------------------------------------
_HAS_ANTHROPIC = bool(os.environ.get("ANTHROPIC_API_KEY"))
_HAS_OPENAI = bool(os.environ.get("OPENAI_API_KEY"))
_GATEWAY_URL = os.environ.get("LITELLM_BASE_URL")

needs_anthropic = pytest.mark.skipif(
    not _HAS_ANTHROPIC,
    reason="ANTHROPIC_API_KEY not set; skipping Anthropic integration test",
)
needs_openai = pytest.mark.skipif(
    not _HAS_OPENAI,
    reason="OPENAI_API_KEY not set; skipping OpenAI integration test",
)
needs_gateway = pytest.mark.skipif(
    not _GATEWAY_URL,
    reason="LITELLM_BASE_URL not set; skipping gateway integration test",
)

# ---------------------------------------------------------------------------
# Shared request bodies
# ---------------------------------------------------------------------------
_ANTHROPIC_MODEL = "claude-3-haiku-20240307"
_OPENAI_MODEL = "gpt-3.5-turbo"
_SHORT_PROMPT = [{"role": "user", "content": "Reply with exactly one word: hello"}]


def _frames(text: str) -> list[str]:
    return [line[6:] for line in text.splitlines() if line.startswith("data: ")]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient backed by the real FastAPI app with live providers.

    * ``max_retries=1``: fail fast; retry behaviour is covered by unit tests.
    * The service is attached to ``app.state`` and cleaned up after each test.
    """
    http_client = httpx.AsyncClient()
    gateway = GatewayClient(
        GatewayConfig(
            _GATEWAY_URL or "",
            os.environ.get("LITELLM_API_KEY"),
            enabled=bool(_GATEWAY_URL),
        ),
        http_client=http_client,
    )
    adapter = ChatCompletionAdapter(
        ProviderCredentials(
            openai_api_key=os.environ.get("OPENAI_API_KEY"),
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY"),
            gateway_api_key=os.environ.get("LITELLM_API_KEY"),
        ),
        http_client=http_client,
        gateway_base_url=_GATEWAY_URL,
        timeout=30,
    )
    app.state.service = ChatService(
        adapter, ModelCatalog(gateway=gateway, cache=CatalogCache()), RetryPolicy(max_retries=1)
    )
    app.state.gateway = gateway

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        timeout=httpx.Timeout(connect=10.0, read=30.0, write=10.0, pool=10.0),
    ) as ac:
        yield ac

    del app.state.service
    del app.state.gateway
    await http_client.aclose()


# ---------------------------------------------------------------------------
# End-to-end chat
# ---------------------------------------------------------------------------


class TestEndToEnd:
    @needs_openai
    async def test_openai_streaming(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/chat",
            json={"model": _OPENAI_MODEL, "provider": "openai", "messages": _SHORT_PROMPT},
        )
        assert response.status_code == 200
        frames = _frames(response.text)
        assert frames[-1] == "[DONE]"
        content = "".join(json.loads(f)["content"] for f in frames[:-1])
        assert "hello" in content.lower()

    @needs_anthropic
    async def test_anthropic_streaming(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/chat",
            json={"model": _ANTHROPIC_MODEL, "provider": "anthropic", "messages": _SHORT_PROMPT},
        )
        assert response.status_code == 200
        frames = _frames(response.text)
        assert frames[-1] == "[DONE]"
        assert all("content" in json.loads(f) for f in frames[:-1])

    @needs_anthropic
    async def test_anthropic_non_streaming(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/chat",
            json={
                "model": _ANTHROPIC_MODEL,
                "provider": "anthropic",
                "messages": _SHORT_PROMPT,
                "stream": False,
            },
        )
        assert response.status_code == 200
        body = response.json()
        assert body["role"] == "assistant"
        assert body["content"]

    @needs_anthropic
    async def test_system_prompt_respected(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/chat",
            json={
                "model": _ANTHROPIC_MODEL,
                "provider": "anthropic",
                "messages": [
                    {"role": "system", "content": "Always answer in uppercase."},
                    *_SHORT_PROMPT,
                ],
                "stream": False,
            },
        )
        assert response.status_code == 200
        assert response.json()["content"].strip().isupper()


# ---------------------------------------------------------------------------
# Failure paths against the real APIs
# ---------------------------------------------------------------------------


class TestRealErrors:
    @needs_openai
    async def test_invalid_openai_key_is_auth_error(self, client: AsyncClient) -> None:
        service: ChatService = app.state.service
        service.adapter = ChatCompletionAdapter(ProviderCredentials(openai_api_key="sk-invalid"))
        try:
            response = await client.post(
                "/api/chat",
                json={
                    "model": _OPENAI_MODEL,
                    "provider": "openai",
                    "messages": _SHORT_PROMPT,
                    "stream": False,
                },
            )
        finally:
            await service.adapter.aclose()

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "AUTH_ERROR"


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class TestGateway:
    @needs_gateway
    async def test_catalog_includes_gateway_models(self, client: AsyncClient) -> None:
        response = await client.post("/api/models/refresh")
        assert response.status_code == 200
        providers = {m["provider"] for m in response.json()["models"]}
        assert "gateway" in providers

    @needs_gateway
    async def test_readiness_checks_gateway(self, client: AsyncClient) -> None:
        response = await client.get("/health/ready")
        assert response.json()["checks"].get("gateway") == "ok"

    @needs_gateway
    async def test_gateway_streaming(self, client: AsyncClient) -> None:
        models = (await client.get("/api/models")).json()["models"]
        gateway_model = next(m["id"] for m in models if m["provider"] == "gateway")
        response = await client.post(
            "/api/chat",
            json={"model": gateway_model, "provider": "gateway", "messages": _SHORT_PROMPT},
        )
        assert response.status_code == 200
        assert _frames(response.text)[-1] == "[DONE]"
