"""
Adapter tests against httpx.MockTransport (no network).
"""

import json

import httpx
import pytest

from provider_orchestrator.adapters import HttpProviderAdapter, estimate_tokens
from provider_orchestrator.config import PROVIDERS
from provider_orchestrator.errors import ProviderCallError, ProviderExhaustedError
from provider_orchestrator.models import InferenceRequest

ENV = {
    "DEEPSEEK_API_KEY": "ds-key",
    "GOOGLE_AI_KEY": "g-key",
    "COHERE_API_KEY": "co-key",
    "HUGGINGFACE_API_KEY": "hf-key",
    "OPENROUTER_API_KEY": "or-key",
}


def adapter_for(handler, environ=ENV):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpProviderAdapter(client=client, environ=environ)


REQUEST = InferenceRequest(input="What does today hold?")


class TestRequestShapes:
    @pytest.mark.asyncio
    async def test_openai_compatible(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "choices": [{"message": {"content": "  A bright day.  "}}],
                "usage": {"total_tokens": 42},
            })

        result = await adapter_for(handler).call(PROVIDERS["deepseek"], REQUEST, timeout=5)

        assert seen["url"] == "https://api.deepseek.com/v1/chat/completions"
        assert seen["auth"] == "Bearer ds-key"
        assert seen["body"]["model"] == "deepseek-chat"
        assert seen["body"]["messages"][0]["content"] == REQUEST.input
        assert result.text == "A bright day."
        assert result.tokens_used == 42

    @pytest.mark.asyncio
    async def test_extra_headers_sent(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["title"] = request.headers.get("X-Title")
            return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

        await adapter_for(handler).call(PROVIDERS["openrouter"], REQUEST, timeout=5)
        assert seen["title"] == "Provider Orchestrator"

    @pytest.mark.asyncio
    async def test_gemini(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["key"] = request.headers["x-goog-api-key"]
            return httpx.Response(200, json={
                "candidates": [{"content": {"parts": [{"text": "Gemini says hi"}]}}],
                "usageMetadata": {"totalTokenCount": 7},
            })

        result = await adapter_for(handler).call(PROVIDERS["google-gemini"], REQUEST, timeout=5)

        assert seen["url"].endswith("/v1beta/models/gemini-1.5-flash:generateContent")
        assert seen["key"] == "g-key"
        assert result.text == "Gemini says hi"
        assert result.tokens_used == 7

    @pytest.mark.asyncio
    async def test_cohere_estimates_tokens(self):
        def handler(request: httpx.Request):
            return httpx.Response(200, json={"generations": [{"text": "x" * 40}]})

        result = await adapter_for(handler).call(PROVIDERS["cohere"], REQUEST, timeout=5)
        assert result.tokens_used == estimate_tokens("x" * 40) == 10

    @pytest.mark.asyncio
    async def test_huggingface_list_payload(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            return httpx.Response(200, json=[{"generated_text": "HF text"}])

        result = await adapter_for(handler).call(PROVIDERS["huggingface"], REQUEST, timeout=5)
        assert seen["url"].endswith("/models/google/flan-t5-large")
        assert result.text == "HF text"

    @pytest.mark.asyncio
    async def test_ollama_needs_no_key(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"response": "local", "prompt_eval_count": 3, "eval_count": 4})

        result = await adapter_for(handler, environ={}).call(PROVIDERS["ollama-local"], REQUEST, timeout=5)

        assert seen["body"]["stream"] is False
        assert seen["auth"] is None
        assert result.tokens_used == 7


class TestFailures:
    @pytest.mark.asyncio
    async def test_rate_limited_is_exhausted(self):
        adapter = adapter_for(lambda r: httpx.Response(429, json={}))
        with pytest.raises(ProviderExhaustedError) as exc:
            await adapter.call(PROVIDERS["deepseek"], REQUEST, timeout=5)
        assert exc.value.status_code == 429

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        adapter = adapter_for(lambda r: httpx.Response(503, text="down"))
        with pytest.raises(ProviderCallError) as exc:
            await adapter.call(PROVIDERS["deepseek"], REQUEST, timeout=5)
        assert exc.value.retryable
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_client_error_not_retryable(self):
        adapter = adapter_for(lambda r: httpx.Response(401, text="bad key"))
        with pytest.raises(ProviderCallError) as exc:
            await adapter.call(PROVIDERS["deepseek"], REQUEST, timeout=5)
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_malformed_payload(self):
        adapter = adapter_for(lambda r: httpx.Response(200, json={"unexpected": True}))
        with pytest.raises(ProviderCallError, match="unusable payload"):
            await adapter.call(PROVIDERS["deepseek"], REQUEST, timeout=5)

    @pytest.mark.asyncio
    async def test_empty_text(self):
        adapter = adapter_for(
            lambda r: httpx.Response(200, json={"choices": [{"message": {"content": "   "}}]})
        )
        with pytest.raises(ProviderCallError, match="empty response"):
            await adapter.call(PROVIDERS["deepseek"], REQUEST, timeout=5)

    @pytest.mark.asyncio
    async def test_transport_timeout(self):
        def handler(request: httpx.Request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ProviderCallError, match="timeout"):
            await adapter_for(handler).call(PROVIDERS["deepseek"], REQUEST, timeout=5)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ProviderCallError, match="transport error"):
            await adapter_for(handler).call(PROVIDERS["deepseek"], REQUEST, timeout=5)

    @pytest.mark.asyncio
    async def test_missing_key(self):
        adapter = adapter_for(lambda r: httpx.Response(200, json={}), environ={})
        with pytest.raises(ProviderCallError) as exc:
            await adapter.call(PROVIDERS["deepseek"], REQUEST, timeout=5)
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_aclose(self):
        adapter = adapter_for(lambda r: httpx.Response(200, json={}))
        await adapter.aclose()
        assert adapter._client.is_closed
