"""
Provider Adapters
==================
Uniform call boundary over each vendor's HTTP+JSON API:

    await adapter.call(descriptor, request, timeout) -> ProviderCallResult

Every failure (network, timeout, non-2xx, unusable payload) is raised as
ProviderCallError; HTTP 429 as ProviderExhaustedError. Adapters honor the
timeout they are given and never retry.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from .config import ProviderDescriptor
from .errors import ProviderCallError, ProviderExhaustedError
from .models import InferenceRequest

logger = logging.getLogger(__name__)

MAX_OUTPUT_TOKENS = 500
TEMPERATURE = 0.8


@dataclass(frozen=True)
class ProviderCallResult:
    text: str
    tokens_used: int


class ProviderAdapter(Protocol):
    async def call(
        self,
        desc: ProviderDescriptor,
        request: InferenceRequest,
        timeout: float,
    ) -> ProviderCallResult:
        ...


def estimate_tokens(text: str) -> int:
    """Rough estimate when the provider does not report usage."""
    return max(1, len(text) // 4)


class HttpProviderAdapter:
    """
    httpx-based adapter covering every provider kind in the catalog.

    Usage:
        adapter = HttpProviderAdapter()
        result = await adapter.call(PROVIDERS["deepseek"], request, timeout=30)
        await adapter.aclose()
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self._client = client or httpx.AsyncClient()
        self._environ = os.environ if environ is None else environ

    async def aclose(self):
        await self._client.aclose()

    async def call(
        self,
        desc: ProviderDescriptor,
        request: InferenceRequest,
        timeout: float,
    ) -> ProviderCallResult:
        builder = getattr(self, f"_build_{desc.kind}", None)
        parser = getattr(self, f"_parse_{desc.kind}", None)
        if builder is None or parser is None:
            raise ProviderCallError(desc.name, f"unknown provider kind '{desc.kind}'", retryable=False)

        url, headers, payload = builder(desc, request.input)
        try:
            resp = await self._client.post(url, headers=headers, json=payload, timeout=timeout)
        except httpx.TimeoutException as e:
            raise ProviderCallError(desc.name, f"timeout after {timeout:.1f}s") from e
        except httpx.HTTPError as e:
            raise ProviderCallError(desc.name, f"transport error: {str(e)[:100]}") from e

        if resp.status_code == 429:
            raise ProviderExhaustedError(desc.name)
        if resp.status_code != 200:
            raise ProviderCallError(
                desc.name, f"HTTP {resp.status_code}", status_code=resp.status_code,
                retryable=resp.status_code >= 500,
            )

        try:
            data = resp.json()
            text, tokens = parser(data)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderCallError(desc.name, f"unusable payload: {e}") from e

        text = (text or "").strip()
        if not text:
            raise ProviderCallError(desc.name, "empty response")
        return ProviderCallResult(text=text, tokens_used=tokens or estimate_tokens(text))

    # ── Helpers ──────────────────────────────────────────────────

    def _api_key(self, desc: ProviderDescriptor) -> str:
        if not desc.api_key_env:
            return ""
        key = self._environ.get(desc.api_key_env, "")
        if not key:
            raise ProviderCallError(desc.name, f"{desc.api_key_env} not set", retryable=False)
        return key

    def _bearer(self, desc: ProviderDescriptor) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._api_key(desc)}",
            "Content-Type": "application/json",
        }
        headers.update(dict(desc.extra_headers))
        return headers

    # ── OpenAI-compatible (deepseek, openrouter, together, mistral) ──

    def _build_openai(self, desc: ProviderDescriptor, prompt: str):
        return (
            f"{desc.base_url}/chat/completions",
            self._bearer(desc),
            {
                "model": desc.model,
                "messages": [{"role": "user", "content": prompt}],
                "max_tokens": MAX_OUTPUT_TOKENS,
                "temperature": TEMPERATURE,
            },
        )

    @staticmethod
    def _parse_openai(data: Dict[str, Any]):
        text = data["choices"][0]["message"]["content"]
        tokens = (data.get("usage") or {}).get("total_tokens", 0)
        return text, tokens

    # ── Gemini ───────────────────────────────────────────────────

    def _build_gemini(self, desc: ProviderDescriptor, prompt: str):
        return (
            f"{desc.base_url}/v1beta/models/{desc.model}:generateContent",
            {"x-goog-api-key": self._api_key(desc), "Content-Type": "application/json"},
            {
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {
                    "temperature": TEMPERATURE,
                    "maxOutputTokens": MAX_OUTPUT_TOKENS,
                },
            },
        )

    @staticmethod
    def _parse_gemini(data: Dict[str, Any]):
        text = data["candidates"][0]["content"]["parts"][0]["text"]
        tokens = (data.get("usageMetadata") or {}).get("totalTokenCount", 0)
        return text, tokens

    # ── Cohere ───────────────────────────────────────────────────

    def _build_cohere(self, desc: ProviderDescriptor, prompt: str):
        return (
            f"{desc.base_url}/generate",
            self._bearer(desc),
            {
                "model": desc.model,
                "prompt": prompt,
                "max_tokens": MAX_OUTPUT_TOKENS,
                "temperature": TEMPERATURE,
            },
        )

    @staticmethod
    def _parse_cohere(data: Dict[str, Any]):
        return data["generations"][0]["text"], 0

    # ── Hugging Face inference ───────────────────────────────────

    def _build_huggingface(self, desc: ProviderDescriptor, prompt: str):
        return (
            f"{desc.base_url}/models/{desc.model}",
            self._bearer(desc),
            {
                "inputs": prompt,
                "parameters": {
                    "max_new_tokens": MAX_OUTPUT_TOKENS,
                    "temperature": TEMPERATURE,
                    "do_sample": True,
                },
            },
        )

    @staticmethod
    def _parse_huggingface(data: Any):
        if isinstance(data, list):
            data = data[0]
        return data["generated_text"], 0

    # ── Ollama (local fallback) ──────────────────────────────────

    def _build_ollama(self, desc: ProviderDescriptor, prompt: str):
        return (
            f"{desc.base_url}/generate",
            {"Content-Type": "application/json"},
            {"model": desc.model, "prompt": prompt, "stream": False},
        )

    @staticmethod
    def _parse_ollama(data: Dict[str, Any]):
        tokens = (data.get("prompt_eval_count") or 0) + (data.get("eval_count") or 0)
        return data["response"], tokens
