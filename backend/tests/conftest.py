"""
Shared fixtures: a small provider catalog, a controllable clock and a
scripted adapter that never touches the network.
"""

import asyncio
from dataclasses import replace
from typing import Dict, List

import pytest

from provider_orchestrator.adapters import ProviderCallResult
from provider_orchestrator.config import OrchestratorConfig, ProviderDescriptor
from provider_orchestrator.service import build_orchestrator


LONG_TEXT = "The path ahead is clear and steady. " * 4          # > 100 chars


def make_provider(
    name: str,
    rpm: int = 60,
    tokens: int = 50_000,
    weight: float = 0.0,
    fallback: bool = False,
    capabilities=("text-generation",),
) -> ProviderDescriptor:
    return ProviderDescriptor(
        name=name,
        base_url=f"http://{name}.test/v1",
        kind="openai",
        models=(f"{name}-model",),
        capabilities=capabilities,
        requests_per_minute=rpm,
        tokens_per_day=tokens,
        reliability_weight=weight,
        is_fallback=fallback,
    )


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ScriptedAdapter:
    """
    behaviors maps provider name to one of:
      "text"                 → succeed immediately
      SomeError(...)         → raise immediately
      (delay_s, behavior)    → sleep first, then the above
    Unlisted providers succeed with LONG_TEXT.
    """

    def __init__(self, behaviors: Dict[str, object] = None, tokens: int = 10):
        self.behaviors = dict(behaviors or {})
        self.tokens = tokens
        self.calls: List[str] = []
        self.closed = False

    async def call(self, desc, request, timeout):
        self.calls.append(desc.name)
        behavior = self.behaviors.get(desc.name, LONG_TEXT)
        if isinstance(behavior, tuple):
            delay, behavior = behavior
            await asyncio.sleep(delay)
        if isinstance(behavior, BaseException):
            raise behavior
        return ProviderCallResult(text=behavior, tokens_used=self.tokens)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def providers():
    catalog = [
        make_provider("alpha", rpm=30),
        make_provider("beta", rpm=60),
        make_provider("gamma", rpm=100),
        make_provider("local", rpm=999_999, tokens=999_999, fallback=True),
    ]
    return {p.name: p for p in catalog}


@pytest.fixture
def config():
    return OrchestratorConfig(call_timeout_s=2.0, fallback_timeout_s=2.0)


@pytest.fixture
def build(providers, config, clock):
    """Factory: build(adapter, **overrides) → wired ReadingOrchestrator."""

    def _build(adapter=None, memory=0.3, **config_overrides):
        cfg = config
        if config_overrides:
            cfg = replace(config, **config_overrides)
        return build_orchestrator(
            cfg,
            providers,
            adapter or ScriptedAdapter(),
            clock=clock,
            memory_probe=lambda: memory,
        )

    return _build
