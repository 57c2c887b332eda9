"""
Async tests for the dispatcher: fan-out, deadlines, failure isolation
and the fallback path.
"""

import asyncio
import time

import pytest

from conftest import LONG_TEXT, ScriptedAdapter

from provider_orchestrator.adapters import ProviderCallResult
from provider_orchestrator.dispatcher import _Collection
from provider_orchestrator.errors import ProviderCallError, ProviderExhaustedError
from provider_orchestrator.models import InferenceRequest, OperationalState


def failing(name: str):
    return ProviderCallError(name, "boom")


class TestFanOut:
    @pytest.mark.asyncio
    async def test_all_succeed(self, build):
        orch = build()
        responses = await orch.dispatcher.orchestrate(InferenceRequest(input="hi", deadline_s=2))

        assert sorted(r.provider_id for r in responses) == ["alpha", "beta", "gamma"]
        for name in ("alpha", "beta", "gamma"):
            assert orch.registry.ledger.get(name).request_count == 1
            assert orch.registry.breakers.get(name).stats.total_successes == 1

    @pytest.mark.asyncio
    async def test_fanout_limit_takes_most_constrained(self, build):
        adapter = ScriptedAdapter()
        orch = build(adapter)
        await orch.dispatcher.orchestrate(InferenceRequest(input="hi", deadline_s=2), max_fanout=2)
        assert sorted(adapter.calls) == ["alpha", "beta"]

    @pytest.mark.asyncio
    async def test_responses_are_scored(self, build):
        orch = build()
        responses = await orch.dispatcher.orchestrate(InferenceRequest(input="hi", deadline_s=2))
        assert all(r.confidence == 0.7 for r in responses)

    @pytest.mark.asyncio
    async def test_survivor_answers_when_others_fail(self, build):
        adapter = ScriptedAdapter({"alpha": failing("alpha"), "beta": failing("beta")})
        orch = build(adapter)

        responses = await orch.dispatcher.orchestrate(InferenceRequest(input="hi", deadline_s=2))

        assert [r.provider_id for r in responses] == ["gamma"]
        assert "local" not in adapter.calls
        assert orch.registry.breakers.get("alpha").stats.total_failures == 1
        assert orch.metrics.provider_failures.value == 2


class TestDeadline:
    @pytest.mark.asyncio
    async def test_returns_by_deadline(self, build):
        adapter = ScriptedAdapter({"alpha": (5.0, LONG_TEXT), "beta": (5.0, LONG_TEXT)})
        orch = build(adapter)

        start = time.monotonic()
        responses = await orch.dispatcher.orchestrate(InferenceRequest(input="hi", deadline_s=0.3))
        elapsed = time.monotonic() - start

        assert elapsed < 0.3 + 0.5
        assert [r.provider_id for r in responses] == ["gamma"]

    @pytest.mark.asyncio
    async def test_fast_slow_failing_scenario(self, build):
        """A fast, B slow past the deadline, C fails at once: the answer is A's."""
        adapter = ScriptedAdapter({
            "alpha": LONG_TEXT,
            "beta": (30.0, LONG_TEXT),
            "gamma": failing("gamma"),
        })
        orch = build(adapter, call_timeout_s=30.0)

        responses = await orch.dispatcher.orchestrate(
            InferenceRequest(input="hi", deadline_s=0.3), max_fanout=3
        )
        await asyncio.sleep(0.2)

        assert [r.provider_id for r in responses] == ["alpha"]
        breakers = orch.registry.breakers
        assert breakers.get("alpha").stats.total_successes == 1
        assert breakers.get("beta").stats.total_failures == 1
        assert breakers.get("gamma").stats.total_failures == 1
        # B never counted as usage
        assert orch.registry.ledger.get("beta").request_count == 0
        assert orch.dispatcher.detached_count == 0

    @pytest.mark.asyncio
    async def test_slow_call_bounded_by_call_timeout(self, build):
        adapter = ScriptedAdapter({"alpha": (5.0, LONG_TEXT)})
        orch = build(adapter, call_timeout_s=0.1)

        responses = await orch.dispatcher.orchestrate(InferenceRequest(input="hi", deadline_s=3))

        assert sorted(r.provider_id for r in responses) == ["beta", "gamma"]
        assert orch.registry.breakers.get("alpha").stats.total_failures == 1

    @pytest.mark.asyncio
    async def test_late_result_discarded_and_counted_once(self, build):
        """A call that outlives its own timeout still lands after the caller stopped waiting."""

        class StubbornAdapter(ScriptedAdapter):
            async def call(self, desc, request, timeout):
                if desc.name != "beta":
                    return await super().call(desc, request, timeout)
                self.calls.append(desc.name)
                try:
                    await asyncio.sleep(5.0)
                except asyncio.CancelledError:
                    # Ignores the cancellation and answers anyway
                    await asyncio.sleep(0.2)
                return ProviderCallResult(text=LONG_TEXT, tokens_used=10)

        orch = build(StubbornAdapter(), call_timeout_s=30.0)

        responses = await orch.dispatcher.orchestrate(
            InferenceRequest(input="hi", deadline_s=0.3), max_fanout=3
        )
        assert sorted(r.provider_id for r in responses) == ["alpha", "gamma"]

        await asyncio.sleep(0.5)
        stats = orch.registry.breakers.get("beta").stats
        assert stats.total_failures == 1
        assert stats.total_successes == 0
        assert orch.registry.ledger.get("beta").request_count == 0
        assert orch.dispatcher.detached_count == 0

    @pytest.mark.asyncio
    async def test_result_after_collection_closed_is_dropped(self, build):
        adapter = ScriptedAdapter()
        orch = build(adapter)
        collection = _Collection()
        collection.closed = True

        response = await orch.dispatcher._guarded_call(
            orch.registry.get("alpha"), InferenceRequest(input="hi", deadline_s=2), None, collection
        )

        assert response is None
        assert adapter.calls == ["alpha"]
        stats = orch.registry.breakers.get("alpha").stats
        assert stats.total_failures == 1
        assert stats.total_successes == 0
        assert orch.registry.ledger.get("alpha").request_count == 0
        assert orch.metrics.provider_failures.by_label() == {"alpha": 1}


class TestFallback:
    @pytest.mark.asyncio
    async def test_fallback_after_total_failure(self, build):
        adapter = ScriptedAdapter({n: failing(n) for n in ("alpha", "beta", "gamma")})
        orch = build(adapter)

        responses = await orch.dispatcher.orchestrate(InferenceRequest(input="hi", deadline_s=2))

        assert [r.provider_id for r in responses] == ["local"]
        assert adapter.calls.count("local") == 1
        assert orch.metrics.fallback_uses.value == 1

    @pytest.mark.asyncio
    async def test_no_eligible_providers_goes_straight_to_fallback(self, build):
        adapter = ScriptedAdapter()
        orch = build(adapter)
        for name in ("alpha", "beta", "gamma"):
            orch.registry.mark_exhausted(name)

        responses = await orch.dispatcher.orchestrate(InferenceRequest(input="hi", deadline_s=2))

        assert adapter.calls == ["local"]
        assert responses[0].provider_id == "local"

    @pytest.mark.asyncio
    async def test_graceful_total_failure(self, build):
        adapter = ScriptedAdapter({"local": failing("local")})
        orch = build(adapter)
        for name in ("alpha", "beta", "gamma"):
            orch.registry.mark_exhausted(name)

        responses = await orch.dispatcher.orchestrate(InferenceRequest(input="hi", deadline_s=2))

        assert responses == []

    @pytest.mark.asyncio
    async def test_fallback_skipped_when_deadline_spent(self, build):
        adapter = ScriptedAdapter({n: (1.0, LONG_TEXT) for n in ("alpha", "beta", "gamma")})
        orch = build(adapter)

        responses = await orch.dispatcher.orchestrate(InferenceRequest(input="hi", deadline_s=0.2))

        assert responses == []
        assert "local" not in adapter.calls


class TestFailureBookkeeping:
    @pytest.mark.asyncio
    async def test_quota_response_exhausts_provider(self, build):
        adapter = ScriptedAdapter({"alpha": ProviderExhaustedError("alpha")})
        orch = build(adapter)

        await orch.dispatcher.orchestrate(InferenceRequest(input="hi", deadline_s=2))

        assert orch.registry.state("alpha") == OperationalState.EXHAUSTED
        assert orch.registry.breakers.get("alpha").stats.total_failures == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, build):
        adapter = ScriptedAdapter({"alpha": RuntimeError("driver bug")})
        orch = build(adapter)

        responses = await orch.dispatcher.orchestrate(InferenceRequest(input="hi", deadline_s=2))

        assert sorted(r.provider_id for r in responses) == ["beta", "gamma"]
        assert orch.registry.breakers.get("alpha").stats.total_failures == 1

    @pytest.mark.asyncio
    async def test_repeated_failures_open_breaker(self, build):
        adapter = ScriptedAdapter({"alpha": failing("alpha")})
        orch = build(adapter)

        for _ in range(3):
            await orch.dispatcher.orchestrate(InferenceRequest(input="hi", deadline_s=2))
        adapter.calls.clear()
        await orch.dispatcher.orchestrate(InferenceRequest(input="hi", deadline_s=2))

        assert "alpha" not in adapter.calls
        assert orch.metrics.circuit_breaker_trips.value == 1
