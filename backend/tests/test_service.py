"""
Tests for the ReadingOrchestrator facade.
"""

import pytest

from conftest import LONG_TEXT, ScriptedAdapter

from provider_orchestrator.config import EMPTY_RESULT_TEXT
from provider_orchestrator.errors import ProviderCallError
from provider_orchestrator.service import BLENDED


def failing(name: str):
    return ProviderCallError(name, "boom")


class TestRequestReading:
    @pytest.mark.asyncio
    async def test_multiple_good_answers_are_blended(self, build):
        orch = build()

        result = await orch.request_reading("What does today hold?", deadline_s=2)

        assert result.provider_used == BLENDED
        assert result.text.startswith(orch.scorer.config.blend_header)
        assert result.text.count(orch.scorer.config.blend_separator) == 2
        assert result.confidence == 0.7
        assert sorted(result.providers_responded) == ["alpha", "beta", "gamma"]

    @pytest.mark.asyncio
    async def test_single_survivor_is_returned_verbatim(self, build):
        adapter = ScriptedAdapter({"alpha": failing("alpha"), "beta": failing("beta")})
        orch = build(adapter)

        result = await orch.request_reading("hi", deadline_s=2)

        assert result.provider_used == "gamma"
        assert result.text == LONG_TEXT

    @pytest.mark.asyncio
    async def test_low_confidence_answers_return_best(self, build):
        adapter = ScriptedAdapter({"alpha": "short", "beta": "tiny", "gamma": "small"})
        orch = build(adapter)

        result = await orch.request_reading("hi", deadline_s=2)

        assert result.provider_used in {"alpha", "beta", "gamma"}
        assert result.confidence == 0.5

    @pytest.mark.asyncio
    async def test_total_failure_returns_empty_result(self, build):
        adapter = ScriptedAdapter({n: failing(n) for n in ("alpha", "beta", "gamma", "local")})
        orch = build(adapter)

        result = await orch.request_reading("hi", deadline_s=2)

        assert result.provider_used == "none"
        assert result.confidence == 0.0
        assert result.text == EMPTY_RESULT_TEXT
        assert orch.metrics.empty_results.value == 1

    @pytest.mark.asyncio
    async def test_invalid_deadline_does_not_raise(self, build):
        adapter = ScriptedAdapter()
        orch = build(adapter)

        result = await orch.request_reading("hi", deadline_s=-1)

        assert result.provider_used == "none"
        assert adapter.calls == []
        assert orch.engine.patterns.to_dict() == {"invalid_request": 1}

    @pytest.mark.asyncio
    async def test_empty_input_is_rejected_without_calls(self, build):
        adapter = ScriptedAdapter()
        orch = build(adapter)

        result = await orch.request_reading("", deadline_s=2)

        assert result.provider_used == "none"
        assert adapter.calls == []
        assert orch.engine.patterns.to_dict() == {"invalid_request": 1}

    @pytest.mark.asyncio
    async def test_records_reading_metrics(self, build):
        orch = build()
        result = await orch.request_reading("hi", deadline_s=2)

        assert result.took_ms >= 0
        assert orch.metrics.readings_total.by_label() == {BLENDED: 1}
        assert orch.metrics.reading_latency.count == 1


class TestFacade:
    @pytest.mark.asyncio
    async def test_health_and_healing_delegate_to_engine(self, build):
        orch = build()
        assert await orch.force_healing_action("restore_providers")
        status = orch.get_health_status()
        assert status.recent_healing_actions == 1

    @pytest.mark.asyncio
    async def test_start_stop_closes_adapter(self, build):
        adapter = ScriptedAdapter()
        orch = build(adapter)
        await orch.start()
        assert orch.get_health_status().active
        await orch.stop()
        assert adapter.closed
        assert not orch.get_health_status().active
