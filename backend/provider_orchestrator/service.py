"""
Reading Orchestrator: Service Facade
======================================
Wires the shared services together and exposes the three caller-facing
operations:

    request_reading(input, deadline_s)  → ReadingResult   (never raises)
    get_health_status()                 → HealthStatus
    force_healing_action(name)          → bool

Everything is built once by build_orchestrator() and injected; there are
no module-level singletons.
"""

import logging
import time
from typing import Callable, Mapping, Optional

from pydantic import ValidationError

from .adapters import HttpProviderAdapter, ProviderAdapter
from .circuit_breaker import CircuitBreakerRegistry
from .config import EMPTY_RESULT_TEXT, PROVIDERS, OrchestratorConfig, ProviderDescriptor
from .dispatcher import Dispatcher
from .engine import DecisionEngine, HealthSampler, LLMReasoningStrategy, system_memory_ratio
from .healing import ErrorPatterns, build_default_healing
from .history import DecisionHistory
from .learning import LearningAdjuster, LearningModel
from .metrics import MetricsCollector
from .models import HealthStatus, InferenceRequest, ReadingResult
from .provider_registry import ProviderRegistry
from .scorer import EMPTY_PROVIDER, ResponseScorer
from .usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

BLENDED = "blended"


class ReadingOrchestrator:
    """
    Usage:
        orchestrator = build_orchestrator()
        await orchestrator.start()
        result = await orchestrator.request_reading("...")
        await orchestrator.stop()
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        registry: ProviderRegistry,
        dispatcher: Dispatcher,
        scorer: ResponseScorer,
        metrics: MetricsCollector,
        engine: DecisionEngine,
        adapter: ProviderAdapter,
    ):
        self.config = config
        self.registry = registry
        self.dispatcher = dispatcher
        self.scorer = scorer
        self.metrics = metrics
        self.engine = engine
        self.adapter = adapter

    async def start(self):
        await self.engine.start()

    async def stop(self):
        await self.engine.stop()
        aclose = getattr(self.adapter, "aclose", None)
        if aclose is not None:
            await aclose()

    async def request_reading(
        self,
        input: str,
        deadline_s: Optional[float] = None,
        capability: Optional[str] = None,
    ) -> ReadingResult:
        """
        Fan out, score, blend. Always returns a ReadingResult:
        ≥2 responses above the floor → provider_used="blended"
        otherwise                     → the best single provider
        nothing at all                → provider_used="none", confidence 0
        """
        start = time.monotonic()
        try:
            request = InferenceRequest(input=input, deadline_s=deadline_s, capability=capability)
            responses = await self.dispatcher.orchestrate(request)
        except ValidationError as e:
            logger.warning(f"Rejected reading request: {e.errors()[0]['msg']}")
            self.engine.record_error_pattern("invalid_request")
            responses = []
        except Exception as e:
            logger.error(f"Reading orchestration failed: {e}")
            self.engine.record_error_pattern("orchestration_failed")
            responses = []

        result = self._build_result(responses)
        result.took_ms = round((time.monotonic() - start) * 1000, 1)
        self.metrics.record_reading(result.provider_used, result.took_ms, result.confidence)
        logger.info(
            f"📖 Reading served by {result.provider_used} "
            f"(confidence={result.confidence:.2f}, {len(responses)} responded, {result.took_ms:.0f}ms)"
        )
        return result

    def _build_result(self, responses) -> ReadingResult:
        if not responses:
            return ReadingResult(
                text=EMPTY_RESULT_TEXT,
                provider_used=EMPTY_PROVIDER,
                confidence=0.0,
            )

        responded = [r.provider_id for r in responses]
        qualifying = self.scorer.qualifying(responses)
        if len(qualifying) >= 2:
            return ReadingResult(
                text=self.scorer.blend(responses),
                provider_used=BLENDED,
                confidence=max(r.confidence for r in qualifying),
                providers_responded=responded,
            )

        best = self.scorer.select_best(responses)
        return ReadingResult(
            text=best.text,
            provider_used=best.provider_id,
            confidence=best.confidence,
            providers_responded=responded,
        )

    def get_health_status(self) -> HealthStatus:
        return self.engine.status()

    async def force_healing_action(self, name: str) -> bool:
        return await self.engine.force_healing_action(name)


def build_orchestrator(
    config: Optional[OrchestratorConfig] = None,
    providers: Optional[Mapping[str, ProviderDescriptor]] = None,
    adapter: Optional[ProviderAdapter] = None,
    clock: Callable[[], float] = time.monotonic,
    memory_probe: Callable[[], float] = system_memory_ratio,
) -> ReadingOrchestrator:
    """Construct every shared service and inject them into one orchestrator."""
    config = config or OrchestratorConfig()
    providers = dict(providers if providers is not None else PROVIDERS)
    adapter = adapter or HttpProviderAdapter()

    metrics = MetricsCollector(buffer_size=config.metrics_buffer_size, clock=clock)
    ledger = UsageLedger(window_s=config.usage_window_s, clock=clock)
    breakers = CircuitBreakerRegistry(
        failure_threshold=config.cb_failure_threshold,
        cooldown_s=config.cb_cooldown_s,
        clock=clock,
        on_open=metrics.record_circuit_trip,
    )
    registry = ProviderRegistry(providers, ledger, breakers, clock=clock)
    scorer = ResponseScorer(providers, config.scoring)
    dispatcher = Dispatcher(registry, adapter, scorer, metrics, config)

    history = DecisionHistory(max_size=config.decision_history_size)
    model = LearningModel()
    adjuster = LearningAdjuster(
        model,
        history,
        step=config.learning_step,
        sample_size=config.learning_sample_size,
    )
    patterns = ErrorPatterns()
    healing = build_default_healing(
        registry, breakers, history, patterns, history_keep=config.learning_sample_size,
    )
    sampler = HealthSampler(
        registry, metrics, error_window_s=config.error_rate_window_s, memory_probe=memory_probe,
    )
    reasoner = None
    if config.use_llm_reasoner:
        reasoner = LLMReasoningStrategy(dispatcher, patterns, timeout_s=config.reasoning_timeout_s)

    engine = DecisionEngine(
        config, registry, metrics, history, model, adjuster, healing, sampler,
        reasoner=reasoner, patterns=patterns,
    )
    logger.info(
        f"✅ Orchestrator wired: {len(providers)} providers, fanout={config.max_fanout}, "
        f"reasoner={'llm' if reasoner else 'rules'}"
    )
    return ReadingOrchestrator(config, registry, dispatcher, scorer, metrics, engine, adapter)
