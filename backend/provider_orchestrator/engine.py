"""
Decision Engine: Self-Adjusting Health Loop
=============================================

Architecture:
┌────────────────────────────────────────────────────────────────┐
│                      Decision Engine                           │
│                                                                │
│  ┌─────────────┐  ┌──────────────────┐  ┌───────────────────┐ │
│  │ Signal      │  │ Reasoner (opt.)  │  │ Execution         │ │
│  │ Sampling    │─►│ → Rule table     │─►│ heal / prevent /  │ │
│  │ (1s / 5s)   │  │ (always works)   │  │ optimize / escal. │ │
│  └─────────────┘  └──────────────────┘  └───────────────────┘ │
│       ▲                                        │               │
│       │          ┌──────────────────┐          ▼               │
│       └──────────│ Learning Adjuster│◄── Decision History      │
│                  │ (every 30s)      │    + assessed outcome    │
│                  └──────────────────┘                          │
└────────────────────────────────────────────────────────────────┘

Signals:
1. Memory pressure    : psutil virtual memory ratio
2. Error rate         : failed / total provider calls, last 60s
3. Latency tail       : p95 provider latency
4. Open breakers      : providers currently rejected
5. Exhausted / active : registry state counts

The rule table is the mandatory path. A pluggable ReasoningStrategy may be
consulted first; anything it fails to produce degrades to the rules.
"""

import asyncio
import json
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import psutil

from .config import OrchestratorConfig
from .dispatcher import Dispatcher
from .errors import ReasoningError
from .healing import (
    AI_SERVICE_FAILURE,
    CLEAR_CACHES,
    MEMORY_LEAK,
    PERFORMANCE_DEGRADATION,
    RESET_BREAKERS,
    RESTORE_PROVIDERS,
    SHED_LOAD,
    SWITCH_PROVIDER_ORDER,
    ErrorPatterns,
    HealingRegistry,
    routine_for,
)
from .history import DecisionHistory
from .learning import LearningAdjuster, LearningModel
from .metrics import MetricsCollector
from .models import (
    Decision,
    DecisionAction,
    DecisionContext,
    HealthSignals,
    HealthStatus,
    InferenceRequest,
    OperationalState,
    PredictedIssue,
)
from .provider_registry import ProviderRegistry

logger = logging.getLogger(__name__)

RULE_CONFIDENCE = 0.6
RULE_RISK = 0.3


def system_memory_ratio() -> float:
    return psutil.virtual_memory().percent / 100.0


# ── Signal Sampling ───────────────────────────────────────────────

class HealthSampler:
    """Collects one HealthSignals snapshot from the shared services."""

    def __init__(
        self,
        registry: ProviderRegistry,
        metrics: MetricsCollector,
        error_window_s: float = 60.0,
        memory_probe: Callable[[], float] = system_memory_ratio,
    ):
        self.registry = registry
        self.metrics = metrics
        self.error_window_s = error_window_s
        self.memory_probe = memory_probe

    def active_primaries(self) -> int:
        return sum(
            1 for n in self.registry.names()
            if not self.registry.get(n).is_fallback
            and self.registry.state(n) == OperationalState.ACTIVE
        )

    def sample(self) -> HealthSignals:
        try:
            memory = self.memory_probe()
        except Exception as e:
            logger.debug(f"Memory probe failed: {e}")
            memory = 0.0
        return HealthSignals(
            memory_ratio=min(1.0, max(0.0, memory)),
            error_rate=self.metrics.recent_error_rate(self.error_window_s),
            latency_p95_ms=self.metrics.provider_latency.p95,
            open_breakers=self.registry.breakers.open_count(),
            exhausted_providers=self.registry.count_in_state(OperationalState.EXHAUSTED),
            active_providers=self.active_primaries(),
        )


def predict_issues(signals: HealthSignals, thresholds: Dict[str, float]) -> List[PredictedIssue]:
    """Cheap forward-looking heuristics over one signal sample."""
    issues = []
    if signals.memory_ratio > 0.7:
        issues.append(PredictedIssue(
            type=MEMORY_LEAK, probability=signals.memory_ratio, severity="medium",
        ))
    if signals.latency_p95_ms > thresholds["latency_threshold_ms"]:
        issues.append(PredictedIssue(
            type=PERFORMANCE_DEGRADATION, probability=0.8, severity="high",
        ))
    error_threshold = thresholds["error_threshold"]
    if signals.error_rate > error_threshold / 2:
        issues.append(PredictedIssue(
            type=AI_SERVICE_FAILURE,
            probability=min(1.0, signals.error_rate / error_threshold),
            severity="high",
        ))
    return issues


# ── Strategies ────────────────────────────────────────────────────

class ReasoningStrategy(Protocol):
    """Optional decision source. Raise (or return None) when unavailable."""

    async def decide(
        self,
        context: DecisionContext,
        data: Dict[str, Any],
    ) -> Optional[Decision]:
        ...


def rule_based_decision(
    context: DecisionContext,
    signals: HealthSignals,
    thresholds: Dict[str, float],
    issue: Optional[PredictedIssue] = None,
) -> Decision:
    """The decision table. Same inputs, same decision (bar created_at)."""
    action = DecisionAction.IGNORE
    reasoning = "All signals within learned thresholds"
    target = None

    if context == DecisionContext.HEALTH_CHECK:
        if signals.memory_ratio > thresholds["memory_threshold"]:
            action, target = DecisionAction.HEAL, CLEAR_CACHES
            reasoning = (
                f"High memory usage detected ({signals.memory_ratio:.0%} > "
                f"{thresholds['memory_threshold']:.0%}), initiating healing"
            )
        elif signals.error_rate > thresholds["error_threshold"]:
            action = DecisionAction.PREVENT
            reasoning = (
                f"High error rate ({signals.error_rate:.0%} > "
                f"{thresholds['error_threshold']:.0%}), implementing prevention"
            )
        elif signals.open_breakers >= thresholds["breaker_open_threshold"]:
            action = DecisionAction.ESCALATE
            reasoning = f"{signals.open_breakers} circuit breakers open, needs operator attention"
        elif signals.latency_p95_ms > thresholds["latency_threshold_ms"]:
            action = DecisionAction.OPTIMIZE
            reasoning = (
                f"p95 latency {signals.latency_p95_ms:.0f}ms above "
                f"{thresholds['latency_threshold_ms']:.0f}ms, running maintenance"
            )
    elif context == DecisionContext.PREVENTION:
        if issue is not None and issue.probability > thresholds["prediction_threshold"]:
            action, target = DecisionAction.PREVENT, issue.type
            reasoning = f"High probability issue predicted: {issue.type} ({issue.probability:.0%})"
    elif context in (DecisionContext.HEALING, DecisionContext.MANUAL):
        action = DecisionAction.HEAL
        reasoning = "Healing opportunity identified"

    return Decision(
        action=action,
        reasoning=reasoning,
        confidence=RULE_CONFIDENCE,
        risk_level=RULE_RISK,
        expected_outcome=f"System should {action.value} the detected issue",
        context=context,
        source="rules",
        target=target,
    )


def _extract_json_block(text: str) -> Optional[str]:
    match = re.search(r"\{[\s\S]*\}", text)
    return match.group(0) if match else None


def parse_decision(text: str, context: DecisionContext) -> Decision:
    """
    Normalize reasoner output into a Decision.
    JSON+Extract strategy: direct parse, then the outermost {...} block.
    Raises ReasoningError when nothing usable is found.
    """
    data = None
    for candidate in (text.strip(), _extract_json_block(text)):
        if not candidate:
            continue
        try:
            data = json.loads(candidate)
            break
        except (json.JSONDecodeError, ValueError):
            continue
    if not isinstance(data, dict):
        raise ReasoningError(f"No JSON decision in reasoner output: {text[:120]!r}")

    try:
        action = DecisionAction(str(data.get("action", "")).strip().lower())
    except ValueError:
        raise ReasoningError(f"Unknown action {data.get('action')!r}")

    def _ratio(key: str, default: float) -> float:
        try:
            return min(1.0, max(0.0, float(data.get(key, default))))
        except (TypeError, ValueError):
            return default

    target = data.get("target")
    return Decision(
        action=action,
        reasoning=str(data.get("reasoning") or "No reasoning provided"),
        confidence=_ratio("confidence", 0.5),
        risk_level=_ratio("riskLevel", _ratio("risk_level", 0.5)),
        expected_outcome=str(data.get("expectedOutcome") or data.get("expected_outcome") or ""),
        context=context,
        source="reasoner",
        target=target if isinstance(target, str) else None,
    )


class LLMReasoningStrategy:
    """
    Asks the provider pool for a JSON decision through the dispatcher.
    Fan-out of one, so reasoning never takes more than a single provider slot.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        patterns: Optional[ErrorPatterns] = None,
        timeout_s: float = 10.0,
    ):
        self.dispatcher = dispatcher
        self.patterns = patterns
        self.timeout_s = timeout_s

    def build_prompt(self, context: DecisionContext, data: Dict[str, Any]) -> str:
        patterns = self.patterns.relevant(context.value) if self.patterns else ""
        return f"""You are the control loop of a service that calls external inference providers.
Analyze this situation:

Context: {context.value}
Data: {json.dumps(data, indent=2, default=str)}
Historical patterns: {patterns or "none"}

Respond with a single JSON object with exactly these fields:
"action": one of prevent, heal, optimize, escalate, ignore
"reasoning": why this action is best
"confidence": 0-1
"expectedOutcome": what will happen
"riskLevel": 0-1"""

    async def decide(self, context: DecisionContext, data: Dict[str, Any]) -> Optional[Decision]:
        request = InferenceRequest(
            input=self.build_prompt(context, data),
            deadline_s=self.timeout_s,
        )
        responses = await self.dispatcher.orchestrate(request, max_fanout=1)
        if not responses:
            raise ReasoningError("No provider answered the reasoning request")
        best = self.dispatcher.scorer.select_best(responses)
        return parse_decision(best.text, context)


# ── Engine ────────────────────────────────────────────────────────

# Signal that judges the outcome of an executed routine / action
_ASSESSED_SIGNAL = {
    CLEAR_CACHES: "memory_ratio",
    SHED_LOAD: "latency_p95_ms",
    SWITCH_PROVIDER_ORDER: "error_rate",
    RESET_BREAKERS: "open_breakers",
    RESTORE_PROVIDERS: "exhausted_providers",
    DecisionAction.PREVENT.value: "error_rate",
    DecisionAction.OPTIMIZE.value: "latency_p95_ms",
}


class DecisionEngine:
    """
    Continuous health-decision loop.

    Usage:
        engine = DecisionEngine(config, registry, metrics, history, model,
                                adjuster, healing, sampler)
        await engine.start()
        ...
        await engine.stop()
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        registry: ProviderRegistry,
        metrics: MetricsCollector,
        history: DecisionHistory,
        model: LearningModel,
        adjuster: LearningAdjuster,
        healing: HealingRegistry,
        sampler: HealthSampler,
        reasoner: Optional[ReasoningStrategy] = None,
        patterns: Optional[ErrorPatterns] = None,
    ):
        self.config = config
        self.registry = registry
        self.metrics = metrics
        self.history = history
        self.model = model
        self.adjuster = adjuster
        self.healing = healing
        self.sampler = sampler
        self.reasoner = reasoner
        self.patterns = patterns if patterns is not None else ErrorPatterns()

        self._pending: List[Tuple[Decision, str, float]] = []
        self._last_signals: Optional[HealthSignals] = None
        self._serial = asyncio.Lock()   # sampling/assessment vs threshold updates
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_signals(self) -> Optional[HealthSignals]:
        return self._last_signals

    # ── Decide ───────────────────────────────────────────────────

    async def decide(
        self,
        context: DecisionContext,
        signals: HealthSignals,
        issue: Optional[PredictedIssue] = None,
    ) -> Decision:
        """Reasoner first (if any), rule table otherwise. Always returns."""
        thresholds = dict(self.model.snapshot())
        decision = None

        if self.reasoner is not None:
            data = {"signals": signals.model_dump(), "thresholds": thresholds}
            if issue is not None:
                data["prediction"] = issue.model_dump()
            try:
                decision = await asyncio.wait_for(
                    self.reasoner.decide(context, data),
                    timeout=self.config.reasoning_timeout_s,
                )
            except Exception as e:
                self.metrics.reasoner_failures.inc()
                logger.debug(f"Reasoner unavailable, using rules: {e}")
                decision = None

        if decision is None:
            decision = rule_based_decision(context, signals, thresholds, issue)
        elif decision.context != context:
            decision = decision.model_copy(update={"context": context})
        if (
            issue is not None
            and decision.action == DecisionAction.PREVENT
            and decision.target is None
        ):
            decision = decision.model_copy(update={"target": issue.type})

        self.history.append(decision)
        self.metrics.record_decision(decision.action.value)
        return decision

    # ── Execute ──────────────────────────────────────────────────

    async def execute(self, decision: Decision, signals: HealthSignals) -> bool:
        """Carry out a decision and attach its outcome to the history record."""
        if decision.action == DecisionAction.IGNORE:
            return True

        logger.info(
            f"🤖 Decision: {decision.action.value.upper()} "
            f"(confidence={decision.confidence:.0%}, source={decision.source}): {decision.reasoning}"
        )
        try:
            assessed_key = await self._dispatch_action(decision, signals)
        except Exception as e:
            logger.error(f"Failed to execute {decision.action.value}: {e}")
            self.record_error_pattern(f"{decision.context.value}_execution_failed")
            self.history.attach_outcome(decision, outcome="failed")
            return False

        self.history.attach_outcome(decision, outcome="success")
        signal_name = _ASSESSED_SIGNAL.get(assessed_key) if assessed_key else None
        if signal_name is not None:
            self._pending.append((decision, signal_name, getattr(signals, signal_name)))
        logger.debug(f"📊 Decision outcome: {decision.action.value} -> success")
        return True

    async def _dispatch_action(self, decision: Decision, signals: HealthSignals) -> Optional[str]:
        """Run the action. Returns the key used to assess it later, if any."""
        action = decision.action

        if action == DecisionAction.HEAL:
            if not self.config.self_healing_enabled:
                logger.info("Self-healing disabled, heal decision recorded only")
                return None
            routine = routine_for(decision.target) if decision.target else None
            if routine not in self.healing:
                routine = self._routine_for_signals(signals)
            await self.healing.run(routine)
            return routine

        if action == DecisionAction.PREVENT:
            return await self._prevent(decision)

        if action == DecisionAction.OPTIMIZE:
            self.maintenance_pass()
            return DecisionAction.OPTIMIZE.value

        if action == DecisionAction.ESCALATE:
            self.metrics.escalations.inc(decision.context.value)
            logger.warning(f"🚨 Escalating for operator attention: {decision.reasoning}")
            return None

        return None

    def _routine_for_signals(self, signals: HealthSignals) -> str:
        thresholds = self.model.snapshot()
        if signals.memory_ratio > thresholds["memory_threshold"]:
            return CLEAR_CACHES
        if signals.open_breakers > 0:
            return SWITCH_PROVIDER_ORDER
        if signals.latency_p95_ms > thresholds["latency_threshold_ms"]:
            return SHED_LOAD
        return RESTORE_PROVIDERS

    async def _prevent(self, decision: Decision) -> Optional[str]:
        target = decision.target
        if target == MEMORY_LEAK:
            await self.healing.run(CLEAR_CACHES)
            return CLEAR_CACHES
        if target == PERFORMANCE_DEGRADATION:
            self.maintenance_pass()
            return DecisionAction.OPTIMIZE.value

        provider = self.registry.get(target) if target else None
        if provider is None:
            ratios = self.metrics.failure_ratios(self.config.error_rate_window_s)
            provider = self.registry.most_failing(ratios)

        if provider is None:
            logger.info("Prevent: no active provider is failing, nothing to hold back")
            return None
        if self.sampler.active_primaries() <= 1:
            # The last primary provider is never held back
            logger.info("Prevent: no provider can be held back safely")
            return None
        self.registry.mark_fallback(provider.name)
        return DecisionAction.PREVENT.value

    def maintenance_pass(self) -> Dict[str, Any]:
        """Optimize: roll expired windows, release recovered holds, trim history."""
        rolled = self.registry.ledger.roll_expired()
        restored = self.registry.restore_recovered()
        restored += self.registry.release_expired_holds(self.config.cb_cooldown_s)
        before = len(self.history)
        self.history.trim(self.config.learning_sample_size * 2)
        trimmed = before - len(self.history)
        if rolled or restored or trimmed:
            logger.info(f"⚙️  Maintenance: rolled={rolled} restored={restored} trimmed={trimmed}")
        return {"rolled": rolled, "restored": restored, "trimmed": trimmed}

    # ── Assessment ───────────────────────────────────────────────

    def _assess_pending(self, signals: HealthSignals):
        """Attach effectiveness to decisions executed before this sample."""
        pending, self._pending = self._pending, []
        for decision, signal_name, before in pending:
            after = getattr(signals, signal_name)
            if before <= 0:
                effectiveness = 1.0 if after <= 0 else 0.0
            else:
                # 20% better → 1.0, unchanged → 0.5, 20% worse → 0.0
                effectiveness = 0.5 + (before - after) / before * 2.5
            self.history.attach_outcome(decision, effectiveness=effectiveness)

    # ── Scheduled checks ─────────────────────────────────────────

    async def health_check(self) -> Decision:
        """Liveness check: sample, assess, decide, execute."""
        async with self._serial:
            # A prevention hold lasts one breaker cooldown
            self.registry.release_expired_holds(self.config.cb_cooldown_s)
            signals = self.sampler.sample()
            self._assess_pending(signals)
            self._last_signals = signals

        decision = await self.decide(DecisionContext.HEALTH_CHECK, signals)
        if decision.action != DecisionAction.IGNORE:
            await self.execute(decision, signals)
        return decision

    async def predictive_check(self) -> List[Decision]:
        """Predictive check: decide only on issues above the learned threshold."""
        async with self._serial:
            signals = self.sampler.sample()
        thresholds = dict(self.model.snapshot())

        decisions = []
        for issue in predict_issues(signals, thresholds):
            if issue.probability <= thresholds["prediction_threshold"]:
                continue
            decision = await self.decide(DecisionContext.PREVENTION, signals, issue)
            if decision.action != DecisionAction.IGNORE:
                await self.execute(decision, signals)
            decisions.append(decision)
        return decisions

    async def learning_cycle(self) -> Dict[str, float]:
        async with self._serial:
            return self.adjuster.adjust()

    # ── Admin / status ───────────────────────────────────────────

    async def force_healing_action(self, name: str) -> bool:
        """Run a named routine (or issue type) now. False if unknown or it failed."""
        routine = routine_for(name)
        if routine not in self.healing:
            logger.warning(f"Unknown healing action '{name}'")
            return False

        decision = Decision(
            action=DecisionAction.HEAL,
            reasoning=f"Forced healing action: {routine}",
            confidence=1.0,
            risk_level=RULE_RISK,
            context=DecisionContext.MANUAL,
            source="manual",
            target=routine,
        )
        self.history.append(decision)
        self.metrics.record_decision(decision.action.value)
        try:
            await self.healing.run(routine)
        except Exception as e:
            logger.error(f"Forced healing '{routine}' failed: {e}")
            self.history.attach_outcome(decision, outcome="failed")
            return False
        self.history.attach_outcome(decision, outcome="success")
        return True

    def record_error_pattern(self, error_type: str):
        self.patterns.record(error_type)
        self.metrics.record_error(error_type)

    def get_decision_history(self, limit: int = 20) -> List[Decision]:
        return self.history.recent(limit)

    def status(self) -> HealthStatus:
        recent = self.history.recent()
        return HealthStatus(
            active=self._running,
            healing=self._running and self.config.self_healing_enabled,
            recent_errors_prevented=sum(1 for d in recent if d.action == DecisionAction.PREVENT),
            recent_healing_actions=sum(1 for d in recent if d.action == DecisionAction.HEAL),
            learning_maturity=self.adjuster.maturity(),
            health_score=self.health_score(),
        )

    def health_score(self) -> float:
        """0–100 average of memory headroom, call success rate and provider availability."""
        s = self._last_signals or self.sampler.sample()
        memory_score = (1.0 - s.memory_ratio) * 100
        error_score = (1.0 - min(1.0, s.error_rate)) * 100
        primaries = [n for n in self.registry.names() if not self.registry.get(n).is_fallback]
        availability = s.active_providers / len(primaries) * 100 if primaries else 100.0
        return round(max(0.0, min(100.0, (memory_score + error_score + availability) / 3)), 1)

    # ── Background loops ─────────────────────────────────────────

    async def start(self):
        """Start the liveness, predictive and learning loops."""
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(
                self._loop(self.health_check, self.config.liveness_interval_s, "liveness")
            ),
            asyncio.create_task(
                self._loop(self.predictive_check, self.config.predictive_interval_s, "predictive")
            ),
            asyncio.create_task(
                self._loop(self.learning_cycle, self.config.learning_interval_s, "learning")
            ),
        ]
        logger.info(
            f"🏥 Decision engine started (liveness={self.config.liveness_interval_s}s, "
            f"predictive={self.config.predictive_interval_s}s, "
            f"learning={self.config.learning_interval_s}s)"
        )

    async def stop(self):
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("🏥 Decision engine stopped")

    async def _loop(self, step: Callable, interval_s: float, name: str):
        while self._running:
            started = time.monotonic()
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{name} loop error: {e}")
                self.record_error_pattern(f"{name}_loop")
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, interval_s - elapsed))
