"""
Healing Routines
=================
Fixed registry of named remedial routines the decision engine (and the
admin endpoint) can invoke. A routine returns normally on success; any
exception it raises is reported as a failed execution by the caller.

  issue type                routine
  ────────────────────────  ──────────────────────
  memory_leak               clear_caches
  performance_degradation   shed_load
  ai_service_failure        switch_provider_order
  (anything else)           restore_providers
"""

import asyncio
import gc
import logging
from typing import Awaitable, Callable, Dict, List, Union

from .circuit_breaker import CircuitBreakerRegistry
from .history import DecisionHistory
from .models import CircuitState, OperationalState
from .provider_registry import ProviderRegistry

logger = logging.getLogger(__name__)

HealingRoutine = Callable[[], Union[None, Awaitable[None]]]

# Issue types, as detected from signals or predicted
MEMORY_LEAK = "memory_leak"
PERFORMANCE_DEGRADATION = "performance_degradation"
AI_SERVICE_FAILURE = "ai_service_failure"

# Routine names
CLEAR_CACHES = "clear_caches"
SHED_LOAD = "shed_load"
SWITCH_PROVIDER_ORDER = "switch_provider_order"
RESET_BREAKERS = "reset_breakers"
RESTORE_PROVIDERS = "restore_providers"

ROUTINE_FOR_ISSUE = {
    MEMORY_LEAK: CLEAR_CACHES,
    PERFORMANCE_DEGRADATION: SHED_LOAD,
    AI_SERVICE_FAILURE: SWITCH_PROVIDER_ORDER,
}


def routine_for(issue_or_routine: str) -> str:
    """Resolve an issue type (or a routine name) to a routine name."""
    return ROUTINE_FOR_ISSUE.get(issue_or_routine, issue_or_routine)


class HealingRegistry:
    def __init__(self):
        self._routines: Dict[str, HealingRoutine] = {}

    def register(self, name: str, routine: HealingRoutine):
        self._routines[name] = routine

    def names(self) -> List[str]:
        return sorted(self._routines)

    def __contains__(self, name: str) -> bool:
        return name in self._routines

    async def run(self, name: str) -> bool:
        """Run a routine. False if unknown; exceptions propagate."""
        routine = self._routines.get(name)
        if routine is None:
            return False
        result = routine()
        if asyncio.iscoroutine(result):
            await result
        logger.info(f"✅ Applied healing strategy: {name}")
        return True


class ErrorPatterns:
    """Frequency map of observed error types, used as reasoning context."""

    def __init__(self):
        self._counts: Dict[str, int] = {}

    def record(self, error_type: str):
        self._counts[error_type] = self._counts.get(error_type, 0) + 1

    def relevant(self, context: str) -> str:
        return ", ".join(
            f"{t}: {n} occurrences" for t, n in self._counts.items() if context in t
        )

    def clear(self):
        self._counts.clear()

    def to_dict(self) -> Dict[str, int]:
        return dict(self._counts)


def build_default_healing(
    registry: ProviderRegistry,
    breakers: CircuitBreakerRegistry,
    history: DecisionHistory,
    patterns: ErrorPatterns,
    history_keep: int = 50,
) -> HealingRegistry:
    healing = HealingRegistry()

    def clear_caches():
        history.trim(history_keep)
        patterns.clear()
        collected = gc.collect()
        logger.info(f"🧹 Caches cleared (gc collected {collected} objects)")

    def shed_load():
        # Hold back every provider above 90% of its budget
        shed = []
        for name in registry.names():
            desc = registry.get(name)
            if desc.is_fallback or registry.state(name) != OperationalState.ACTIVE:
                continue
            if registry.ledger.utilization(desc) >= 0.9:
                registry.mark_fallback(name)
                shed.append(name)
        logger.info(f"⚖️  Shed load from {shed or 'no providers'}")

    def switch_provider_order():
        # Prefer the healthiest closed-breaker provider with the most headroom
        candidates = [
            registry.get(n) for n in registry.names()
            if not registry.get(n).is_fallback
            and registry.state(n) == OperationalState.ACTIVE
            and breakers.get(n).state == CircuitState.CLOSED
        ]
        if not candidates:
            raise RuntimeError("No healthy provider to switch to")
        best = min(
            candidates,
            key=lambda d: (
                -breakers.get(d.name).stats.to_dict()["success_rate"],
                registry.ledger.utilization(d),
            ),
        )
        registry.promote(best.name)

    def reset_breakers():
        breakers.reset_all()
        logger.info("🔄 All circuit breakers reset")

    def restore_providers():
        registry.ledger.roll_expired()
        restored = registry.restore_recovered() + registry.restore_all()
        logger.info(f"♻️  Restored {restored or 'no providers'}")

    healing.register(CLEAR_CACHES, clear_caches)
    healing.register(SHED_LOAD, shed_load)
    healing.register(SWITCH_PROVIDER_ORDER, switch_provider_order)
    healing.register(RESET_BREAKERS, reset_breakers)
    healing.register(RESTORE_PROVIDERS, restore_providers)
    return healing
