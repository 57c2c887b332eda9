"""
Provider Registry
==================
Catalog of provider descriptors plus their mutable operational state.

Eligibility = ACTIVE state + remaining ledger budget + available breaker.
Eligible providers are ordered by declared rate limit, most constrained
first, so generous providers are kept for overflow. Providers promoted by
the "switch_provider_order" healing routine go to the front.

┌──────────────────┐     ┌──────────────┐     ┌──────────────────┐
│ ProviderRegistry │────►│ UsageLedger  │     │ CircuitBreakers  │
│ (state, order)   │────►│ (per window) │     │ (per provider)   │
└──────────────────┘     └──────────────┘     └──────────────────┘
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .circuit_breaker import CircuitBreakerRegistry
from .config import ProviderDescriptor
from .models import CircuitState, OperationalState
from .usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


class _StateSlot:
    __slots__ = ("lock", "state", "held_generation", "held_at")

    def __init__(self, state: OperationalState):
        self.lock = threading.Lock()
        self.state = state
        self.held_generation: Optional[int] = None  # Ledger window when state was changed
        self.held_at: Optional[float] = None


class ProviderRegistry:
    """
    Central registry of providers.

    Usage:
        registry = ProviderRegistry(PROVIDERS, ledger, breakers)
        for desc in registry.list_eligible("text-generation"):
            ...
    """

    def __init__(
        self,
        providers: Mapping[str, ProviderDescriptor],
        ledger: UsageLedger,
        breakers: CircuitBreakerRegistry,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.breakers = breakers
        self._clock = clock
        self._providers: Dict[str, ProviderDescriptor] = dict(providers)
        self._states: Dict[str, _StateSlot] = {
            name: _StateSlot(OperationalState.ACTIVE) for name in self._providers
        }
        self._promoted: Tuple[str, ...] = ()

    # ── Lookup ───────────────────────────────────────────────────

    def get(self, name: str) -> Optional[ProviderDescriptor]:
        return self._providers.get(name)

    def names(self) -> List[str]:
        return list(self._providers)

    def fallback(self) -> Optional[ProviderDescriptor]:
        """The designated always-eligible fallback provider."""
        for desc in self._providers.values():
            if desc.is_fallback:
                return desc
        return None

    def state(self, name: str) -> OperationalState:
        slot = self._states[name]
        with slot.lock:
            self._restore_if_rolled(name, slot, OperationalState.EXHAUSTED)
            return slot.state

    def _restore_if_rolled(
        self, name: str, slot: _StateSlot, held_state: OperationalState
    ) -> bool:
        """Caller holds slot.lock. Back to ACTIVE once the ledger window rolled."""
        if slot.state != held_state or slot.held_generation is None:
            return False
        if self.ledger.generation(name) > slot.held_generation:
            slot.state = OperationalState.ACTIVE
            slot.held_generation = None
            slot.held_at = None
            logger.info(f"♻️  Provider {name}: {held_state.value} → active (window rolled)")
            return True
        return False

    # ── Eligibility ──────────────────────────────────────────────

    def list_eligible(self, capability: Optional[str] = None) -> List[ProviderDescriptor]:
        """
        Active, within budget, breaker available; most constrained first.
        The fallback provider is never part of this list.
        """
        eligible = []
        for name, desc in self._providers.items():
            if desc.is_fallback or not desc.supports(capability):
                continue
            if self.state(name) != OperationalState.ACTIVE:
                continue
            if not self.ledger.has_budget(desc):
                self.mark_exhausted(name)
                continue
            if not self.breakers.get(name).is_available:
                continue
            eligible.append(desc)

        promoted = self._promoted
        eligible.sort(
            key=lambda d: (
                promoted.index(d.name) if d.name in promoted else len(promoted),
                d.requests_per_minute,
            )
        )
        return eligible

    # ── Mutations ────────────────────────────────────────────────

    def record_usage(self, name: str, tokens: int):
        """Record a completed call; exhaust the provider if its budget ran out."""
        self.ledger.record_usage(name, tokens)
        desc = self._providers.get(name)
        if desc and not self.ledger.has_budget(desc):
            self.mark_exhausted(name)

    def mark_exhausted(self, name: str):
        """EXHAUSTED until the next window rollover."""
        self._hold(name, OperationalState.EXHAUSTED)

    def mark_fallback(self, name: str):
        """Proactively hold a provider back before it is forced into EXHAUSTED."""
        self._hold(name, OperationalState.FALLBACK)

    def _hold(self, name: str, state: OperationalState):
        slot = self._states.get(name)
        if slot is None or self._providers[name].is_fallback:
            return
        with slot.lock:
            if slot.state == state:
                return
            old = slot.state
            slot.state = state
            slot.held_generation = self.ledger.generation(name)
            slot.held_at = self._clock()
        logger.warning(f"⚠️  Provider {name}: {old.value} → {state.value}")

    def restore(self, name: str) -> bool:
        slot = self._states.get(name)
        if slot is None:
            return False
        with slot.lock:
            if slot.state == OperationalState.ACTIVE:
                return False
            slot.state = OperationalState.ACTIVE
            slot.held_generation = None
            slot.held_at = None
        logger.info(f"✅ Provider {name} restored to active")
        return True

    def restore_recovered(self) -> List[str]:
        """Maintenance pass: release FALLBACK / EXHAUSTED holds whose window rolled."""
        restored = []
        for name, slot in self._states.items():
            with slot.lock:
                if (
                    self._restore_if_rolled(name, slot, OperationalState.EXHAUSTED)
                    or self._restore_if_rolled(name, slot, OperationalState.FALLBACK)
                ):
                    restored.append(name)
        return restored

    def release_expired_holds(self, max_age_s: float) -> List[str]:
        """Release FALLBACK holds placed more than `max_age_s` ago."""
        now = self._clock()
        expired = []
        for name, slot in self._states.items():
            with slot.lock:
                if (
                    slot.state == OperationalState.FALLBACK
                    and slot.held_at is not None
                    and now - slot.held_at >= max_age_s
                ):
                    expired.append(name)
        return [name for name in expired if self.restore(name)]

    def restore_all(self) -> List[str]:
        """Release every FALLBACK hold (EXHAUSTED stays until the window rolls)."""
        return [
            name for name in self._providers
            if self.state(name) == OperationalState.FALLBACK and self.restore(name)
        ]

    def promote(self, name: str):
        """Move a provider to the front of the dispatch order."""
        if name not in self._providers:
            return
        self._promoted = (name,) + tuple(p for p in self._promoted if p != name)
        logger.info(f"🔀 Provider order: {name} promoted")

    def reset_order(self):
        self._promoted = ()

    # ── Views ────────────────────────────────────────────────────

    def count_in_state(self, state: OperationalState) -> int:
        return sum(1 for name in self._providers if self.state(name) == state)

    def most_failing(self, failure_ratios: Mapping[str, float]) -> Optional[ProviderDescriptor]:
        """Active non-fallback provider with the highest recent failure ratio, if any failed."""
        candidates = [
            d for d in self._providers.values()
            if not d.is_fallback
            and self.state(d.name) == OperationalState.ACTIVE
            and failure_ratios.get(d.name, 0.0) > 0.0
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda d: failure_ratios[d.name])

    def all_status(self) -> Dict[str, dict]:
        """Full status dashboard."""
        result = {}
        for name, desc in self._providers.items():
            cb = self.breakers.get(name)
            usage = self.ledger.get(name)
            result[name] = {
                "name": name,
                "kind": desc.kind,
                "model": desc.model,
                "state": self.state(name).value,
                "is_fallback": desc.is_fallback,
                "circuit_breaker": cb.state.value,
                "breaker_open": cb.state == CircuitState.OPEN,
                "tokens_consumed": usage.tokens_consumed,
                "request_count": usage.request_count,
                "utilization": round(self.ledger.utilization(desc), 4),
                "requests_per_minute": desc.requests_per_minute,
                "tokens_per_day": desc.tokens_per_day,
            }
        return result
