"""
Provider Orchestrator Package
==============================
Fan-out inference orchestration over a pool of rate-limited providers.

Architecture:
- config.py           → Provider catalog, tuning knobs, startup validation
- models.py           → Pydantic models (API contracts, decisions, signals)
- errors.py           → Exception hierarchy
- usage_ledger.py     → Rolling-window token / request counters
- circuit_breaker.py  → Per-provider circuit breaker
- provider_registry.py→ Operational state + eligibility ordering
- adapters.py         → httpx adapters per provider API
- dispatcher.py       → Bounded-time parallel fan-out + fallback
- scorer.py           → Deterministic confidence scoring and blending
- history.py          → Bounded decision history
- learning.py         → Learned thresholds + adjuster
- healing.py          → Named healing routines
- engine.py           → Decision engine and its background loops
- service.py          → ReadingOrchestrator facade + wiring
- main.py             → FastAPI application (HTTP layer)
"""

from .config import PROVIDERS, OrchestratorConfig, ProviderDescriptor, ScoringConfig, load_config
from .errors import (
    CircuitOpenError,
    ConfigurationError,
    OrchestratorError,
    ProviderCallError,
    ProviderExhaustedError,
    ReasoningError,
)
from .models import (
    Decision,
    DecisionAction,
    HealthStatus,
    InferenceRequest,
    OperationalState,
    ProviderResponse,
    ReadingResult,
)
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from .dispatcher import Dispatcher
from .engine import DecisionEngine
from .service import ReadingOrchestrator, build_orchestrator

__all__ = [
    "PROVIDERS",
    "OrchestratorConfig",
    "ProviderDescriptor",
    "ScoringConfig",
    "load_config",
    "CircuitOpenError",
    "ConfigurationError",
    "OrchestratorError",
    "ProviderCallError",
    "ProviderExhaustedError",
    "ReasoningError",
    "Decision",
    "DecisionAction",
    "HealthStatus",
    "InferenceRequest",
    "OperationalState",
    "ProviderResponse",
    "ReadingResult",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "Dispatcher",
    "DecisionEngine",
    "ReadingOrchestrator",
    "build_orchestrator",
]
