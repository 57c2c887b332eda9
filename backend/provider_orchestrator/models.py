"""
Orchestrator Models
====================
Pydantic models for API contracts, internal records, and health snapshots.
Shared by the dispatcher, the decision engine and the HTTP layer.
"""

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ─────────────────────────────────────────────────────────

class OperationalState(str, Enum):
    """Registry-level state of a provider."""
    ACTIVE = "active"         # Eligible for dispatch
    FALLBACK = "fallback"     # Held back proactively (Prevent action)
    EXHAUSTED = "exhausted"   # Quota reached until the window rolls over


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"       # Calls pass through
    OPEN = "open"           # Rejected without a network attempt
    HALF_OPEN = "half_open" # One trial call after the cooldown


class DecisionAction(str, Enum):
    PREVENT = "prevent"
    HEAL = "heal"
    OPTIMIZE = "optimize"
    ESCALATE = "escalate"
    IGNORE = "ignore"


class DecisionContext(str, Enum):
    """What triggered the decision."""
    HEALTH_CHECK = "health_check"
    PREVENTION = "prevention"
    HEALING = "healing"
    MANUAL = "manual"


# ── Requests / Responses ─────────────────────────────────────────

class InferenceRequest(BaseModel):
    """Caller input. Immutable once issued."""
    model_config = ConfigDict(frozen=True)

    input: str = Field(..., min_length=1)
    deadline_s: Optional[float] = Field(None, gt=0)   # Relative to issue time
    capability: Optional[str] = None
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    issued_at: float = Field(default_factory=time.monotonic)


class ProviderResponse(BaseModel):
    """One successful provider call. Never mutated."""
    model_config = ConfigDict(frozen=True)

    provider_id: str
    model: str = "default"
    text: str
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    tokens_used: int = Field(0, ge=0)
    completed_at: float = Field(default_factory=time.monotonic)


class ReadingResult(BaseModel):
    """Boundary result of request_reading. Always returned, never raised."""
    text: str
    provider_used: str                 # provider name | "blended" | "none"
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    took_ms: float = 0.0
    providers_responded: List[str] = Field(default_factory=list)


class ReadingRequest(BaseModel):
    """HTTP request body for POST /reading."""
    input: str = Field(..., min_length=1)
    deadline_s: Optional[float] = Field(None, gt=0, le=300)
    capability: Optional[str] = None


# ── Decisions ────────────────────────────────────────────────────

class Decision(BaseModel):
    """A single decision of the health loop, normalized from any source."""
    action: DecisionAction = DecisionAction.IGNORE
    reasoning: str = "No reasoning provided"
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    risk_level: float = Field(0.5, ge=0.0, le=1.0)
    expected_outcome: str = ""
    context: DecisionContext = DecisionContext.HEALTH_CHECK
    source: str = "rules"              # rules | reasoner
    target: Optional[str] = None       # Healing routine or provider name
    created_at: float = Field(default_factory=time.time)
    outcome: Optional[str] = None      # success | failed, set after execution
    effectiveness: Optional[float] = Field(None, ge=0.0, le=1.0)


class HealthSignals(BaseModel):
    """One sample of the signals the decision engine looks at."""
    memory_ratio: float = 0.0          # 0–1 memory pressure
    error_rate: float = 0.0            # failed calls / calls in the window
    latency_p95_ms: float = 0.0
    open_breakers: int = 0
    exhausted_providers: int = 0
    active_providers: int = 0


class PredictedIssue(BaseModel):
    type: str
    probability: float = Field(..., ge=0.0, le=1.0)
    severity: str = "medium"


# ── API Response Models ──────────────────────────────────────────

class HealthStatus(BaseModel):
    """Read-only snapshot for dashboards."""
    active: bool
    healing: bool
    recent_errors_prevented: int = 0
    recent_healing_actions: int = 0
    learning_maturity: float = Field(0.0, ge=0.0, le=100.0)
    health_score: float = Field(100.0, ge=0.0, le=100.0)


class HealthResponse(BaseModel):
    """API response for GET /health."""
    status: str
    service: str = "provider-orchestrator"
    version: str = "1.0.0"
    providers: Dict[str, Any] = Field(default_factory=dict)
    uptime_seconds: float = 0.0
    metrics_summary: Dict[str, Any] = Field(default_factory=dict)
