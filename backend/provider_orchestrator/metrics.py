"""
Metrics Collector
==================
Process-local counters and bounded sample windows. Nothing is exported;
the /metrics and /health routes read summary() and health_summary(), and
the decision engine reads recent_error_rate() and provider_latency.p95.
"""

import logging
import math
import threading
import time
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Tuple

logger = logging.getLogger(__name__)


class Counter:
    """Running total, optionally split by label (provider, action, ...)."""

    def __init__(self, name: str):
        self.name = name
        self._total = 0
        self._labels: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def inc(self, label: str = "__total__", amount: int = 1):
        with self._lock:
            self._total += amount
            self._labels[label] += amount

    @property
    def value(self) -> int:
        return self._total

    def by_label(self) -> Dict[str, int]:
        with self._lock:
            return {k: v for k, v in self._labels.items() if k != "__total__"}

    def to_dict(self) -> dict:
        return {"name": self.name, "total": self._total, "by_label": self.by_label()}


class Histogram:
    """Keeps the last `window` observations; percentiles are nearest-rank."""

    def __init__(self, name: str, window: int = 500):
        self.name = name
        self._window: Deque[float] = deque(maxlen=window)

    def observe(self, value: float):
        self._window.append(value)

    def _snapshot(self) -> List[float]:
        return list(self._window)

    @property
    def count(self) -> int:
        return len(self._window)

    @property
    def avg(self) -> float:
        values = self._snapshot()
        return sum(values) / len(values) if values else 0.0

    @property
    def p95(self) -> float:
        return self.percentile(95)

    def percentile(self, pct: float) -> float:
        values = sorted(self._snapshot())
        if not values:
            return 0.0
        rank = max(1, math.ceil(pct / 100 * len(values)))
        return values[rank - 1]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "count": self.count,
            "avg": round(self.avg, 3),
            "p50": round(self.percentile(50), 3),
            "p95": round(self.p95, 3),
            "max": round(max(self._snapshot(), default=0.0), 3),
        }


class MetricsCollector:
    """
    One collector per orchestrator, injected wherever calls or decisions are recorded.

    Metrics tracked:
    - provider_calls_total      (Counter)   — by provider
    - provider_failures_total   (Counter)   — by provider
    - provider_latency_ms       (Histogram) — per completed call
    - circuit_breaker_trips     (Counter)   — by provider
    - fallback_uses_total       (Counter)
    - empty_results_total       (Counter)
    - readings_total            (Counter)   — by provider_used
    - decisions_total           (Counter)   — by action
    - escalations_total         (Counter)   — by reason
    - reasoner_failures_total   (Counter)
    """

    def __init__(
        self,
        buffer_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._start_time = clock()

        # Counters
        self.provider_calls = Counter("provider_calls_total")
        self.provider_failures = Counter("provider_failures_total")
        self.circuit_breaker_trips = Counter("circuit_breaker_trips")
        self.fallback_uses = Counter("fallback_uses_total")
        self.empty_results = Counter("empty_results_total")
        self.readings_total = Counter("readings_total")
        self.decisions_total = Counter("decisions_total")
        self.escalations = Counter("escalations_total")
        self.reasoner_failures = Counter("reasoner_failures_total")
        self.errors_total = Counter("errors_total")

        # Histograms
        self.provider_latency = Histogram("provider_latency_ms", buffer_size)
        self.reading_latency = Histogram("reading_latency_ms", buffer_size)
        self.reading_confidence = Histogram("reading_confidence", buffer_size)

        # (timestamp, provider, ok) per call, for the rolling error rates
        self._call_outcomes: Deque[Tuple[float, str, bool]] = deque(maxlen=buffer_size)

        # Recent readings ring buffer for dashboard
        self._recent_readings: deque = deque(maxlen=50)

    def record_provider_call(self, provider: str, latency_ms: float, success: bool):
        """Record one provider call outcome (timeouts count as failures)."""
        self.provider_calls.inc(provider)
        if success:
            self.provider_latency.observe(latency_ms)
        else:
            self.provider_failures.inc(provider)
        self._call_outcomes.append((self._clock(), provider, success))

    def record_reading(self, provider_used: str, latency_ms: float, confidence: float):
        self.readings_total.inc(provider_used)
        self.reading_latency.observe(latency_ms)
        self.reading_confidence.observe(confidence)
        if provider_used == "none":
            self.empty_results.inc()
        self._recent_readings.append({
            "provider_used": provider_used,
            "latency_ms": round(latency_ms, 1),
            "confidence": round(confidence, 2),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def record_circuit_trip(self, provider: str):
        """on_open callback of the breaker registry."""
        self.circuit_breaker_trips.inc(provider)

    def record_decision(self, action: str):
        self.decisions_total.inc(action)

    def record_error(self, error_type: str):
        """Count an error pattern occurrence."""
        self.errors_total.inc(error_type)

    def recent_error_rate(self, window_s: float = 60.0) -> float:
        """Failed / total provider calls over the last `window_s` seconds."""
        cutoff = self._clock() - window_s
        recent = [ok for ts, _, ok in list(self._call_outcomes) if ts >= cutoff]
        if not recent:
            return 0.0
        return sum(1 for ok in recent if not ok) / len(recent)

    def failure_ratios(self, window_s: float = 60.0) -> Dict[str, float]:
        """Per-provider failed / total calls over the last `window_s` seconds."""
        cutoff = self._clock() - window_s
        calls: Dict[str, int] = defaultdict(int)
        failures: Dict[str, int] = defaultdict(int)
        for ts, provider, ok in list(self._call_outcomes):
            if ts < cutoff:
                continue
            calls[provider] += 1
            if not ok:
                failures[provider] += 1
        return {name: failures[name] / n for name, n in calls.items()}

    @property
    def uptime_seconds(self) -> float:
        return self._clock() - self._start_time

    def summary(self) -> Dict[str, Any]:
        """Everything, for GET /metrics."""
        return {
            "uptime_seconds": round(self.uptime_seconds, 1),
            "provider_calls": self.provider_calls.to_dict(),
            "provider_failures": self.provider_failures.to_dict(),
            "provider_latency": self.provider_latency.to_dict(),
            "circuit_breaker_trips": self.circuit_breaker_trips.to_dict(),
            "fallback_uses": self.fallback_uses.to_dict(),
            "readings": self.readings_total.to_dict(),
            "reading_latency": self.reading_latency.to_dict(),
            "reading_confidence": self.reading_confidence.to_dict(),
            "empty_results": self.empty_results.to_dict(),
            "decisions": self.decisions_total.to_dict(),
            "escalations": self.escalations.to_dict(),
            "reasoner_failures": self.reasoner_failures.to_dict(),
            "errors": self.errors_total.to_dict(),
            "recent_readings": list(self._recent_readings)[-10:],
        }

    def health_summary(self) -> Dict[str, Any]:
        """Subset returned by GET /health."""
        return {
            "uptime_s": round(self.uptime_seconds, 0),
            "total_readings": self.readings_total.value,
            "avg_latency_ms": round(self.reading_latency.avg, 1),
            "p95_provider_latency_ms": round(self.provider_latency.p95, 1),
            "error_rate": round(self.recent_error_rate(), 4),
        }
