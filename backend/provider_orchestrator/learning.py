"""
Learning Model & Adjuster
==========================
Decision thresholds that drift toward observed reality.

The adjuster is a small integral controller: every cycle it looks at the
assessed effectiveness of recent decisions per action and moves the matching
threshold by a bounded step, clamped to a fixed range. A single anomalous
cycle can move a threshold by at most one step.

  action     threshold              effective → threshold
  ─────────  ─────────────────────  ──────────────────────
  heal       memory_threshold       lowered (heal earlier)
  prevent    error_threshold        lowered (prevent earlier)
  optimize   latency_threshold_ms   lowered (optimize earlier)
"""

import logging
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from .history import DecisionHistory
from .models import Decision, DecisionAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThresholdSpec:
    default: float
    minimum: float
    maximum: float
    scale: float = 1.0                        # Step multiplier (ratio vs ms)
    action: Optional[DecisionAction] = None   # Action whose outcomes tune it


THRESHOLDS: Dict[str, ThresholdSpec] = {
    "memory_threshold": ThresholdSpec(0.8, 0.6, 0.95, action=DecisionAction.HEAL),
    "error_threshold": ThresholdSpec(0.1, 0.02, 0.5, action=DecisionAction.PREVENT),
    "latency_threshold_ms": ThresholdSpec(
        5000.0, 1000.0, 20000.0, scale=10000.0, action=DecisionAction.OPTIMIZE
    ),
    "breaker_open_threshold": ThresholdSpec(2.0, 1.0, 8.0),
    "prediction_threshold": ThresholdSpec(0.7, 0.5, 0.95),
}


class LearningModel:
    """
    Named thresholds plus per-action effectiveness averages.

    Writers go through nudge()/set_effectiveness() under one lock; readers get
    an immutable snapshot, so a read never sees a half-applied update.
    """

    def __init__(self, specs: Optional[Mapping[str, ThresholdSpec]] = None):
        self.specs = dict(specs or THRESHOLDS)
        self._values: Mapping[str, float] = MappingProxyType(
            {name: spec.default for name, spec in self.specs.items()}
        )
        self._effectiveness: Mapping[str, float] = MappingProxyType({})
        self._write_lock = threading.Lock()
        self.updates = 0

    def get(self, name: str) -> float:
        return self._values[name]

    def snapshot(self) -> Mapping[str, float]:
        return self._values

    def effectiveness(self) -> Mapping[str, float]:
        return self._effectiveness

    def nudge(self, name: str, delta: float, max_step: float) -> float:
        """Move a threshold by at most max_step * scale, clamped to its range."""
        spec = self.specs[name]
        bound = abs(max_step) * spec.scale
        step = max(-bound, min(bound, delta * spec.scale))
        with self._write_lock:
            current = self._values[name]
            new = max(spec.minimum, min(spec.maximum, current + step))
            if new != current:
                values = dict(self._values)
                values[name] = new
                self._values = MappingProxyType(values)
                self.updates += 1
        return new

    def set_effectiveness(self, action: str, value: float):
        with self._write_lock:
            eff = dict(self._effectiveness)
            eff[action] = value
            self._effectiveness = MappingProxyType(eff)

    def to_dict(self) -> dict:
        return {
            "thresholds": dict(self._values),
            "effectiveness": dict(self._effectiveness),
            "updates": self.updates,
        }


def evaluate_decision(decision: Decision) -> Optional[float]:
    """Assessed effectiveness, or an estimate when none was attached yet."""
    if decision.effectiveness is not None:
        return decision.effectiveness
    if decision.outcome == "failed":
        return 0.2
    if decision.outcome == "success":
        return decision.confidence * 0.8 + 0.2
    return None


class LearningAdjuster:
    """
    Usage:
        adjuster = LearningAdjuster(model, history)
        adjuster.adjust()   # called every learning_interval_s
    """

    def __init__(
        self,
        model: LearningModel,
        history: DecisionHistory,
        step: float = 0.05,
        sample_size: int = 50,
        target: float = 0.5,
        gain: float = 0.2,
        min_samples: int = 3,
    ):
        self.model = model
        self.history = history
        self.step = step
        self.sample_size = sample_size
        self.target = target
        self.gain = gain
        self.min_samples = min_samples
        self.cycles = 0

    def review(self) -> Dict[str, List[float]]:
        """Effectiveness samples per action over the last N decisions."""
        samples: Dict[str, List[float]] = {}
        for decision in self.history.recent(self.sample_size):
            if decision.action == DecisionAction.IGNORE:
                continue
            value = evaluate_decision(decision)
            if value is None:
                continue
            samples.setdefault(decision.action.value, []).append(value)
        return samples

    def adjust(self) -> Dict[str, float]:
        """One controller cycle. Returns thresholds that moved (name → new)."""
        self.cycles += 1
        samples = self.review()

        averages = {}
        for action, values in samples.items():
            avg = sum(values) / len(values)
            averages[action] = avg
            self.model.set_effectiveness(action, round(avg, 4))

        changed = {}
        for name, spec in self.model.specs.items():
            if spec.action is None:
                continue
            values = samples.get(spec.action.value, [])
            if len(values) < self.min_samples:
                continue
            error = self.target - averages[spec.action.value]
            before = self.model.get(name)
            after = self.model.nudge(name, error * self.gain, self.step)
            if after != before:
                changed[name] = after
                logger.info(
                    f"🧠 {name}: {before:.3f} → {after:.3f} "
                    f"({spec.action.value} effectiveness={averages[spec.action.value]:.2f})"
                )
        return changed

    def maturity(self) -> float:
        """0–100: how much history the model has learned from."""
        return min(100.0, float(self.history.total_recorded))
