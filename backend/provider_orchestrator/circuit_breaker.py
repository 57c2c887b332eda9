"""
Provider Circuit Breakers
==========================
Stops wasting time and budget on a provider in sustained failure.

State Machine:
  CLOSED    ──[consecutive_failures >= threshold]──►  OPEN
  OPEN      ──[cooldown elapsed, counters reset]───►  HALF_OPEN (one trial call)
  HALF_OPEN ──[trial success]──────────────────────►  CLOSED
  HALF_OPEN ──[trial failure]──────────────────────►  OPEN

A success in any state resets consecutive_failures.
Each provider gets its own breaker and its own lock.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Dict, Optional

from .errors import CircuitOpenError
from .models import CircuitState

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreakerStats:
    """Counters surfaced by GET /circuit-breakers."""
    total_calls: int = 0
    total_successes: int = 0
    total_failures: int = 0
    total_rejections: int = 0       # try_acquire refused
    consecutive_failures: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    state_changes: int = 0
    trips: int = 0

    def to_dict(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "total_rejections": self.total_rejections,
            "consecutive_failures": self.consecutive_failures,
            "trips": self.trips,
            "success_rate": (
                round(self.total_successes / self.total_calls, 3)
                if self.total_calls > 0 else 1.0
            ),
        }


class CircuitBreaker:
    """
    Per-provider circuit breaker.

    Usage:
        cb = CircuitBreaker("cohere", failure_threshold=3)
        if cb.try_acquire():
            ...  # make the call, then record_success() / record_failure()
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        cooldown_s: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        on_open: Optional[Callable[[str], None]] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._on_open = on_open

        self._state = CircuitState.CLOSED
        self._stats = CircuitBreakerStats()
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    @property
    def stats(self) -> CircuitBreakerStats:
        return self._stats

    @property
    def is_available(self) -> bool:
        """Would a call be let through right now? Does not reserve anything."""
        with self._lock:
            s = self._current_state()
            if s == CircuitState.CLOSED:
                return True
            if s == CircuitState.HALF_OPEN:
                return not self._trial_in_flight
            return False

    def _current_state(self) -> CircuitState:
        """Caller must hold the lock. Applies the OPEN → HALF_OPEN re-arm."""
        if self._state == CircuitState.OPEN and self._stats.last_failure_time is not None:
            elapsed = self._clock() - self._stats.last_failure_time
            if elapsed >= self.cooldown_s:
                self._stats.consecutive_failures = 0
                self._transition(CircuitState.HALF_OPEN)
        return self._state

    def _transition(self, new_state: CircuitState):
        old = self._state
        self._state = new_state
        self._stats.state_changes += 1

        if new_state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False

        if new_state == CircuitState.CLOSED:
            self._stats.consecutive_failures = 0
            self._trial_in_flight = False

        if new_state == CircuitState.OPEN:
            self._stats.trips += 1
            self._trial_in_flight = False

        logger.info(
            f"🔌 Circuit breaker [{self.name}]: {old.value} → {new_state.value} "
            f"(failures={self._stats.consecutive_failures})"
        )

    def try_acquire(self) -> bool:
        """
        Reserve permission for one call.
        In HALF_OPEN only the first caller gets the trial slot.
        """
        with self._lock:
            s = self._current_state()
            if s == CircuitState.CLOSED:
                return True
            if s == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            self._stats.total_rejections += 1
            return False

    def record_success(self):
        """A success closes a HALF_OPEN breaker and clears the failure streak."""
        with self._lock:
            self._stats.total_calls += 1
            self._stats.total_successes += 1
            self._stats.consecutive_failures = 0
            self._stats.last_success_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)

    def record_failure(self):
        """Record a failed or timed-out call."""
        tripped = False
        with self._lock:
            self._stats.total_calls += 1
            self._stats.total_failures += 1
            self._stats.consecutive_failures += 1
            self._stats.last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
                tripped = True
            elif (
                self._state == CircuitState.CLOSED
                and self._stats.consecutive_failures >= self.failure_threshold
            ):
                self._transition(CircuitState.OPEN)
                tripped = True

        if tripped and self._on_open:
            self._on_open(self.name)

    async def call(self, fn: Callable[..., Coroutine], *args, **kwargs) -> Any:
        """
        Execute an async function through the circuit breaker.
        Raises CircuitOpenError if the circuit is OPEN.
        """
        if not self.try_acquire():
            raise CircuitOpenError(
                f"Circuit breaker [{self.name}] rejected the call, "
                f"recovery in {self.time_until_recovery():.0f}s"
            )

        try:
            result = await fn(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def time_until_recovery(self) -> float:
        with self._lock:
            if self._state != CircuitState.OPEN or self._stats.last_failure_time is None:
                return 0.0
            elapsed = self._clock() - self._stats.last_failure_time
            return max(0.0, self.cooldown_s - elapsed)

    def reset(self):
        """Force CLOSED. Used by the admin route and the reset_breakers routine."""
        with self._lock:
            self._transition(CircuitState.CLOSED)
        logger.info(f"🔄 Circuit breaker [{self.name}] manually reset")

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "is_available": self.is_available,
            "recovery_in_s": round(self.time_until_recovery(), 1),
            "stats": self._stats.to_dict(),
            "config": {
                "failure_threshold": self.failure_threshold,
                "cooldown_s": self.cooldown_s,
            },
        }


class CircuitBreakerRegistry:
    """
    Manages circuit breakers for all providers.
    Creates breakers on first access.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        cooldown_s: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        on_open: Optional[Callable[[str], None]] = None,
    ):
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._failure_threshold = failure_threshold
        self._cooldown_s = cooldown_s
        self._clock = clock
        self._on_open = on_open
        self._lock = threading.Lock()

    def get(self, provider: str) -> CircuitBreaker:
        """Get or create a circuit breaker for a provider."""
        cb = self._breakers.get(provider)
        if cb is None:
            with self._lock:
                cb = self._breakers.get(provider)
                if cb is None:
                    cb = CircuitBreaker(
                        name=provider,
                        failure_threshold=self._failure_threshold,
                        cooldown_s=self._cooldown_s,
                        clock=self._clock,
                        on_open=self._on_open,
                    )
                    self._breakers[provider] = cb
        return cb

    def open_count(self) -> int:
        return sum(
            1 for cb in list(self._breakers.values()) if cb.state == CircuitState.OPEN
        )

    def all_status(self) -> Dict[str, dict]:
        """Breaker snapshot keyed by provider."""
        return {name: cb.to_dict() for name, cb in list(self._breakers.items())}

    def reset_all(self):
        """Close every breaker (reset_breakers healing routine)."""
        for cb in list(self._breakers.values()):
            cb.reset()
