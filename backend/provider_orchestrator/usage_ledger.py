"""
Usage Ledger
=============
Per-provider request / token counters over a rolling window.

Counters are rolled lazily: any read or write first checks whether the
window expired, and if so zeroes the counters and starts a new window.
Each provider has its own lock so unrelated providers never contend.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List

from .config import ProviderDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageRecord:
    """Snapshot of one provider's counters."""
    tokens_consumed: int = 0
    request_count: int = 0
    window_started_at: float = 0.0
    generation: int = 0              # Incremented on every rollover


class _Slot:
    __slots__ = ("lock", "record")

    def __init__(self, record: UsageRecord):
        self.lock = threading.Lock()
        self.record = record


class UsageLedger:
    """
    Rolling-window usage counters.

    Usage:
        ledger = UsageLedger(window_s=86400)
        ledger.record_usage("cohere", 120)
        ledger.has_budget(descriptor)
    """

    def __init__(
        self,
        window_s: float = 24 * 60 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_s = window_s
        self._clock = clock
        self._slots: Dict[str, _Slot] = {}
        self._slots_lock = threading.Lock()  # Guards slot creation only

    def _slot(self, provider: str) -> _Slot:
        slot = self._slots.get(provider)
        if slot is None:
            with self._slots_lock:
                slot = self._slots.get(provider)
                if slot is None:
                    slot = _Slot(UsageRecord(window_started_at=self._clock()))
                    self._slots[provider] = slot
        return slot

    def _roll_if_expired(self, provider: str, slot: _Slot) -> bool:
        """Caller must hold slot.lock."""
        now = self._clock()
        if now - slot.record.window_started_at > self.window_s:
            slot.record = UsageRecord(
                window_started_at=now,
                generation=slot.record.generation + 1,
            )
            logger.debug(f"Usage window rolled for {provider}")
            return True
        return False

    # ── Mutations ────────────────────────────────────────────────

    def record_usage(self, provider: str, tokens: int) -> UsageRecord:
        """Add one request and `tokens` to the provider's current window."""
        tokens = max(0, int(tokens))
        slot = self._slot(provider)
        with slot.lock:
            self._roll_if_expired(provider, slot)
            slot.record = replace(
                slot.record,
                tokens_consumed=slot.record.tokens_consumed + tokens,
                request_count=slot.record.request_count + 1,
            )
            return slot.record

    def reset(self, provider: str):
        """Start a fresh window now (admin action)."""
        slot = self._slot(provider)
        with slot.lock:
            slot.record = UsageRecord(
                window_started_at=self._clock(),
                generation=slot.record.generation + 1,
            )

    def roll_expired(self) -> List[str]:
        """Maintenance pass: roll every expired window. Returns rolled names."""
        rolled = []
        for name, slot in list(self._slots.items()):
            with slot.lock:
                if self._roll_if_expired(name, slot):
                    rolled.append(name)
        return rolled

    # ── Reads ────────────────────────────────────────────────────

    def get(self, provider: str) -> UsageRecord:
        slot = self._slot(provider)
        with slot.lock:
            self._roll_if_expired(provider, slot)
            return slot.record

    def generation(self, provider: str) -> int:
        return self.get(provider).generation

    def has_budget(self, desc: ProviderDescriptor) -> bool:
        """True while both the token and request budget have room left."""
        if desc.is_fallback:
            return True
        rec = self.get(desc.name)
        if rec.tokens_consumed >= desc.tokens_per_day:
            return False
        if rec.request_count >= desc.requests_per_window:
            return False
        return True

    def utilization(self, desc: ProviderDescriptor) -> float:
        """Fraction of the tighter budget already consumed (0–1+)."""
        rec = self.get(desc.name)
        token_ratio = rec.tokens_consumed / max(desc.tokens_per_day, 1)
        request_ratio = rec.request_count / max(desc.requests_per_window, 1)
        return max(token_ratio, request_ratio)

    def all_status(self) -> Dict[str, dict]:
        result = {}
        for name in list(self._slots):
            rec = self.get(name)
            result[name] = {
                "tokens_consumed": rec.tokens_consumed,
                "request_count": rec.request_count,
                "window_age_s": round(self._clock() - rec.window_started_at, 1),
                "generation": rec.generation,
            }
        return result
