"""
Decision History
=================
Bounded ring buffer of Decision records shared by the decision engine
(writer), the learning adjuster and the status endpoints (readers).
"""

import threading
from collections import deque
from typing import Deque, Dict, List, Optional

from .models import Decision, DecisionAction


class DecisionHistory:
    def __init__(self, max_size: int = 200):
        self._items: Deque[Decision] = deque(maxlen=max_size)
        self._lock = threading.Lock()
        self._total = 0

    def append(self, decision: Decision):
        with self._lock:
            self._items.append(decision)
            self._total += 1

    def recent(self, n: Optional[int] = None) -> List[Decision]:
        with self._lock:
            items = list(self._items)
        return items if n is None else items[-n:]

    def attach_outcome(
        self,
        decision: Decision,
        outcome: Optional[str] = None,
        effectiveness: Optional[float] = None,
    ):
        """The only mutation allowed after a decision was recorded."""
        with self._lock:
            if outcome is not None:
                decision.outcome = outcome
            if effectiveness is not None:
                decision.effectiveness = max(0.0, min(1.0, effectiveness))

    def count(self, action: DecisionAction) -> int:
        return sum(1 for d in self.recent() if d.action == action)

    def counts(self) -> Dict[str, int]:
        result: Dict[str, int] = {}
        for d in self.recent():
            result[d.action.value] = result.get(d.action.value, 0) + 1
        return result

    def trim(self, keep: int):
        """Drop all but the newest `keep` decisions."""
        with self._lock:
            while len(self._items) > keep:
                self._items.popleft()

    @property
    def total_recorded(self) -> int:
        return self._total

    def __len__(self) -> int:
        return len(self._items)
