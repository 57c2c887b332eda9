"""
Dispatcher — Bounded-Time Parallel Fan-Out
============================================

Pipeline for one request:
┌──────────────┐   ┌───────────────┐   ┌─────────────────┐   ┌────────────┐
│ list_eligible│──►│ acquire breaker│──►│ N concurrent    │──►│ collect    │
│ (registry)   │   │ slots (≤ fanout)│  │ bounded calls   │   │ until done │
└──────────────┘   └───────────────┘   └─────────────────┘   │ or deadline│
                                                              └─────┬──────┘
                                             zero responses ──► fallback provider

Every call is bounded by min(call_timeout_s, time left to the deadline).
Bookkeeping (ledger usage, breaker success/failure, metrics) happens inside
each call task as it completes, so it is applied in completion order and
exactly once per call. Calls still running when the caller stops waiting are
detached: they finish their own bookkeeping as failures and their results
are discarded.
"""

import asyncio
import logging
import time
from typing import List, Optional, Set

from .adapters import ProviderAdapter
from .config import OrchestratorConfig, ProviderDescriptor
from .errors import ProviderCallError, ProviderExhaustedError
from .metrics import MetricsCollector
from .models import InferenceRequest, ProviderResponse
from .provider_registry import ProviderRegistry
from .scorer import ResponseScorer

logger = logging.getLogger(__name__)

MIN_FALLBACK_BUDGET_S = 0.05    # Below this the fallback is not attempted


class _Collection:
    """Shared between one orchestrate() call and its call tasks."""
    __slots__ = ("closed",)

    def __init__(self):
        self.closed = False


class Dispatcher:
    """
    Usage:
        dispatcher = Dispatcher(registry, adapter, scorer, metrics, config)
        responses = await dispatcher.orchestrate(InferenceRequest(input="..."))
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        adapter: ProviderAdapter,
        scorer: ResponseScorer,
        metrics: MetricsCollector,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.registry = registry
        self.adapter = adapter
        self.scorer = scorer
        self.metrics = metrics
        self.config = config or OrchestratorConfig()
        self._detached: Set[asyncio.Task] = set()

    @property
    def detached_count(self) -> int:
        return len(self._detached)

    async def orchestrate(
        self,
        request: InferenceRequest,
        max_fanout: Optional[int] = None,
    ) -> List[ProviderResponse]:
        """
        Fan the request out and return every response that arrived in time.
        Returns [] (the empty-result state) when even the fallback failed.
        """
        loop = asyncio.get_running_loop()
        deadline = None
        if request.deadline_s:
            # Counted from when the request was issued, not when it got here
            waited = max(0.0, time.monotonic() - request.issued_at)
            deadline = loop.time() + request.deadline_s - waited
        fanout = max_fanout if max_fanout is not None else self.config.max_fanout

        selected = self._select(request, fanout)
        responses: List[ProviderResponse] = []

        if selected:
            responses = await self._fan_out(selected, request, deadline)
        else:
            logger.info(f"No eligible providers for request {request.request_id[:8]} — using fallback")

        if not responses:
            fallback = await self._call_fallback(request, deadline)
            if fallback is not None:
                responses.append(fallback)

        return responses

    # ── Step 1: Selection ────────────────────────────────────────

    def _select(self, request: InferenceRequest, fanout: int) -> List[ProviderDescriptor]:
        capability = request.capability or self.config.default_capability
        selected = []
        for desc in self.registry.list_eligible(capability):
            if len(selected) >= fanout:
                break
            # Reserves the single trial slot of a half-open breaker
            if self.registry.breakers.get(desc.name).try_acquire():
                selected.append(desc)
        return selected

    # ── Steps 2–4: Fan-out and collection ────────────────────────

    async def _fan_out(
        self,
        selected: List[ProviderDescriptor],
        request: InferenceRequest,
        deadline: Optional[float],
    ) -> List[ProviderResponse]:
        loop = asyncio.get_running_loop()
        collection = _Collection()
        tasks = [
            asyncio.create_task(
                self._guarded_call(desc, request, deadline, collection),
                name=f"provider-call:{desc.name}",
            )
            for desc in selected
        ]

        wait_timeout = None if deadline is None else max(0.0, deadline - loop.time())
        done, pending = await asyncio.wait(tasks, timeout=wait_timeout)
        collection.closed = True

        for task in pending:
            # Let it finish its own bookkeeping; never wait on it here
            self._detached.add(task)
            task.add_done_callback(self._detached.discard)

        responses = [t.result() for t in done if t.result() is not None]
        if pending:
            logger.info(
                f"Deadline reached with {len(pending)} call(s) still running — detached"
            )
        return responses

    async def _guarded_call(
        self,
        desc: ProviderDescriptor,
        request: InferenceRequest,
        deadline: Optional[float],
        collection: _Collection,
    ) -> Optional[ProviderResponse]:
        """One provider call plus its bookkeeping. Never raises."""
        loop = asyncio.get_running_loop()
        breaker = self.registry.breakers.get(desc.name)
        timeout = self._timeout_for(self.config.call_timeout_s, deadline, loop.time())
        start = loop.time()

        try:
            result = await asyncio.wait_for(
                self.adapter.call(desc, request, timeout), timeout=timeout
            )
        except asyncio.TimeoutError:
            self._record_failure(desc, breaker, start, f"timeout after {timeout:.1f}s")
            return None
        except ProviderExhaustedError as e:
            self.registry.mark_exhausted(desc.name)
            self._record_failure(desc, breaker, start, str(e))
            return None
        except ProviderCallError as e:
            self._record_failure(desc, breaker, start, str(e))
            return None
        except Exception as e:
            self._record_failure(desc, breaker, start, f"unexpected {type(e).__name__}: {e}")
            return None

        if collection.closed:
            # Arrived after the caller stopped waiting: a timeout, result dropped
            self._record_failure(desc, breaker, start, "completed after deadline — discarded")
            return None

        latency_ms = (loop.time() - start) * 1000
        breaker.record_success()
        self.registry.record_usage(desc.name, result.tokens_used)
        self.metrics.record_provider_call(desc.name, latency_ms, success=True)

        response = ProviderResponse(
            provider_id=desc.name,
            model=desc.model,
            text=result.text,
            tokens_used=result.tokens_used,
            completed_at=loop.time(),
        )
        return self.scorer.rescore(response)

    def _record_failure(self, desc: ProviderDescriptor, breaker, start: float, reason: str):
        loop = asyncio.get_running_loop()
        breaker.record_failure()
        self.metrics.record_provider_call(desc.name, (loop.time() - start) * 1000, success=False)
        logger.warning(f"Provider {desc.name} failed: {reason}")

    @staticmethod
    def _timeout_for(limit: float, deadline: Optional[float], now: float) -> float:
        if deadline is None:
            return limit
        return max(0.0, min(limit, deadline - now))

    # ── Step 5: Fallback ─────────────────────────────────────────

    async def _call_fallback(
        self,
        request: InferenceRequest,
        deadline: Optional[float],
    ) -> Optional[ProviderResponse]:
        """Exactly one attempt against the designated fallback provider."""
        desc = self.registry.fallback()
        if desc is None:
            logger.error("No fallback provider registered — empty result")
            return None

        loop = asyncio.get_running_loop()
        timeout = self._timeout_for(self.config.fallback_timeout_s, deadline, loop.time())
        if timeout < MIN_FALLBACK_BUDGET_S:
            logger.warning("Deadline exhausted before fallback could run, empty result")
            return None

        self.metrics.fallback_uses.inc(desc.name)
        start = loop.time()
        try:
            result = await asyncio.wait_for(
                self.adapter.call(desc, request, timeout), timeout=timeout
            )
        except asyncio.TimeoutError:
            reason = f"timeout after {timeout:.1f}s"
        except Exception as e:
            reason = str(e)
        else:
            latency_ms = (loop.time() - start) * 1000
            self.registry.record_usage(desc.name, result.tokens_used)
            self.metrics.record_provider_call(desc.name, latency_ms, success=True)
            return self.scorer.rescore(ProviderResponse(
                provider_id=desc.name,
                model=desc.model,
                text=result.text,
                tokens_used=result.tokens_used,
                completed_at=loop.time(),
            ))

        self.metrics.record_provider_call(desc.name, (loop.time() - start) * 1000, success=False)
        logger.warning(f"Fallback provider {desc.name} failed: {reason}")
        return None
