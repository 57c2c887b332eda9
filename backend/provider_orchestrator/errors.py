"""
Orchestrator Errors
====================
Exception taxonomy for the provider orchestration core.

Only ConfigurationError is allowed to escape to a caller, and only at startup.
Everything else is absorbed into breaker / ledger transitions.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""
    pass


class ProviderCallError(OrchestratorError):
    """Transient provider failure (network, timeout, 5xx, bad payload)."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = True,
    ):
        super().__init__(f"[{provider}] {message}")
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable


class ProviderExhaustedError(ProviderCallError):
    """Provider quota reached (HTTP 429 or local ledger budget)."""

    def __init__(self, provider: str, message: str = "quota exhausted"):
        super().__init__(provider, message, status_code=429, retryable=False)


class CircuitOpenError(OrchestratorError):
    """Raised when trying to call through an OPEN circuit breaker."""
    pass


class ConfigurationError(OrchestratorError):
    """Missing endpoint / credentials. Fatal at startup only."""
    pass


class ReasoningError(OrchestratorError):
    """Decision reasoner returned nothing usable."""
    pass
