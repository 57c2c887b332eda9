"""
Orchestrator Configuration
===========================
Centralized configuration with environment variable overrides.
All magic numbers, thresholds, provider limits and scoring weights live here.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static description of one inference provider."""
    name: str
    base_url: str
    kind: str                            # adapter: openai | gemini | cohere | huggingface | ollama
    models: Tuple[str, ...] = ()
    capabilities: Tuple[str, ...] = ("text-generation",)
    requests_per_minute: int = 60
    tokens_per_day: int = 50_000
    reliability_weight: float = 0.0      # Static bonus added by the scorer
    api_key_env: Optional[str] = None    # None = no credentials needed
    is_fallback: bool = False            # Unconstrained, always-eligible last resort
    extra_headers: Tuple[Tuple[str, str], ...] = ()

    @property
    def model(self) -> str:
        return self.models[0] if self.models else "default"

    @property
    def requests_per_window(self) -> int:
        # Per-minute rate declared, budget enforced over the daily window
        return self.requests_per_minute * 60 * 24

    def supports(self, capability: Optional[str]) -> bool:
        return capability is None or capability in self.capabilities


# ── Provider Catalog ─────────────────────────────────────────────
PROVIDERS: Dict[str, ProviderDescriptor] = {
    "huggingface": ProviderDescriptor(
        name="huggingface",
        base_url="https://api-inference.huggingface.co",
        kind="huggingface",
        models=("google/flan-t5-large", "facebook/blenderbot-400M-distill"),
        capabilities=("text-generation", "conversation", "summarization"),
        requests_per_minute=1000,
        tokens_per_day=100_000,
        api_key_env="HUGGINGFACE_API_KEY",
    ),
    "google-gemini": ProviderDescriptor(
        name="google-gemini",
        base_url="https://generativelanguage.googleapis.com",
        kind="gemini",
        models=("gemini-1.5-flash", "gemini-pro"),
        capabilities=("text-generation", "multimodal", "code-generation"),
        requests_per_minute=60,
        tokens_per_day=50_000,
        reliability_weight=0.2,
        api_key_env="GOOGLE_AI_KEY",
    ),
    "cohere": ProviderDescriptor(
        name="cohere",
        base_url="https://api.cohere.ai/v1",
        kind="cohere",
        models=("command-light", "command"),
        capabilities=("text-generation", "embeddings", "semantic-search"),
        requests_per_minute=100,
        tokens_per_day=25_000,
        reliability_weight=0.1,
        api_key_env="COHERE_API_KEY",
    ),
    "deepseek": ProviderDescriptor(
        name="deepseek",
        base_url="https://api.deepseek.com/v1",
        kind="openai",
        models=("deepseek-chat",),
        capabilities=("text-generation", "chat", "reasoning"),
        requests_per_minute=200,
        tokens_per_day=75_000,
        reliability_weight=0.15,
        api_key_env="DEEPSEEK_API_KEY",
    ),
    "openrouter": ProviderDescriptor(
        name="openrouter",
        base_url="https://openrouter.ai/api/v1",
        kind="openai",
        models=("openai/gpt-3.5-turbo", "mistralai/mistral-7b-instruct"),
        capabilities=("text-generation", "chat", "multi-provider"),
        requests_per_minute=50,
        tokens_per_day=20_000,
        api_key_env="OPENROUTER_API_KEY",
        extra_headers=(("X-Title", "Provider Orchestrator"),),
    ),
    "together-ai": ProviderDescriptor(
        name="together-ai",
        base_url="https://api.together.xyz/v1",
        kind="openai",
        models=("mistralai/Mistral-7B-Instruct-v0.1",),
        capabilities=("text-generation", "chat", "open-models"),
        requests_per_minute=100,
        tokens_per_day=30_000,
        api_key_env="TOGETHER_API_KEY",
    ),
    "mistral": ProviderDescriptor(
        name="mistral",
        base_url="https://api.mistral.ai/v1",
        kind="openai",
        models=("mistral-small-latest",),
        capabilities=("text-generation", "chat", "multilingual"),
        requests_per_minute=30,
        tokens_per_day=15_000,
        api_key_env="MISTRAL_API_KEY",
    ),
    # Local / unlimited
    "ollama-local": ProviderDescriptor(
        name="ollama-local",
        base_url="http://localhost:11434/api",
        kind="ollama",
        models=("llama3",),
        capabilities=("text-generation", "local", "unlimited"),
        requests_per_minute=999_999,
        tokens_per_day=999_999,
        is_fallback=True,
    ),
}

FALLBACK_PROVIDER = "ollama-local"


# ── Scoring Config ────────────────────────────────────────────────

@dataclass(frozen=True)
class ScoringConfig:
    """Confidence weights. Arbitrary tuning, exposed so it can be changed."""
    base: float = 0.5
    length_buckets: Tuple[Tuple[int, float], ...] = ((100, 0.2), (500, 0.1))
    vocabulary: Tuple[Tuple[Tuple[str, ...], float], ...] = (
        (("spiritual", "energy"), 0.1),
        (("guidance", "insight"), 0.05),
    )
    confidence_floor: float = 0.6
    blend_header: str = "ENHANCED MULTI-SOURCE READING:"
    blend_separator: str = "\n\n---\n\n"


EMPTY_RESULT_TEXT = "Unable to generate reading. Please try again."


# ── Orchestrator Config ──────────────────────────────────────────

@dataclass(frozen=True)
class OrchestratorConfig:
    """Tuning knobs for dispatch, breakers, and the decision loop."""

    # Dispatcher
    max_fanout: int = 5
    call_timeout_s: float = 30.0
    fallback_timeout_s: float = 30.0
    default_capability: str = "text-generation"

    # Usage ledger
    usage_window_s: float = 24 * 60 * 60

    # Circuit breaker
    cb_failure_threshold: int = 3
    cb_cooldown_s: float = 600.0

    # Decision engine
    liveness_interval_s: float = 1.0
    predictive_interval_s: float = 5.0
    reasoning_timeout_s: float = 10.0
    decision_history_size: int = 200
    self_healing_enabled: bool = True
    use_llm_reasoner: bool = False

    # Learning adjuster
    learning_interval_s: float = 30.0
    learning_sample_size: int = 50
    learning_step: float = 0.05

    # Metrics
    metrics_buffer_size: int = 1000
    error_rate_window_s: float = 60.0

    scoring: ScoringConfig = field(default_factory=ScoringConfig)


def load_config() -> OrchestratorConfig:
    """Load config with environment variable overrides."""
    overrides = {}
    env_map = {
        "ORCH_MAX_FANOUT": ("max_fanout", int),
        "ORCH_CALL_TIMEOUT": ("call_timeout_s", float),
        "ORCH_FALLBACK_TIMEOUT": ("fallback_timeout_s", float),
        "ORCH_USAGE_WINDOW": ("usage_window_s", float),
        "ORCH_CB_FAILURE_THRESHOLD": ("cb_failure_threshold", int),
        "ORCH_CB_COOLDOWN": ("cb_cooldown_s", float),
        "ORCH_LIVENESS_INTERVAL": ("liveness_interval_s", float),
        "ORCH_PREDICTIVE_INTERVAL": ("predictive_interval_s", float),
        "ORCH_LEARNING_INTERVAL": ("learning_interval_s", float),
        "ORCH_LEARNING_STEP": ("learning_step", float),
        "ORCH_DECISION_HISTORY": ("decision_history_size", int),
        "ORCH_USE_LLM_REASONER": ("use_llm_reasoner", _parse_bool),
        "ORCH_SELF_HEALING": ("self_healing_enabled", _parse_bool),
    }
    for env_key, (field_name, cast_fn) in env_map.items():
        val = os.getenv(env_key)
        if val is not None:
            try:
                overrides[field_name] = cast_fn(val)
            except (ValueError, TypeError):
                logger.warning(f"Ignoring invalid {env_key}={val!r}")
    return OrchestratorConfig(**overrides)


def _parse_bool(val: str) -> bool:
    lowered = val.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(val)


def validate_providers(
    providers: Mapping[str, ProviderDescriptor],
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, ProviderDescriptor]:
    """
    Check the catalog at startup and return the usable subset.

    Raises ConfigurationError when a provider has no endpoint, when no fallback
    is configured, or when ORCH_REQUIRE_CREDENTIALS is set and a key is missing.
    Otherwise providers without credentials are dropped with a warning.
    """
    environ = os.environ if environ is None else environ
    strict = environ.get("ORCH_REQUIRE_CREDENTIALS", "").lower() in ("1", "true", "yes")

    usable: Dict[str, ProviderDescriptor] = {}
    for name, desc in providers.items():
        if not desc.base_url:
            raise ConfigurationError(f"Provider '{name}' has no endpoint configured")
        if desc.api_key_env and not environ.get(desc.api_key_env):
            if strict:
                raise ConfigurationError(
                    f"Provider '{name}' requires {desc.api_key_env} but it is not set"
                )
            logger.warning(f"⚠️  {desc.api_key_env} not set — provider '{name}' disabled")
            continue
        usable[name] = desc

    if not any(d.is_fallback for d in usable.values()):
        raise ConfigurationError("No fallback provider configured")
    return usable
