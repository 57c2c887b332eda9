"""
Response Scorer / Blender
==========================
Deterministic confidence scoring, best-response selection and blending.

Confidence = base
           + length bucket bonuses
           + static provider reliability weight
           + domain vocabulary bonuses
clamped to [0, 1]. No randomness and no clock: identical input, identical score.
"""

import logging
from typing import List, Mapping, Optional, Sequence

from .config import EMPTY_RESULT_TEXT, ProviderDescriptor, ScoringConfig
from .models import ProviderResponse

logger = logging.getLogger(__name__)

EMPTY_PROVIDER = "none"


def score_text(
    text: str,
    reliability_weight: float = 0.0,
    config: ScoringConfig = ScoringConfig(),
) -> float:
    confidence = config.base

    length = len(text)
    for min_length, bonus in config.length_buckets:
        if length > min_length:
            confidence += bonus

    confidence += reliability_weight

    lowered = text.lower()
    for words, bonus in config.vocabulary:
        if any(w in lowered for w in words):
            confidence += bonus

    return round(min(1.0, max(0.0, confidence)), 6)


def empty_response() -> ProviderResponse:
    """Sentinel returned when nothing could be produced."""
    return ProviderResponse(
        provider_id=EMPTY_PROVIDER,
        model="none",
        text=EMPTY_RESULT_TEXT,
        confidence=0.0,
        tokens_used=0,
        completed_at=0.0,
    )


class ResponseScorer:
    """
    Usage:
        scorer = ResponseScorer(PROVIDERS, config.scoring)
        best = scorer.select_best(responses)
        text = scorer.blend(responses)
    """

    def __init__(
        self,
        providers: Mapping[str, ProviderDescriptor],
        config: Optional[ScoringConfig] = None,
    ):
        self._weights = {name: d.reliability_weight for name, d in providers.items()}
        self.config = config or ScoringConfig()

    def score(self, response: ProviderResponse) -> float:
        return score_text(
            response.text,
            self._weights.get(response.provider_id, 0.0),
            self.config,
        )

    def rescore(self, response: ProviderResponse) -> ProviderResponse:
        return response.model_copy(update={"confidence": self.score(response)})

    @staticmethod
    def select_best(responses: Sequence[ProviderResponse]) -> ProviderResponse:
        """Highest confidence; ties go to the earliest completion."""
        if not responses:
            return empty_response()
        return min(responses, key=lambda r: (-r.confidence, r.completed_at))

    def qualifying(self, responses: Sequence[ProviderResponse]) -> List[ProviderResponse]:
        floor = self.config.confidence_floor
        above = [r for r in responses if r.confidence > floor]
        return sorted(above, key=lambda r: (-r.confidence, r.completed_at))

    def blend(self, responses: Sequence[ProviderResponse]) -> str:
        """
        ≥2 above the floor → header + joined texts
        exactly 1          → that text verbatim
        none               → best response anyway, or the empty sentinel
        """
        if not responses:
            return EMPTY_RESULT_TEXT

        above = self.qualifying(responses)
        if len(above) >= 2:
            combined = self.config.blend_separator.join(r.text for r in above)
            return f"{self.config.blend_header}\n\n{combined}"
        if len(above) == 1:
            return above[0].text
        return self.select_best(responses).text
