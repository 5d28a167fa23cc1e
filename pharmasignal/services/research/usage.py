"""Per-request token and cost accounting for retrieval calls."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final

from pharmasignal.config import settings
from pharmasignal.models.research import UsageSummary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    """USD per 1,000 tokens."""

    input_per_1k: float
    output_per_1k: float

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens / 1000) * self.input_per_1k + (output_tokens / 1000) * self.output_per_1k


DEFAULT_PRICING: Final[dict[str, ModelPricing]] = {
    "sonar-pro": ModelPricing(input_per_1k=0.20, output_per_1k=0.20),
    "sonar-deep-research": ModelPricing(input_per_1k=0.50, output_per_1k=0.50),
}


class UsageLedger:
    """Accumulates usage for one research request; never shared across requests."""

    def __init__(
        self,
        *,
        max_cost_usd: float | None = None,
        fallback_model: str | None = None,
        pricing: Mapping[str, ModelPricing] | None = None,
    ) -> None:
        self._max_cost = max_cost_usd if max_cost_usd is not None else settings.research_max_cost_usd
        self._fallback_model = fallback_model or settings.research_default_model
        self._pricing = dict(pricing or DEFAULT_PRICING)
        self._api_calls = 0
        self._input_tokens = 0
        self._output_tokens = 0
        self._cost = 0.0
        self._models: list[str] = []

    @property
    def spent_usd(self) -> float:
        return self._cost

    def estimate_cost(self, model: str, input_tokens: int, output_tokens: int = 0) -> float:
        pricing = self._pricing.get(model) or self._pricing.get(self._fallback_model)
        if pricing is None:
            return 0.0
        return pricing.cost(input_tokens, output_tokens)

    def resolve_model(self, model: str, *, input_tokens: int, output_tokens: int) -> str:
        """Return ``model`` or the cheaper fallback when the next call would exceed the budget."""
        projected = self._cost + self.estimate_cost(model, input_tokens, output_tokens)
        if projected <= self._max_cost or model == self._fallback_model:
            return model
        logger.warning(
            "research.cost.downgrade",
            extra={
                "requested_model": model,
                "fallback_model": self._fallback_model,
                "projected_usd": round(projected, 4),
                "budget_usd": self._max_cost,
            },
        )
        return self._fallback_model

    def record(self, model: str, input_tokens: int, output_tokens: int) -> float:
        cost = self.estimate_cost(model, input_tokens, output_tokens)
        self._api_calls += 1
        self._input_tokens += input_tokens
        self._output_tokens += output_tokens
        self._cost += cost
        if model not in self._models:
            self._models.append(model)
        return cost

    def summary(self) -> UsageSummary:
        return UsageSummary(
            api_calls=self._api_calls,
            input_tokens=self._input_tokens,
            output_tokens=self._output_tokens,
            cost_usd=round(self._cost, 6),
            models=list(self._models),
        )
