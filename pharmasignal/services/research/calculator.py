"""Pure cross-field calculations over verified facts.

Every function is referentially transparent and raises a ``CalculationError``
subclass outside its documented domain. Derived metrics are never requested
from the retrieval service.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from pharmasignal.models.facts import DerivedFacts, VerifiedFacts


class CalculationError(ValueError):
    """Base error for calculator domain violations."""


class InvalidArgument(CalculationError):
    """Raised when a scalar argument falls outside the function's domain."""


class LengthMismatch(CalculationError):
    """Raised when similarity vectors differ in length."""


class EmptyInput(CalculationError):
    """Raised when similarity vectors are empty."""


def growth_rate(current: float, peak: float, years: float) -> float:
    """Compound annual growth rate solving ``peak = current * (1 + r) ** years``.

    A peak below the current value yields a negative rate, which is a valid
    decline scenario.
    """
    if current <= 0 or years <= 0:
        raise InvalidArgument(
            f"growth_rate requires current > 0 and years > 0 (current={current}, years={years})"
        )
    if peak <= 0:
        raise InvalidArgument(f"growth_rate requires peak > 0 (peak={peak})")
    return (peak / current) ** (1 / years) - 1


def peak_population(peak_revenue: float, unit_price: float, persistence_rate: float) -> float:
    """Treated patients implied by peak revenue, price and persistence."""
    if unit_price <= 0:
        raise InvalidArgument(f"peak_population requires unit_price > 0 (unit_price={unit_price})")
    if persistence_rate < 0 or persistence_rate > 1:
        raise InvalidArgument(
            f"peak_population requires 0 <= persistence_rate <= 1 (persistence_rate={persistence_rate})"
        )
    return (peak_revenue / unit_price) * persistence_rate


def pipeline_density(same_category_count: float, total_count: float) -> float:
    """Share of the pipeline hitting the same target, as a percentage."""
    if total_count <= 0:
        raise InvalidArgument(f"pipeline_density requires total_count > 0 (total_count={total_count})")
    if same_category_count < 0:
        raise InvalidArgument(
            f"pipeline_density requires same_category_count >= 0 (same_category_count={same_category_count})"
        )
    return (same_category_count / total_count) * 100


def similarity_score(vector_a: Sequence[float], vector_b: Sequence[float]) -> float:
    """Cosine similarity; exactly 0.0 when either vector has zero magnitude."""
    if len(vector_a) != len(vector_b):
        raise LengthMismatch(
            f"similarity_score vectors must have the same length ({len(vector_a)} vs {len(vector_b)})"
        )
    if not vector_a:
        raise EmptyInput("similarity_score vectors cannot be empty")

    dot = math.fsum(a * b for a, b in zip(vector_a, vector_b))
    norm_a = math.fsum(a * a for a in vector_a)
    norm_b = math.fsum(b * b for b in vector_b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def derive_facts(facts: VerifiedFacts) -> DerivedFacts:
    """Compute every derived metric from verified facts."""
    return DerivedFacts(
        cagr=growth_rate(facts.current_market, facts.peak_revenue_2030, facts.years_to_peak),
        peak_patients_2030=peak_population(
            facts.peak_revenue_2030, facts.avg_price, facts.persistence_rate
        ),
        pipeline_density=pipeline_density(facts.same_target_assets, facts.total_assets),
        strategic_fit=similarity_score(facts.vector_a, facts.vector_b),
    )
