"""Domain-plausibility rules applied to verified facts."""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass

from pharmasignal.config import settings
from pharmasignal.models.facts import ValidationIssue, VerifiedFacts


@dataclass(frozen=True)
class SanityThresholds:
    """Tunable bounds for the plausibility rules."""

    split_tolerance: float = 0.01
    revenue_multiple_min: float = 5.0
    revenue_multiple_max: float = 8.0
    rare_disease_threshold: int = 200_000
    max_years_to_peak: float = 20.0
    max_magnitude_gap: float = 2.0

    @classmethod
    def from_settings(cls) -> SanityThresholds:
        return cls(
            split_tolerance=settings.sanity_split_tolerance,
            revenue_multiple_min=settings.sanity_revenue_multiple_min,
            revenue_multiple_max=settings.sanity_revenue_multiple_max,
            rare_disease_threshold=settings.sanity_rare_disease_threshold,
            max_years_to_peak=settings.sanity_max_years_to_peak,
            max_magnitude_gap=settings.sanity_max_magnitude_gap,
        )


SanityRule = Callable[[VerifiedFacts, SanityThresholds], ValidationIssue | None]


def _issue(path: str, description: str) -> ValidationIssue:
    return ValidationIssue(path=path, description=description, severity="critical")


def _looks_numeric(value: str) -> bool:
    try:
        float(value.replace(",", "").rstrip("%"))
    except ValueError:
        return False
    return True


def _geographic_split(facts: VerifiedFacts, limits: SanityThresholds) -> ValidationIssue | None:
    total = facts.key_market_assumptions.geographic_split.total
    if abs(total - 1.0) > limits.split_tolerance:
        return _issue(
            "keyMarketAssumptions.geographicSplit",
            f"Geographic split must sum to 1 (us + eu + row = {total:.4f})",
        )
    return None


def _strength_sentinels(facts: VerifiedFacts, limits: SanityThresholds) -> ValidationIssue | None:
    fields = {
        "ipStrength.coreIpPosition.value": facts.ip_strength.core_ip_position.value,
        "regIncentives.nationalPriority.value": facts.reg_incentives.national_priority.value,
    }
    flagged = [path for path, value in fields.items() if _looks_numeric(value)]
    if flagged:
        return _issue(
            flagged[0],
            "Categorical strength field holds a numeric sentinel instead of a qualitative assessment"
            + (f" (also: {', '.join(flagged[1:])})" if len(flagged) > 1 else ""),
        )
    return None


def _revenue_multiple(facts: VerifiedFacts, limits: SanityThresholds) -> ValidationIssue | None:
    total = facts.financial_forecast.total_ten_year_revenue_usd.value
    ratio = total / facts.peak_revenue_2030
    if ratio < limits.revenue_multiple_min or ratio > limits.revenue_multiple_max:
        return _issue(
            "financialForecast.totalTenYearRevenueUSD.value",
            f"Total ten-year revenue is {ratio:.1f}x peak revenue; expected "
            f"{limits.revenue_multiple_min:g}-{limits.revenue_multiple_max:g}x",
        )
    return None


def _regulatory_eligibility(facts: VerifiedFacts, limits: SanityThresholds) -> ValidationIssue | None:
    patients = facts.financial_forecast.peak_patients_count.value
    if patients > limits.rare_disease_threshold and facts.reg_incentives.prv_eligibility.value:
        return _issue(
            "regIncentives.prvEligibility.value",
            f"Priority review voucher eligibility asserted for {patients:,.0f} patients, above the "
            f"{limits.rare_disease_threshold:,} rare-disease threshold",
        )
    return None


def _revenue_magnitude(facts: VerifiedFacts, limits: SanityThresholds) -> ValidationIssue | None:
    gap = abs(math.log10(facts.peak_revenue_2030) - math.log10(facts.current_market))
    if gap > limits.max_magnitude_gap:
        return _issue(
            "peakRevenue2030",
            f"Peak revenue differs by more than {limits.max_magnitude_gap:g} orders of magnitude from "
            f"current market ({facts.peak_revenue_2030:g} vs {facts.current_market:g})",
        )
    return None


def _years_to_peak(facts: VerifiedFacts, limits: SanityThresholds) -> ValidationIssue | None:
    if facts.years_to_peak > limits.max_years_to_peak:
        return _issue(
            "yearsToPeak",
            f"Years to peak must not exceed {limits.max_years_to_peak:g} (got {facts.years_to_peak:g})",
        )
    return None


def _pipeline_share(facts: VerifiedFacts, limits: SanityThresholds) -> ValidationIssue | None:
    if facts.same_target_assets > facts.total_assets:
        return _issue(
            "sameTargetAssets",
            f"Same-target assets ({facts.same_target_assets:g}) exceed total assets ({facts.total_assets:g})",
        )
    return None


SANITY_RULES: tuple[SanityRule, ...] = (
    _geographic_split,
    _strength_sentinels,
    _revenue_multiple,
    _regulatory_eligibility,
    _revenue_magnitude,
    _years_to_peak,
    _pipeline_share,
)


def check_sanity(
    facts: VerifiedFacts,
    thresholds: SanityThresholds | None = None,
) -> list[ValidationIssue]:
    """Return one issue per violated plausibility rule; never raises."""
    limits = thresholds or SanityThresholds.from_settings()
    issues: list[ValidationIssue] = []
    for rule in SANITY_RULES:
        issue = rule(facts, limits)
        if issue is not None:
            issues.append(issue)
    return issues
