"""Retrieved, verified and derived commercial facts."""

from __future__ import annotations

import re
from datetime import date
from typing import Any, Literal, get_args

from pydantic import BaseModel, Field, HttpUrl, StrictFloat, field_validator, model_validator
from pydantic.alias_generators import to_camel
from pydantic.config import ConfigDict

DealStage = Literal["Preclinical", "Phase 1", "Phase 2", "Phase 3", "Filed", "Marketed"]
DEAL_STAGES: tuple[str, ...] = get_args(DealStage)

IssueSeverity = Literal["error", "critical"]

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_WIRE_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    frozen=True,
    extra="ignore",
    str_strip_whitespace=True,
)


class ValidationIssue(BaseModel):
    """Single data-quality defect located by field path."""

    path: str
    description: str
    severity: IssueSeverity = "error"

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        return f"{self.path}: {self.description}"


class DealRecord(BaseModel):
    """Licensing or M&A transaction backing the competitive landscape."""

    asset: str = Field(..., min_length=1)
    stage: DealStage
    price_usd: float = Field(..., alias="priceUSD", gt=0, strict=True)
    date_iso: date = Field(..., alias="dateISO")
    rationale: str = Field(..., min_length=20)
    sources: list[HttpUrl] = Field(..., min_length=1)

    model_config = _WIRE_CONFIG

    @field_validator("date_iso", mode="before")
    @classmethod
    def _require_iso_date(cls, value: object) -> object:
        if isinstance(value, date):
            return value
        if isinstance(value, str) and _ISO_DATE.match(value.strip()):
            return value.strip()
        raise ValueError("dateISO must be a calendar date formatted as YYYY-MM-DD")


class _Sourced(BaseModel):
    rationale: str = Field(..., min_length=10)
    sources: list[HttpUrl] = Field(..., min_length=1)

    model_config = _WIRE_CONFIG


class SourcedFlag(_Sourced):
    value: bool = Field(..., strict=True)


class SourcedText(_Sourced):
    value: str = Field(..., min_length=2)


class SourcedAmount(_Sourced):
    value: float = Field(..., gt=0, strict=True)


class SourcedPercent(_Sourced):
    value: float = Field(..., ge=0, le=100, strict=True)


class GeographicSplit(BaseModel):
    us: float = Field(..., ge=0, le=1, strict=True)
    eu: float = Field(..., ge=0, le=1, strict=True)
    row: float = Field(..., ge=0, le=1, strict=True)

    model_config = _WIRE_CONFIG

    @property
    def total(self) -> float:
        return self.us + self.eu + self.row


class KeyMarketAssumptions(_Sourced):
    avg_selling_price_usd: float = Field(..., alias="avgSellingPriceUSD", gt=0, strict=True)
    persistence_rate: float = Field(..., ge=0, le=1, strict=True)
    treatment_duration_months: float = Field(..., gt=0, strict=True)
    geographic_split: GeographicSplit


class RegIncentives(BaseModel):
    prv_eligibility: SourcedFlag
    national_priority: SourcedText
    review_timeline_months: SourcedAmount

    model_config = _WIRE_CONFIG


class IpStrength(BaseModel):
    exclusivity_years: SourcedAmount
    generic_entry_risk_percent: SourcedPercent
    core_ip_position: SourcedText

    model_config = _WIRE_CONFIG


class FinancialForecast(BaseModel):
    total_ten_year_revenue_usd: SourcedAmount = Field(..., alias="totalTenYearRevenueUSD")
    peak_market_share_percent: SourcedPercent
    peak_patients_count: SourcedAmount

    model_config = _WIRE_CONFIG


class RawFacts(BaseModel):
    """Lenient envelope for the retrieval payload prior to validation.

    Every field accepts any JSON value so placeholders such as ``"Unknown"`` and
    wrongly typed values reach the validator instead of failing the parse.
    Only the repair stage mutates it.
    """

    current_market: Any = None
    peak_revenue_2030: Any = None
    years_to_peak: Any = None
    avg_price: Any = None
    persistence_rate: Any = None
    same_target_assets: Any = None
    total_assets: Any = None
    vector_a: Any = None
    vector_b: Any = None
    deal_activity: Any = None
    key_market_assumptions: Any = None
    reg_incentives: Any = None
    ip_strength: Any = None
    financial_forecast: Any = None
    source_map: Any = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_payload(self) -> dict[str, Any]:
        """Return the camelCase mapping the validator inspects."""
        return self.model_dump(by_alias=True)


class VerifiedFacts(BaseModel):
    """Facts that passed structural and business validation; immutable."""

    current_market: float = Field(..., gt=0, strict=True)
    peak_revenue_2030: float = Field(..., gt=0, strict=True)
    years_to_peak: float = Field(..., gt=0, strict=True)
    avg_price: float = Field(..., gt=0, strict=True)
    persistence_rate: float = Field(..., ge=0, le=1, strict=True)
    same_target_assets: float = Field(..., ge=0, strict=True)
    total_assets: float = Field(..., gt=0, strict=True)
    vector_a: list[StrictFloat] = Field(..., min_length=1)
    vector_b: list[StrictFloat] = Field(..., min_length=1)
    deal_activity: list[DealRecord] = Field(..., min_length=1)
    key_market_assumptions: KeyMarketAssumptions
    reg_incentives: RegIncentives
    ip_strength: IpStrength
    financial_forecast: FinancialForecast
    source_map: dict[str, list[HttpUrl]] = Field(..., min_length=1)

    model_config = _WIRE_CONFIG

    @model_validator(mode="after")
    def _vectors_align(self) -> VerifiedFacts:
        if len(self.vector_a) != len(self.vector_b):
            raise ValueError(
                f"vectorA and vectorB must have the same length ({len(self.vector_a)} vs {len(self.vector_b)})"
            )
        return self

    @property
    def source_count(self) -> int:
        return len(self.source_map)


class DerivedFacts(BaseModel):
    """Metrics computed deterministically from verified facts."""

    cagr: float
    peak_patients_2030: float
    pipeline_density: float
    strategic_fit: float

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)
