"""Inbound research request models."""

from __future__ import annotations

from typing import Literal, get_args

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from pydantic.config import ConfigDict

Geography = Literal["US", "EU", "JP", "CN", "Global"]
DevelopmentPhase = Literal["Pre-clinical", "Phase 1", "Phase 2", "Phase 3", "Filed"]

GEOGRAPHIES: tuple[str, ...] = get_args(Geography)
DEVELOPMENT_PHASES: tuple[str, ...] = get_args(DevelopmentPhase)


class RequestSpec(BaseModel):
    """Normalized research question for a single target/indication pair."""

    therapeutic_area: str = Field(..., min_length=1)
    indication: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    geography: Geography
    development_phase: DevelopmentPhase
    full_research: bool = False

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict[str, object]:
        """Return the camelCase mapping sent to the retrieval service."""
        return self.model_dump(mode="json", by_alias=True)
