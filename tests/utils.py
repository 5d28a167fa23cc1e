"""Test helpers for research payloads and retrieval stubs."""

from __future__ import annotations

import copy
import json
from typing import Any

from pharmasignal.models.request import RequestSpec
from pharmasignal.services.research.escalation import RetrievalRequest, RetrievalResponse, TokenUsage

FDA_URL = "https://www.fda.gov/drugs/development-approval-process-drugs"
EVALUATE_URL = "https://www.evaluate.com/vantage/articles/oncology-forecast"
SEC_URL = "https://www.sec.gov/Archives/edgar/data/0000000/licensing-agreement.htm"
FIERCE_URL = "https://www.fiercebiotech.com/biotech/zx-101-licensing-deal"

_VALID_FACTS: dict[str, Any] = {
    "currentMarket": 2_000_000_000.0,
    "peakRevenue2030": 6_000_000_000.0,
    "yearsToPeak": 5.0,
    "avgPrice": 150_000.0,
    "persistenceRate": 0.6,
    "sameTargetAssets": 4.0,
    "totalAssets": 20.0,
    "vectorA": [1.0, 0.0, 1.0],
    "vectorB": [1.0, 1.0, 0.0],
    "dealActivity": [
        {
            "asset": "ZX-101",
            "stage": "Phase 2",
            "priceUSD": 850_000_000.0,
            "dateISO": "2024-03-15",
            "rationale": "Regional licensing of a same-target antibody with positive Phase 2 readout",
            "sources": [FIERCE_URL, SEC_URL],
        }
    ],
    "keyMarketAssumptions": {
        "avgSellingPriceUSD": 150_000.0,
        "persistenceRate": 0.6,
        "treatmentDurationMonths": 12.0,
        "geographicSplit": {"us": 0.55, "eu": 0.3, "row": 0.15},
        "rationale": "Pricing benchmarked against approved therapies in the same line of treatment",
        "sources": [EVALUATE_URL],
    },
    "regIncentives": {
        "prvEligibility": {
            "value": False,
            "rationale": "Indication prevalence exceeds rare pediatric disease criteria",
            "sources": [FDA_URL],
        },
        "nationalPriority": {
            "value": "Breakthrough therapy designation granted",
            "rationale": "Designation announced after Phase 2 data",
            "sources": [FDA_URL],
        },
        "reviewTimelineMonths": {
            "value": 8.0,
            "rationale": "Priority review timeline under the breakthrough pathway",
            "sources": [FDA_URL],
        },
    },
    "ipStrength": {
        "exclusivityYears": {
            "value": 12.0,
            "rationale": "Biologic exclusivity plus composition of matter patent",
            "sources": [SEC_URL],
        },
        "genericEntryRiskPercent": {
            "value": 15.0,
            "rationale": "Biosimilar entry unlikely before patent expiry",
            "sources": [SEC_URL],
        },
        "coreIpPosition": {
            "value": "Composition of matter patent through 2038",
            "rationale": "Core patent family covers the antibody sequence",
            "sources": [SEC_URL],
        },
    },
    "financialForecast": {
        "totalTenYearRevenueUSD": {
            "value": 39_000_000_000.0,
            "rationale": "Ten-year revenue from consensus launch curve",
            "sources": [EVALUATE_URL],
        },
        "peakMarketSharePercent": {
            "value": 18.0,
            "rationale": "Share in line with second-to-market entrants",
            "sources": [EVALUATE_URL],
        },
        "peakPatientsCount": {
            "value": 24_000.0,
            "rationale": "Treated patients implied by peak revenue and price",
            "sources": [EVALUATE_URL],
        },
    },
    "sourceMap": {
        "currentMarket": [EVALUATE_URL],
        "dealActivity": [FIERCE_URL, SEC_URL],
        "regIncentives": [FDA_URL],
    },
}


def valid_facts_payload(**overrides: Any) -> dict[str, Any]:
    """Return a payload that passes validation and every sanity rule."""
    payload = copy.deepcopy(_VALID_FACTS)
    payload.update(overrides)
    return payload


def oncology_request(**overrides: Any) -> RequestSpec:
    payload: dict[str, Any] = {
        "therapeuticArea": "Oncology",
        "indication": "X",
        "target": "Y",
        "geography": "Global",
        "developmentPhase": "Phase 3",
        "fullResearch": False,
    }
    payload.update(overrides)
    return RequestSpec.model_validate(payload)


class StubRetrievalClient:
    """Deterministic stub returning canned responses in order.

    Entries may be strings, mappings (JSON-encoded on return) or exceptions
    (raised). The last entry repeats once the list is exhausted.
    """

    def __init__(self, responses: list[Any], *, input_tokens: int = 500, output_tokens: int = 1500) -> None:
        self._responses = responses
        self._usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
        self.calls = 0
        self.requests: list[RetrievalRequest] = []

    def retrieve(self, request: RetrievalRequest) -> RetrievalResponse:
        idx = min(self.calls, len(self._responses) - 1)
        self.calls += 1
        self.requests.append(request)
        response = self._responses[idx]
        if isinstance(response, Exception):
            raise response
        content = response if isinstance(response, str) else json.dumps(response)
        return RetrievalResponse(content=content, usage=self._usage, model=request.model)
