from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError, APIStatusError, APITimeoutError, RateLimitError

from pharmasignal.clients import perplexity as perplexity_module
from pharmasignal.clients.perplexity import (
    PerplexityClient,
    PerplexityError,
    PerplexityRateLimitError,
    PerplexitySchemaError,
    PerplexityTimeoutError,
)
from pharmasignal.services.research.escalation import ESCALATION_LADDER, build_retrieval_request
from tests.helpers.metrics_stub import StubMetrics
from tests.utils import FDA_URL, oncology_request

_URL = "https://api.perplexity.ai/chat/completions"


class _FakeCompletions:
    def __init__(self, result):
        self._result = result
        self.calls: list[dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if isinstance(self._result, Exception):
            raise self._result
        return self._result


def _sdk(result) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=_FakeCompletions(result)))


def _completion(content="{\"currentMarket\": 1}", *, citations=None, model="sonar-pro"):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=812, completion_tokens=2450),
        citations=citations,
        model=model,
        model_extra={},
    )


def _request(policy_index: int = 0):
    return build_retrieval_request(
        oncology_request(), ESCALATION_LADDER[policy_index], model="sonar-pro", timeout_seconds=30.0
    )


@pytest.fixture
def stub_metrics(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(perplexity_module, "metrics", stub)
    return stub


def test_retrieve_maps_completion_to_response(stub_metrics):
    sdk = _sdk(_completion(citations=[FDA_URL]))
    client = PerplexityClient("", sdk_client=sdk)

    response = client.retrieve(_request())

    assert response.content == "{\"currentMarket\": 1}"
    assert response.usage.input_tokens == 812
    assert response.usage.output_tokens == 2450
    assert response.citations == [FDA_URL]
    assert response.model == "sonar-pro"
    assert stub_metrics.timing_calls[0]["metric"] == "retrieval.latency_ms"
    assert stub_metrics.increment_calls == []


def test_retrieve_forwards_policy_knobs():
    sdk = _sdk(_completion())
    client = PerplexityClient("", sdk_client=sdk)

    client.retrieve(_request(policy_index=2))

    call = sdk.chat.completions.calls[0]
    assert call["model"] == "sonar-pro"
    assert call["temperature"] == 0.0
    assert call["max_tokens"] == 8000
    assert call["timeout"] == 30.0
    assert call["extra_body"]["reasoning_effort"] == "high"
    assert call["extra_body"]["web_search_options"] == {"search_context_size": "high"}
    assert call["extra_body"]["response_format"]["type"] == "json_schema"
    assert "fda.gov" in call["extra_body"]["search_domain_filter"]
    assert [message["role"] for message in call["messages"]] == ["system", "user"]


def test_citations_fall_back_to_model_extra():
    completion = _completion()
    del completion.citations
    completion.model_extra = {"citations": [FDA_URL]}
    client = PerplexityClient("", sdk_client=_sdk(completion))

    assert client.retrieve(_request()).citations == [FDA_URL]


@pytest.mark.parametrize(
    "completion",
    [
        SimpleNamespace(choices=[], usage=None),
        SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="   "))], usage=None),
    ],
)
def test_empty_completion_raises_schema_error(completion):
    client = PerplexityClient("", sdk_client=_sdk(completion))

    with pytest.raises(PerplexitySchemaError) as excinfo:
        client.retrieve(_request())

    assert excinfo.value.code == "502_RETRIEVAL_SCHEMA"


def _sdk_errors():
    request = httpx.Request("POST", _URL)
    return [
        (APITimeoutError(request=request), PerplexityTimeoutError, "504_RETRIEVAL_TIMEOUT"),
        (
            RateLimitError("slow down", response=httpx.Response(429, request=request), body=None),
            PerplexityRateLimitError,
            "429_RATE_LIMIT",
        ),
        (
            APIStatusError("bad gateway", response=httpx.Response(502, request=request), body=None),
            PerplexityError,
            "502_RETRIEVAL_UPSTREAM",
        ),
        (APIConnectionError(request=request), PerplexityError, "502_RETRIEVAL_UPSTREAM"),
    ]


@pytest.mark.parametrize(("sdk_error", "expected_type", "expected_code"), _sdk_errors())
def test_sdk_errors_map_to_transport_errors(stub_metrics, sdk_error, expected_type, expected_code):
    sdk = _sdk(sdk_error)
    client = PerplexityClient("", sdk_client=sdk)

    with pytest.raises(expected_type) as excinfo:
        client.retrieve(_request())

    assert excinfo.value.code == expected_code
    assert len(sdk.chat.completions.calls) == 1
    assert stub_metrics.increment_calls[0]["tags"]["code"] == expected_code


def test_client_requires_api_key_without_sdk():
    with pytest.raises(ValueError):
        PerplexityClient("")


def test_client_builds_sdk_without_retries():
    client = PerplexityClient("pplx-test", base_url="https://api.perplexity.ai/")
    assert client._client.max_retries == 0
    assert str(client._client.base_url).rstrip("/") == "https://api.perplexity.ai"
