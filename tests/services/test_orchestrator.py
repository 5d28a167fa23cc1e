import pytest

from pharmasignal.clients.perplexity import PerplexityTimeoutError
from pharmasignal.services.research.calculator import derive_facts
from pharmasignal.services.research.errors import ComputationError, ResponseParseError, TransportError
from pharmasignal.services.research.orchestrator import (
    ResearchOrchestrator,
    ResearchState,
    parse_facts_payload,
)
from pharmasignal.services.research.sanity import SanityThresholds
from tests.utils import StubRetrievalClient, oncology_request, valid_facts_payload

S = ResearchState


def _run(client, *, max_escalations=2, **kwargs):
    orchestrator = ResearchOrchestrator(client, max_escalations=max_escalations, **kwargs)
    return orchestrator.run(oncology_request(), model="sonar-pro", fingerprint="f" * 64, trace_id="trace-1")


def _placeholder_payload():
    return valid_facts_payload(currentMarket="Unknown")


def test_valid_response_reaches_done_in_one_call():
    client = StubRetrievalClient([valid_facts_payload()])

    outcome = _run(client)

    assert outcome.state is S.DONE
    assert client.calls == 1
    assert outcome.attempts == 1
    assert outcome.transitions == (S.IDLE, S.FETCHING, S.VALIDATING, S.SANITY_CHECKING, S.COMPUTING, S.DONE)
    assert outcome.result is not None
    assert outcome.result.derived == derive_facts(outcome.result.facts)
    assert outcome.result.trace_id == "trace-1"
    assert outcome.usage.api_calls == 1


def test_persistent_defects_are_rejected_after_exactly_one_plus_n_calls():
    client = StubRetrievalClient([_placeholder_payload()])

    outcome = _run(client, max_escalations=2)

    assert outcome.state is S.REJECTED
    assert client.calls == 3
    assert outcome.attempts == 3
    assert outcome.transitions.count(S.ESCALATING) == 2
    assert [issue.path for issue in outcome.issues] == ["currentMarket"]
    assert outcome.error is None


def test_zero_escalations_means_single_attempt():
    client = StubRetrievalClient([_placeholder_payload()])
    outcome = _run(client, max_escalations=0)
    assert outcome.state is S.REJECTED
    assert client.calls == 1


def test_escalation_recovers_on_corrected_response():
    client = StubRetrievalClient([_placeholder_payload(), valid_facts_payload()])

    outcome = _run(client)

    assert outcome.state is S.DONE
    assert client.calls == 2
    assert outcome.result.attempts == 2
    assert [request.policy for request in client.requests] == ["baseline", "corrective"]
    assert "- currentMarket:" in client.requests[1].messages[-1]["content"]
    assert outcome.transitions[:5] == (S.IDLE, S.FETCHING, S.VALIDATING, S.ESCALATING, S.FETCHING)


def _deal(asset: str, stage: str) -> dict:
    deal = dict(valid_facts_payload()["dealActivity"][0])
    deal.update(asset=asset, stage=stage)
    return deal


@pytest.mark.parametrize("missing_field", ["stage", "priceUSD"])
def test_deal_missing_required_field_is_rejected_after_one_plus_n_calls(missing_field):
    broken = valid_facts_payload()
    del broken["dealActivity"][0][missing_field]
    client = StubRetrievalClient([broken])

    outcome = _run(client, max_escalations=2)

    assert outcome.state is S.REJECTED
    assert client.calls == 3
    assert outcome.repairs == ()
    assert [issue.path for issue in outcome.issues] == [f"dealActivity[0].{missing_field}"]


def test_escalated_attempt_repairs_malformed_stage():
    broken = valid_facts_payload(dealActivity=[_deal("ZX-101", "Phase II trial")])
    client = StubRetrievalClient([broken])

    outcome = _run(client)

    assert outcome.state is S.DONE
    assert client.calls == 2
    assert outcome.result.facts.deal_activity[0].stage == "Phase 2"
    assert outcome.result.repairs == ["dealActivity[0].stage: inferred stage 'Phase 2' from deal text"]


def test_repair_targets_the_defects_of_the_response_being_repaired():
    first = valid_facts_payload(dealActivity=[_deal("ZX-101", "Phase II trial"), _deal("QX-7", "Phase 2")])
    second = valid_facts_payload(dealActivity=[_deal("ZX-101", "Phase 2"), _deal("QX-7", "Phase II trial")])
    client = StubRetrievalClient([first, second])

    outcome = _run(client, max_escalations=1)

    assert outcome.state is S.DONE
    assert client.calls == 2
    assert outcome.result.repairs == ["dealActivity[1].stage: inferred stage 'Phase 2' from deal text"]
    assert [deal.stage for deal in outcome.result.facts.deal_activity] == ["Phase 2", "Phase 2"]



def test_unparseable_response_fails_without_retry():
    client = StubRetrievalClient(["I could not find any data for this request."])

    outcome = _run(client)

    assert outcome.state is S.FAILED
    assert client.calls == 1
    assert isinstance(outcome.error, ResponseParseError)
    assert outcome.error.trace_id == "trace-1"


@pytest.mark.parametrize(
    ("field", "value"),
    [("currentMarket", {"value": 2_000_000_000.0}), ("vectorA", "1,0,1")],
)
def test_wrongly_typed_field_is_escalated_not_failed(field, value):
    client = StubRetrievalClient([valid_facts_payload(**{field: value}), valid_facts_payload()])

    outcome = _run(client)

    assert outcome.state is S.DONE
    assert client.calls == 2
    assert f"- {field}" in client.requests[1].messages[-1]["content"]



def test_transport_timeout_fails_without_retry():
    client = StubRetrievalClient([PerplexityTimeoutError()])

    outcome = _run(client)

    assert outcome.state is S.FAILED
    assert client.calls == 1
    assert isinstance(outcome.error, TransportError)
    assert outcome.error.code == "504_RETRIEVAL_TIMEOUT"


def test_transport_error_after_escalation_keeps_prior_issues():
    client = StubRetrievalClient([_placeholder_payload(), TransportError("boom")])

    outcome = _run(client)

    assert outcome.state is S.FAILED
    assert client.calls == 2
    assert [issue.path for issue in outcome.issues] == ["currentMarket"]


def test_sanity_violation_rejects_without_retry():
    client = StubRetrievalClient([valid_facts_payload(yearsToPeak=40.0)])

    outcome = _run(client)

    assert outcome.state is S.REJECTED
    assert client.calls == 1
    assert [issue.path for issue in outcome.issues] == ["yearsToPeak"]
    assert S.SANITY_CHECKING in outcome.transitions
    assert S.COMPUTING not in outcome.transitions


def test_zero_magnitude_vectors_yield_zero_fit():
    payload = valid_facts_payload(vectorA=[0.0, 0.0, 0.0], vectorB=[0.0, 0.0, 0.0])
    client = StubRetrievalClient([payload])
    outcome = _run(client)
    assert outcome.state is S.DONE
    assert outcome.result.derived.strategic_fit == 0.0


def test_computation_error_surfaces_as_failed(monkeypatch, caplog):
    from pharmasignal.services.research import orchestrator as orchestrator_module
    from pharmasignal.services.research.calculator import InvalidArgument

    def _boom(_facts):
        raise InvalidArgument("pipeline_density requires total_count > 0")

    monkeypatch.setattr(orchestrator_module, "derive_facts", _boom)
    client = StubRetrievalClient([valid_facts_payload()])

    with caplog.at_level("ERROR"):
        outcome = _run(client)

    assert outcome.state is S.FAILED
    assert isinstance(outcome.error, ComputationError)
    assert outcome.error.code == "500_COMPUTATION_DEFECT"
    assert any(record.getMessage() == "research.computation_defect" for record in caplog.records)


def test_each_run_uses_fresh_state():
    client = StubRetrievalClient([_placeholder_payload(), valid_facts_payload()])
    orchestrator = ResearchOrchestrator(client, max_escalations=0)

    first = orchestrator.run(oncology_request(), model="sonar-pro", fingerprint="a" * 64)
    second = orchestrator.run(oncology_request(), model="sonar-pro", fingerprint="a" * 64)

    assert first.state is S.REJECTED
    assert second.state is S.DONE
    assert second.attempts == 1
    assert second.usage.api_calls == 1
    assert first.trace_id != second.trace_id


def test_budget_downgrades_model_within_a_run():
    client = StubRetrievalClient([_placeholder_payload()], input_tokens=1000, output_tokens=8000)
    orchestrator = ResearchOrchestrator(client, max_escalations=2, max_cost_usd=3.0)

    outcome = orchestrator.run(oncology_request(), model="sonar-deep-research", fingerprint="b" * 64)

    assert outcome.state is S.REJECTED
    assert client.requests[0].model == "sonar-deep-research"
    assert client.requests[-1].model == "sonar-pro"
    assert "sonar-pro" in outcome.usage.models


def test_custom_thresholds_are_honoured():
    client = StubRetrievalClient([valid_facts_payload()])
    outcome = _run(client, thresholds=SanityThresholds(max_years_to_peak=2.0))
    assert outcome.state is S.REJECTED


def test_negative_escalation_budget_is_rejected():
    with pytest.raises(ValueError):
        ResearchOrchestrator(StubRetrievalClient([{}]), max_escalations=-1)


@pytest.mark.parametrize(
    "text",
    [
        '```json\n{"currentMarket": 1.0}\n```',
        'Here is the data you asked for:\n{"currentMarket": 1.0}\nLet me know.',
        '{"currentMarket": 1.0}',
    ],
)
def test_parse_facts_payload_tolerates_fences_and_prose(text):
    assert parse_facts_payload(text).current_market == 1.0


@pytest.mark.parametrize("text", ["", "no json here", "[1, 2, 3]", "{not json}"])
def test_parse_facts_payload_rejects_non_objects(text):
    with pytest.raises(ResponseParseError):
        parse_facts_payload(text)
