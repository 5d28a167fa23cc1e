from pharmasignal.models.records import AuditRecord
from pharmasignal.services.research import audit as audit_module
from pharmasignal.services.research.audit import (
    AuditLogError,
    InMemoryAuditLog,
    SQLAuditLog,
    append_best_effort,
    build_audit_log,
)
from tests.helpers.metrics_stub import StubMetrics


def _record(**overrides) -> AuditRecord:
    payload = {
        "fingerprint": "f" * 64,
        "trace_id": "trace-1",
        "model": "sonar-pro",
        "outcome": "done",
        "inputs": {"therapeuticArea": "Oncology", "indication": "X"},
        "search_params": {"fullResearch": False},
        "attempts": 2,
        "duration_ms": 12.5,
        "source_count": 3,
        "cost_usd": 0.4,
    }
    payload.update(overrides)
    return AuditRecord(**payload)


class _BrokenAuditLog:
    def append(self, record: AuditRecord) -> None:
        raise AuditLogError("connection refused")

    def list(self, fingerprint: str) -> list[AuditRecord]:
        return []


def test_in_memory_audit_log_filters_by_fingerprint():
    log = InMemoryAuditLog()
    log.append(_record())
    log.append(_record(fingerprint="e" * 64))

    assert [record.fingerprint for record in log.list("f" * 64)] == ["f" * 64]
    assert len(log.records) == 2


def test_sql_audit_log_round_trip(tmp_path):
    log = SQLAuditLog(f"sqlite:///{tmp_path / 'audit.db'}", auto_create_schema=True)
    try:
        log.append(_record(outcome="rejected"))
        log.append(_record(outcome="done", attempts=1))

        records = log.list("f" * 64)

        assert [record.outcome for record in records] == ["rejected", "done"]
        assert records[0].inputs == {"therapeuticArea": "Oncology", "indication": "X"}
        assert records[1].attempts == 1
    finally:
        log.dispose()


def test_append_best_effort_never_raises(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(audit_module, "metrics", stub)

    assert append_best_effort(_BrokenAuditLog(), _record()) is False
    assert stub.increment_calls == [
        {"metric": "research.audit.errors", "value": 1.0, "tags": {"code": "AUDIT_WRITE_FAILED"}}
    ]


def test_append_best_effort_reports_success():
    log = InMemoryAuditLog()
    assert append_best_effort(log, _record()) is True


def test_build_audit_log_defaults_to_memory(monkeypatch):
    monkeypatch.setattr(audit_module.settings, "database_url", None)
    assert isinstance(build_audit_log(), InMemoryAuditLog)


class _UnreachableAuditLog(InMemoryAuditLog):
    def append(self, record: AuditRecord) -> None:
        raise ConnectionError("connection reset")


def test_append_best_effort_absorbs_unexpected_backend_errors(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(audit_module, "metrics", stub)

    assert append_best_effort(_UnreachableAuditLog(), _record()) is False
    assert stub.increment_calls[0]["tags"] == {"code": "ConnectionError"}
