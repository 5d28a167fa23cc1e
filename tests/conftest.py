import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from pharmasignal.main import app
from pharmasignal.services.research.audit import InMemoryAuditLog
from pharmasignal.services.research.cache import InMemoryResultCache
from pharmasignal.services.research.engine import ResearchService, get_research_service
from pharmasignal.services.research.orchestrator import ResearchOrchestrator
from tests.utils import StubRetrievalClient, valid_facts_payload


class _SyncASGIClient:
    """Minimal synchronous wrapper around httpx.AsyncClient for ASGI apps."""

    def __init__(self, app):
        transport = httpx.ASGITransport(app=app)
        self._client = httpx.AsyncClient(transport=transport, base_url="http://testserver")

    def request(self, method: str, url: str, **kwargs):
        return asyncio.run(self._client.request(method, url, **kwargs))

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        asyncio.run(self._client.aclose())


@pytest.fixture
def client():
    """Create test client compatible with older/newer httpx releases."""
    try:
        test_client = TestClient(app)
        yield test_client
    except TypeError:
        fallback_client = _SyncASGIClient(app)
        try:
            yield fallback_client
        finally:
            fallback_client.close()


@pytest.fixture
def retrieval_stub():
    """Retrieval stub answering every call with a clean facts payload."""
    return StubRetrievalClient([valid_facts_payload()])


@pytest.fixture
def research_service(retrieval_stub):
    """In-memory ResearchService wired into the app's dependency graph."""
    service = ResearchService(
        client=retrieval_stub,
        cache=InMemoryResultCache(),
        audit_log=InMemoryAuditLog(),
        orchestrator=ResearchOrchestrator(retrieval_stub, max_escalations=1),
    )
    app.dependency_overrides[get_research_service] = lambda: service
    try:
        yield service
    finally:
        app.dependency_overrides.pop(get_research_service, None)
