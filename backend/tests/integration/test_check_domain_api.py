"""Integration tests for the domain check endpoints."""
import pytest
from fastapi.testclient import TestClient

from mailhealth.api.deps import get_engine
from mailhealth.core.config import settings
from mailhealth.main import app
from mailhealth.schemas.report import FailedResult, PartialResult
from mailhealth.services.health_check import DomainCheckError

CHECK_URL = f"{settings.API_V1_PREFIX}/check-domain"


class StubEngine:
    """Engine stand-in with canned outcomes."""

    def __init__(self, outcome):
        self.outcome = outcome
        self.domains = []

    async def run_with_deadline(self, domain, timeout):
        self.domains.append(domain)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    async def run_bulk_health_check(self, domains, timeout, concurrency=5):
        results = []
        for domain in domains:
            try:
                results.append(await self.run_with_deadline(domain, timeout))
            except DomainCheckError as e:
                results.append(FailedResult(domain=domain, message=str(e)))
        return results


@pytest.fixture
def stub_client():
    def make(outcome):
        engine = StubEngine(outcome)
        app.dependency_overrides[get_engine] = lambda: engine
        return TestClient(app), engine
    yield make
    app.dependency_overrides.clear()


class TestCheckDomain:
    """Tests for POST /check-domain."""

    def test_full_report(self, client):
        response = client.post(CHECK_URL, json={"domain": "  Example.COM "})
        assert response.status_code == 200
        data = response.json()
        assert data["domain"] == "example.com"
        assert data["score"] == 100
        assert data["mxRecords"] == ["mx1.example.com", "mx2.example.com"]
        assert data["dmarcPolicy"] == "reject"
        assert set(data["categories"]) == {
            "problems", "dns", "spf", "dmarc", "dkim", "blacklist", "webServer", "smtp",
        }
        first = data["categories"]["dns"]["tests"][0]
        assert first["category"] == "DNS"
        assert first["status"] == "Pass"
        assert "severity" not in first

    @pytest.mark.parametrize("payload", [{"domain": ""}, {"domain": "   "}, {"domain": "localhost"}, {}])
    def test_invalid_domain(self, client, payload):
        response = client.post(CHECK_URL, json=payload)
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid domain format"}

    def test_deadline_returns_partial(self, stub_client):
        client, engine = stub_client(PartialResult(domain="slow.example"))
        response = client.post(CHECK_URL, json={"domain": "slow.example"})

        assert response.status_code == 200
        data = response.json()
        assert data["error"] == "Timeout"
        assert data["status"] == "partial"
        assert data["message"]
        assert "domain" not in data

    def test_engine_failure_is_500(self, stub_client):
        client, engine = stub_client(DomainCheckError("broken.example"))
        response = client.post(CHECK_URL, json={"domain": "broken.example"})

        assert response.status_code == 500
        assert response.json() == {"error": "Internal Server Error"}


class TestBulkCheck:
    """Tests for POST /check-domain/bulk."""

    def test_results_in_request_order(self, stub_client):
        client, engine = stub_client(PartialResult())
        response = client.post(f"{CHECK_URL}/bulk", json={"domains": ["b.example", "A.example"]})

        assert response.status_code == 200
        assert len(response.json()["results"]) == 2
        assert engine.domains == ["b.example", "a.example"]

    def test_failed_domain_is_reported_in_place(self, stub_client):
        client, engine = stub_client(DomainCheckError("broken.example"))
        response = client.post(f"{CHECK_URL}/bulk", json={"domains": ["broken.example"]})

        assert response.status_code == 200
        entry = response.json()["results"][0]
        assert entry["domain"] == "broken.example"
        assert entry["status"] == "failed"
        assert entry["error"] == "Internal Server Error"

    def test_real_engine_report(self, client):
        response = client.post(f"{CHECK_URL}/bulk", json={"domains": ["example.com"]})
        assert response.status_code == 200
        assert response.json()["results"][0]["score"] == 100

    def test_too_many_domains(self, client):
        domains = [f"d{n}.example" for n in range(settings.BULK_MAX_DOMAINS + 1)]
        response = client.post(f"{CHECK_URL}/bulk", json={"domains": domains})
        assert response.status_code == 400

    def test_empty_list(self, client):
        response = client.post(f"{CHECK_URL}/bulk", json={"domains": []})
        assert response.status_code == 400

    def test_invalid_entry_rejects_request(self, client):
        response = client.post(f"{CHECK_URL}/bulk", json={"domains": ["example.com", "nodot"]})
        assert response.status_code == 400
        assert response.json()["invalid"] == ["nodot"]


class TestServiceEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root(self, client):
        response = client.get("/")
        assert response.json()["app"] == settings.APP_NAME
