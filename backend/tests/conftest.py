"""Pytest configuration and fixtures."""
import asyncio
import os
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

os.environ["DEBUG"] = "False"
os.environ["LOG_LEVEL"] = "WARNING"

from mailhealth.main import app
from mailhealth.api.deps import get_engine
from mailhealth.core.config import settings
from mailhealth.services.checks.blacklist import BlacklistChecker
from mailhealth.services.checks.web_server import PeerCertificate, WebServerChecker
from mailhealth.services.dns.cache import SingleFlightCache
from mailhealth.services.dns.governor import ConcurrencyGovernor
from mailhealth.services.dns.resolver import (
    CachingResolver,
    CaaRecord,
    DnsError,
    DnsErrorKind,
    MxRecord,
    SoaRecord,
)
from mailhealth.services.health_check import HealthCheckEngine

FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
STRONG_DKIM_KEY = "MIIBIjANBgkqhkiG9w0BAQEFAAOCAQ8AMIIBCgKCAQEA" + "A" * 360


class FakeDnsBackend:
    """In-memory DNS backend; unknown names answer NOT_FOUND."""

    def __init__(self, answers=None, errors=None, delay: float = 0.0):
        self.answers = dict(answers or {})
        self.errors = dict(errors or {})
        self.delay = delay
        self.nameservers = ["192.0.2.53"]
        self.calls = []

    def set(self, record_type: str, hostname: str, value):
        self.answers[(record_type, hostname)] = value
        return self

    def fail(self, record_type: str, hostname: str, kind: DnsErrorKind):
        self.errors[(record_type, hostname)] = kind
        return self

    def count(self, record_type: str, hostname: str) -> int:
        return self.calls.count((record_type, hostname))

    async def query(self, record_type: str, hostname: str):
        self.calls.append((record_type, hostname))
        if self.delay:
            await asyncio.sleep(self.delay)
        key = (record_type, hostname)
        if key in self.errors:
            raise DnsError(self.errors[key], record_type, hostname)
        if key in self.answers:
            return self.answers[key]
        raise DnsError(DnsErrorKind.NOT_FOUND, record_type, hostname)


def healthy_zone() -> dict:
    """Answers for a well-configured example.com."""
    return {
        ("A", "example.com"): ["93.184.216.34"],
        ("MX", "example.com"): [MxRecord(20, "mx2.example.com"), MxRecord(10, "mx1.example.com")],
        ("A", "mx1.example.com"): ["198.51.100.25"],
        ("A", "mx2.example.com"): ["198.51.100.26"],
        ("NS", "example.com"): ["ns1.example.net", "ns2.example.net"],
        ("A", "ns1.example.net"): ["192.0.2.1"],
        ("A", "ns2.example.net"): ["192.0.2.2"],
        ("SOA", "example.com"): SoaRecord(
            "ns1.example.net", "hostmaster.example.com", 2024010101, 7200, 3600, 1209600, 300
        ),
        ("CAA", "example.com"): [CaaRecord(0, "issue", "letsencrypt.org")],
        ("TXT", "example.com"): [
            ["v=spf1 ip4:198.51.100.0/24 include:_spf.mailer.net -all"],
            ["google-site-verification=abc123"],
        ],
        ("TXT", "_spf.mailer.net"): [["v=spf1 ip4:203.0.113.0/24 ~all"]],
        ("TXT", "_dmarc.example.com"): [["v=DMARC1; p=reject; rua=mailto:dmarc@example.com"]],
        ("TXT", "selector1._domainkey.example.com"): [["v=DKIM1; k=rsa; p=", STRONG_DKIM_KEY]],
    }


def make_resolver(backend, query_timeout: float = 1.0, limit: int = 16, ttl: float = 600) -> CachingResolver:
    return CachingResolver(
        backend=backend,
        governor=ConcurrencyGovernor(limit),
        cache=SingleFlightCache(ttl=ttl),
        query_timeout=query_timeout,
    )


def secure_site(request: httpx.Request) -> httpx.Response:
    if request.url.scheme == "http":
        return httpx.Response(301, headers={"location": f"https://{request.url.host}/"})
    return httpx.Response(200)


def cert_fetcher_for(days_left: int = 90, trusted: bool = True, verify_error=None):
    async def fetch(host, port, timeout):
        return PeerCertificate(
            not_after=FIXED_NOW + timedelta(days=days_left, hours=1),
            trusted=trusted,
            verify_error=verify_error,
            subject=f"CN={host}",
        )
    return fetch


def make_web_checker(handler=secure_site, cert_fetcher=None) -> WebServerChecker:
    return WebServerChecker(
        transport=httpx.MockTransport(handler),
        cert_fetcher=cert_fetcher or cert_fetcher_for(),
        clock=lambda: FIXED_NOW,
    )


def make_engine(resolver: CachingResolver, **overrides) -> HealthCheckEngine:
    components = dict(
        blacklist=BlacklistChecker(resolver, SingleFlightCache(ttl=60), jitter_max=0),
        web_server=make_web_checker(),
    )
    components.update(overrides)
    return HealthCheckEngine.from_settings(settings, resolver=resolver, **components)


@pytest.fixture
def dns_backend():
    """Fake backend preloaded with a healthy example.com zone."""
    return FakeDnsBackend(healthy_zone())


@pytest.fixture
def empty_backend():
    return FakeDnsBackend()


@pytest.fixture
def resolver(dns_backend):
    return make_resolver(dns_backend)


@pytest.fixture
def engine(resolver):
    return make_engine(resolver)


@pytest.fixture(scope="function")
def client(engine):
    """Create a test client with the engine dependency overridden."""
    app.dependency_overrides[get_engine] = lambda: engine
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()
