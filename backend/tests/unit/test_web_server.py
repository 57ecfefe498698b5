"""Unit tests for the Web/TLS evaluator."""
import asyncio

import httpx

from conftest import cert_fetcher_for, make_web_checker
from mailhealth.schemas.report import TestStatus


def evaluate(checker, domain="example.com"):
    return {test.name: test for test in asyncio.run(checker.evaluate(domain))}


def redirect_to(location):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.scheme == "http":
            return httpx.Response(301, headers={"location": location})
        return httpx.Response(200)
    return handler


def no_redirect(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200)


def refuse_http(request: httpx.Request) -> httpx.Response:
    if request.url.scheme == "http":
        raise httpx.ConnectError("Connection refused", request=request)
    return httpx.Response(200)


def refuse_all(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("Connection refused", request=request)


def server_error(request: httpx.Request) -> httpx.Response:
    if request.url.scheme == "http":
        return httpx.Response(301, headers={"location": "https://example.com/"})
    return httpx.Response(503)


class TestHttpProbes:
    """HTTP and HTTPS reachability."""

    def test_secure_site_passes(self):
        tests = evaluate(make_web_checker())
        assert list(tests) == ["HTTP Redirection", "HTTPS Availability", "SSL Certificate", "SSL Chain"]
        assert all(test.status == TestStatus.PASS for test in tests.values())

    def test_redirect_to_plain_http_is_warning(self):
        tests = evaluate(make_web_checker(handler=redirect_to("http://www.example.com/")))
        assert tests["HTTP Redirection"].status == TestStatus.WARNING
        assert tests["HTTP Redirection"].info == "Redirects improperly"

    def test_http_without_redirect_is_warning(self):
        tests = evaluate(make_web_checker(handler=no_redirect))
        assert tests["HTTP Availability"].info == "No Redirect"
        assert tests["HTTPS Availability"].status == TestStatus.PASS

    def test_http_unreachable(self):
        tests = evaluate(make_web_checker(handler=refuse_http))
        assert tests["HTTP Availability"].status == TestStatus.WARNING
        assert tests["HTTP Availability"].info == "Unreachable"

    def test_https_unreachable(self):
        tests = evaluate(make_web_checker(handler=refuse_all))
        assert tests["HTTPS Availability"].status == TestStatus.WARNING

    def test_https_server_error_is_warning(self):
        tests = evaluate(make_web_checker(handler=server_error))
        assert tests["HTTPS Availability"].status == TestStatus.WARNING
        assert tests["HTTPS Availability"].info == "Status 503"


class TestCertificateInspection:
    """TLS certificate grading."""

    def test_expired_certificate_is_error(self):
        tests = evaluate(make_web_checker(cert_fetcher=cert_fetcher_for(days_left=-3)))
        assert tests["SSL Certificate"].status == TestStatus.ERROR
        assert tests["SSL Certificate"].result == "Certificate Expired"

    def test_expiring_certificate_is_warning(self):
        tests = evaluate(make_web_checker(cert_fetcher=cert_fetcher_for(days_left=5)))
        assert tests["SSL Certificate"].status == TestStatus.WARNING
        assert tests["SSL Certificate"].info == "Expires in 5 days"

    def test_untrusted_chain_is_warning(self):
        fetcher = cert_fetcher_for(trusted=False, verify_error="self-signed certificate")
        tests = evaluate(make_web_checker(cert_fetcher=fetcher))
        assert tests["SSL Certificate"].status == TestStatus.PASS
        assert tests["SSL Chain"].status == TestStatus.WARNING
        assert tests["SSL Chain"].info == "self-signed certificate"

    def test_no_certificate_is_error(self):
        async def fetch(host, port, timeout):
            return None

        tests = evaluate(make_web_checker(cert_fetcher=fetch))
        assert tests["SSL Certificate"].status == TestStatus.ERROR
        assert "SSL Chain" not in tests

    def test_handshake_timeout_is_warning(self):
        async def fetch(host, port, timeout):
            raise asyncio.TimeoutError()

        tests = evaluate(make_web_checker(cert_fetcher=fetch))
        assert tests["SSL Handshake"].status == TestStatus.WARNING
        assert tests["SSL Handshake"].info == "Timed out"
        assert "SSL Certificate" not in tests

    def test_connection_refused_is_warning(self):
        async def fetch(host, port, timeout):
            raise ConnectionRefusedError("Connection refused")

        tests = evaluate(make_web_checker(cert_fetcher=fetch))
        assert tests["SSL Handshake"].status == TestStatus.WARNING
        assert tests["SSL Handshake"].info == "Connection refused"
