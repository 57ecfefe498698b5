"""Web/TLS Evaluator - HTTP->HTTPS redirect, HTTPS reachability and certificate inspection."""
import asyncio
import math
import ssl
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

import httpx
import structlog
from cryptography import x509

from mailhealth.schemas.report import TestResult, TestStatus

logger = structlog.get_logger()

NO_ACTION = "No action needed."


@dataclass(frozen=True)
class PeerCertificate:
    not_after: datetime
    trusted: bool
    verify_error: Optional[str] = None
    subject: Optional[str] = None


CertFetcher = Callable[[str, int, float], Awaitable[Optional[PeerCertificate]]]


def _unverified_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


async def _handshake(host: str, port: int, context: ssl.SSLContext, timeout: float) -> Optional[bytes]:
    _, writer = await asyncio.wait_for(
        asyncio.open_connection(host, port, ssl=context, server_hostname=host), timeout=timeout
    )
    try:
        ssl_object = writer.get_extra_info("ssl_object")
        return ssl_object.getpeercert(binary_form=True) if ssl_object else None
    finally:
        writer.close()
        with suppress(OSError):
            await writer.wait_closed()


async def fetch_peer_certificate(host: str, port: int = 443, timeout: float = 2.5) -> Optional[PeerCertificate]:
    """Handshake with ``host`` and return its leaf certificate.

    A verifying handshake runs first; if the chain or hostname does not
    verify, the certificate is fetched again without verification so its
    validity window can still be reported.
    """
    verify_error = None
    try:
        der = await _handshake(host, port, ssl.create_default_context(), timeout)
        trusted = True
    except ssl.SSLCertVerificationError as e:
        trusted = False
        verify_error = e.verify_message or str(e)
        der = await _handshake(host, port, _unverified_context(), timeout)

    if not der:
        return None
    cert = x509.load_der_x509_certificate(der)
    return PeerCertificate(
        not_after=cert.not_valid_after_utc,
        trusted=trusted,
        verify_error=verify_error,
        subject=cert.subject.rfc4514_string(),
    )


class WebServerChecker:
    def __init__(
        self,
        http_timeout: float = 3.0,
        tls_timeout: float = 2.5,
        expiry_warning_days: int = 14,
        user_agent: str = "MailHealthChecker/1.0",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cert_fetcher: CertFetcher = fetch_peer_certificate,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.http_timeout = http_timeout
        self.tls_timeout = tls_timeout
        self.expiry_warning_days = expiry_warning_days
        self.user_agent = user_agent
        self.transport = transport
        self.cert_fetcher = cert_fetcher
        self.clock = clock

    async def evaluate(self, domain: str) -> List[TestResult]:
        async with httpx.AsyncClient(
            timeout=self.http_timeout,
            follow_redirects=False,
            verify=False,  # chain trust is reported by the certificate check
            headers={"User-Agent": self.user_agent},
            transport=self.transport,
        ) as client:
            http_test, https_test, tls_tests = await asyncio.gather(
                self._probe_http(client, domain),
                self._probe_https(client, domain),
                self._inspect_certificate(domain),
            )
        return [http_test, https_test, *tls_tests]

    async def _probe_http(self, client: httpx.AsyncClient, domain: str) -> TestResult:
        try:
            response = await client.head(f"http://{domain}")
        except httpx.HTTPError as e:
            logger.debug("HTTP probe failed", domain=domain, error=str(e))
            return TestResult(
                name="HTTP Availability", status=TestStatus.WARNING, info="Unreachable",
                reason="Could not connect via HTTP (Port 80).",
                recommendation="Ensure your web server is running on port 80 and 443.",
            )

        if response.is_redirect or 300 <= response.status_code < 400:
            location = response.headers.get("location", "")
            if location.lower().startswith("https://"):
                return TestResult(
                    name="HTTP Redirection", status=TestStatus.PASS, info="Redirects to HTTPS",
                    reason="HTTP properly redirects to secure HTTPS.", recommendation=NO_ACTION,
                )
            return TestResult(
                name="HTTP Redirection", status=TestStatus.WARNING, info="Redirects improperly",
                reason=f"HTTP redirects to {location or '(no location)'}, expected https://{domain}.",
                recommendation="Ensure HTTP redirects to HTTPS.",
            )
        if response.is_success:
            return TestResult(
                name="HTTP Availability", status=TestStatus.WARNING, info="No Redirect",
                reason="HTTP is available but does not redirect to HTTPS.",
                recommendation="Configure 301 redirect from HTTP to HTTPS.",
            )
        return TestResult(
            name="HTTP Availability", status=TestStatus.WARNING, info=f"Status {response.status_code}",
            reason="HTTP returned an error status.", recommendation="Check your web server configuration.",
        )

    async def _probe_https(self, client: httpx.AsyncClient, domain: str) -> TestResult:
        try:
            response = await client.head(f"https://{domain}")
        except httpx.HTTPError as e:
            logger.debug("HTTPS probe failed", domain=domain, error=str(e))
            return TestResult(
                name="HTTPS Availability", status=TestStatus.WARNING, info="Unreachable",
                reason="Could not connect via HTTPS (Port 443).",
                recommendation="Ensure your web server is running and port 443 is open.",
            )
        return TestResult(
            name="HTTPS Availability",
            status=TestStatus.PASS if response.status_code < 500 else TestStatus.WARNING,
            info=f"Status {response.status_code}",
            reason=f"Web server returned status {response.status_code}.",
            recommendation="No action needed if this is your expected behavior.",
        )

    async def _inspect_certificate(self, domain: str) -> List[TestResult]:
        try:
            cert = await self.cert_fetcher(domain, 443, self.tls_timeout)
        except asyncio.TimeoutError:
            return [TestResult(
                name="SSL Handshake", status=TestStatus.WARNING, info="Timed out",
                reason=f"TLS handshake did not complete within {self.tls_timeout:g}s.",
                recommendation="Check that port 443 is open and the server answers TLS promptly.",
            )]
        except (OSError, ValueError) as e:
            return [TestResult(
                name="SSL Handshake", status=TestStatus.WARNING, info=str(e) or e.__class__.__name__,
                reason="SSL Connection failed.", recommendation="Check server TLS configuration.",
            )]

        if cert is None:
            return [TestResult(
                name="SSL Certificate", status=TestStatus.ERROR, info="No Certificate presented",
                reason="Server did not present a certificate.", recommendation="Configure SSL on your web server.",
                host=domain, result="No Certificate",
            )]

        tests = [self._grade_expiry(domain, cert)]
        if cert.trusted:
            tests.append(TestResult(
                name="SSL Chain", status=TestStatus.PASS, info="Valid",
                reason="Certificate chain is trusted.", recommendation=NO_ACTION,
            ))
        else:
            tests.append(TestResult(
                name="SSL Chain", status=TestStatus.WARNING, info=cert.verify_error or "Untrusted",
                reason="Certificate trust status is invalid.", recommendation="Check intermediate certificates.",
                host=domain,
            ))
        return tests

    def _grade_expiry(self, domain: str, cert: PeerCertificate) -> TestResult:
        days_left = math.floor((cert.not_after - self.clock()).total_seconds() / 86400)
        expiry = cert.not_after.strftime("%Y-%m-%d")
        if days_left < 0:
            return TestResult(
                name="SSL Certificate", status=TestStatus.ERROR, info="Expired",
                reason=f"Certificate expired on {expiry}.",
                recommendation="Renew your SSL certificate immediately.",
                host=domain, result="Certificate Expired",
            )
        if days_left < self.expiry_warning_days:
            return TestResult(
                name="SSL Certificate", status=TestStatus.WARNING, info=f"Expires in {days_left} days",
                reason=f"Certificate expires on {expiry}.", recommendation="Plan to renew your certificate.",
                host=domain,
            )
        return TestResult(
            name="SSL Certificate", status=TestStatus.PASS, info=f"Valid ({days_left} days left)",
            reason="Certificate is valid.", recommendation=NO_ACTION,
        )
