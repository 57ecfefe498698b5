"""Blacklist Evaluator - DNSBL/URIBL lookups with return-code disambiguation."""
import asyncio
import ipaddress
import random
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import structlog

from mailhealth.schemas.report import ResultType, Severity, TestResult, TestStatus
from mailhealth.services.dns.cache import SingleFlightCache
from mailhealth.services.dns.resolver import CachingResolver, DnsError, DnsErrorKind

logger = structlog.get_logger()

LISTING_RANGE = ipaddress.ip_network("127.0.0.0/8")
SPAMHAUS_ERROR_RANGE = ipaddress.ip_network("127.255.255.0/24")
REFUSED_CODE = "127.0.0.1"


class ListingStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class BlacklistProvider:
    zone: str
    kind: ResultType
    high_trust: bool = False
    low_impact: bool = False

    @property
    def is_spamhaus(self) -> bool:
        return self.zone.endswith("spamhaus.org")


IP_BLACKLISTS = [
    BlacklistProvider("zen.spamhaus.org", ResultType.IP),
    BlacklistProvider("bl.spamcop.net", ResultType.IP, high_trust=True),
    BlacklistProvider("dnsbl.sorbs.net", ResultType.IP),
    BlacklistProvider("b.barracudacentral.org", ResultType.IP),
    BlacklistProvider("cbl.abuseat.org", ResultType.IP),
    BlacklistProvider("ix.dnsbl.manitu.net", ResultType.IP),
    BlacklistProvider("hostkarma.junkemailfilter.com", ResultType.IP, low_impact=True),
    BlacklistProvider("psbl.surriel.com", ResultType.IP),
]

DOMAIN_BLACKLISTS = [
    BlacklistProvider("dbl.spamhaus.org", ResultType.DOMAIN),
    BlacklistProvider("multi.uribl.com", ResultType.DOMAIN),
    BlacklistProvider("multi.surbl.org", ResultType.DOMAIN),
]

# Mail hosts whose sending IPs are shared by many tenants.
SHARED_MAIL_PROVIDERS = (
    "google.com", "googlemail.com", "outlook.com", "zoho.com", "zoho.eu",
    "facebook.com", "meta.com", "amazon.com", "amazonaws.com",
)


@dataclass(frozen=True)
class BlacklistVerdict:
    list_host: str
    lookup_host: str
    kind: ResultType
    is_listed: bool
    status: ListingStatus
    details: Optional[str] = None


def reverse_ip(ip: str) -> str:
    return ".".join(reversed(ip.split(".")))


def normalize_domain(domain: str) -> str:
    domain = domain.strip().rstrip(".").lower()
    if domain.startswith("www."):
        domain = domain[4:]
    return domain


def interpret_answer(provider: BlacklistProvider, addresses: List[str]) -> tuple:
    """Map an A-record answer to ``(status, details)``.

    127.0.0.1 (and Spamhaus' 127.255.255.x) means the query was refused or
    rate limited. Only other 127/8 codes are listings; an answer outside
    127/8 is a wildcard leak in the provider's zone and is not a listing.
    """
    parsed = []
    for address in addresses:
        try:
            parsed.append(ipaddress.ip_address(address))
        except ValueError:
            continue

    if any(str(addr) == REFUSED_CODE for addr in parsed):
        return ListingStatus.UNKNOWN, "Query refused or rate limited (127.0.0.1)"
    if provider.is_spamhaus and any(addr in SPAMHAUS_ERROR_RANGE for addr in parsed):
        return ListingStatus.UNKNOWN, "Spamhaus refused the query (public resolver or rate limit)"

    codes = [str(addr) for addr in parsed if addr.version == 4 and addr in LISTING_RANGE]
    if codes:
        return ListingStatus.FAIL, ", ".join(codes)
    return ListingStatus.PASS, None


# --- Severity rules ---

@dataclass(frozen=True)
class ListingContext:
    provider: BlacklistProvider
    mail_host: str

    @property
    def shared_provider(self) -> bool:
        host = self.mail_host.lower()
        return any(host == p or host.endswith("." + p) for p in SHARED_MAIL_PROVIDERS)


@dataclass(frozen=True)
class SeverityRule:
    name: str
    applies: Callable[[ListingContext], bool]
    status: TestStatus
    severity: Severity
    info: str
    reason: str
    recommendation: str
    result: str


SEVERITY_RULES = [
    SeverityRule(
        name="shared-provider",
        applies=lambda ctx: (
            ctx.provider.kind == ResultType.IP and ctx.shared_provider and not ctx.provider.high_trust
        ),
        status=TestStatus.WARNING,
        severity=Severity.LOW,
        info="Shared provider IP",
        reason="This IP belongs to a shared email provider (e.g., Google, Microsoft). Reputation is managed by the provider, not the domain owner.",
        recommendation="No action required unless sending mail from your own server.",
        result="Shared IP Warning",
    ),
    SeverityRule(
        name="low-impact-list",
        applies=lambda ctx: ctx.provider.low_impact,
        status=TestStatus.WARNING,
        severity=Severity.LOW,
        info="Low-impact blacklist",
        reason="This blacklist is low-reputation and often flags shared provider IPs.",
        recommendation="Monitor only. No action required unless listed on major blacklists.",
        result="Low-impact",
    ),
]


def classify_listing(provider: BlacklistProvider, mail_host: str) -> Optional[SeverityRule]:
    """First matching downgrade rule for a listing, or None for a full Error."""
    ctx = ListingContext(provider=provider, mail_host=mail_host)
    for rule in SEVERITY_RULES:
        if rule.applies(ctx):
            return rule
    return None


class BlacklistChecker:
    def __init__(
        self,
        resolver: CachingResolver,
        verdict_cache: SingleFlightCache,
        ip_lists: Optional[List[BlacklistProvider]] = None,
        domain_lists: Optional[List[BlacklistProvider]] = None,
        jitter_max: float = 0.15,
    ):
        self.resolver = resolver
        self.verdict_cache = verdict_cache
        self.ip_lists = IP_BLACKLISTS if ip_lists is None else ip_lists
        self.domain_lists = DOMAIN_BLACKLISTS if domain_lists is None else domain_lists
        self.jitter_max = jitter_max

    async def check_ip(self, ip: str) -> List[BlacklistVerdict]:
        reversed_ip = reverse_ip(ip)
        return list(await asyncio.gather(*[
            self._check(f"{reversed_ip}.{provider.zone}", provider) for provider in self.ip_lists
        ]))

    async def check_domain(self, domain: str) -> List[BlacklistVerdict]:
        name = normalize_domain(domain)
        return list(await asyncio.gather(*[
            self._check(f"{name}.{provider.zone}", provider) for provider in self.domain_lists
        ]))

    async def _check(self, lookup_host: str, provider: BlacklistProvider) -> BlacklistVerdict:
        key = f"{lookup_host}:{provider.zone}"
        return await self.verdict_cache.get_or_compute(key, lambda: self._query(lookup_host, provider))

    async def _query(self, lookup_host: str, provider: BlacklistProvider) -> BlacklistVerdict:
        if self.jitter_max > 0:
            await asyncio.sleep(random.uniform(0, self.jitter_max))

        try:
            addresses = await self.resolver.resolve_a(lookup_host)
        except DnsError as e:
            if e.kind == DnsErrorKind.NOT_FOUND:
                status, details = ListingStatus.PASS, None
            elif e.kind == DnsErrorKind.TIMEOUT:
                status, details = ListingStatus.TIMEOUT, "Lookup timed out"
            else:
                status, details = ListingStatus.UNKNOWN, f"Lookup failed ({e.kind.value})"
        else:
            status, details = interpret_answer(provider, addresses)

        if status in (ListingStatus.TIMEOUT, ListingStatus.UNKNOWN):
            logger.info("Inconclusive blacklist lookup", lookup=lookup_host, list=provider.zone, status=status.value)
        return BlacklistVerdict(
            list_host=provider.zone,
            lookup_host=lookup_host,
            kind=provider.kind,
            is_listed=status == ListingStatus.FAIL,
            status=status,
            details=details,
        )

    def provider_for(self, zone: str) -> BlacklistProvider:
        for provider in self.ip_lists + self.domain_lists:
            if provider.zone == zone:
                return provider
        raise KeyError(zone)

    async def run_blacklist_tests(self, domain: str, mx_hosts: List[str]) -> List[TestResult]:
        """Blacklist category: primary MX IP against IP lists, apex against domain lists."""
        if not mx_hosts:
            return [TestResult(
                name="Blacklist Check",
                status=TestStatus.WARNING,
                info="No MX Records to check",
                reason="We cannot check blacklists without an MX record.",
                recommendation="Fix your MX records first.",
                host=domain,
            )]

        primary_mx = mx_hosts[0]
        try:
            ips = await self.resolver.resolve_a(primary_mx)
        except DnsError as e:
            if not e.is_not_found:
                return [TestResult(
                    name="MX IP Resolution",
                    status=TestStatus.WARNING,
                    info="DNS Error",
                    reason=f"DNS lookup for MX host {primary_mx} failed ({e.kind.value}); blacklists were not checked.",
                    recommendation="Check your DNS configuration or try again.",
                    host=primary_mx,
                )]
            ips = []
        if not ips:
            return [TestResult(
                name="MX IP Resolution",
                status=TestStatus.ERROR,
                info="Could not resolve MX IP",
                reason=f"DNS lookup for MX host {primary_mx} failed.",
                recommendation="Check if your MX host exists.",
                host=primary_mx,
            )]

        ip = ips[0]
        ip_verdicts, domain_verdicts = await asyncio.gather(self.check_ip(ip), self.check_domain(domain))

        tests = [TestResult(
            name="Checked IP",
            status=TestStatus.PASS,
            info=ip,
            reason="This is the primary MX IP address used for the blacklist analysis.",
            recommendation="Ensure this is your primary sending IP.",
            host=ip,
            result=f"Analysis performed on {ip}",
            type=ResultType.IP,
        )]
        for verdict in ip_verdicts:
            tests.append(self._verdict_to_test(verdict, subject=ip, mail_host=primary_mx))
        for verdict in domain_verdicts:
            tests.append(self._verdict_to_test(verdict, subject=normalize_domain(domain), mail_host=primary_mx))
        return tests

    def _verdict_to_test(self, verdict: BlacklistVerdict, subject: str, mail_host: str) -> TestResult:
        label = "IP" if verdict.kind == ResultType.IP else "Domain"
        common = dict(name=verdict.list_host, host=verdict.list_host, type=verdict.kind)

        if verdict.status == ListingStatus.PASS:
            return TestResult(
                status=TestStatus.PASS,
                info="Clean",
                reason=f"{label} {subject} is not listed on {verdict.list_host}.",
                recommendation="No action needed.",
                result="Clean",
                **common,
            )
        if verdict.status == ListingStatus.TIMEOUT:
            return TestResult(
                status=TestStatus.WARNING,
                info="Timeout",
                reason=f"{verdict.list_host} did not answer in time; listing status is unknown.",
                recommendation="Re-run the check later.",
                result="Timeout",
                severity=Severity.MEDIUM,
                **common,
            )
        if verdict.status == ListingStatus.UNKNOWN:
            return TestResult(
                status=TestStatus.WARNING,
                info="Unknown",
                reason=f"{verdict.list_host} could not be queried: {verdict.details}.",
                recommendation="Re-run the check later or query the provider directly.",
                result="Inconclusive",
                severity=Severity.MEDIUM,
                **common,
            )

        rule = classify_listing(self.provider_for(verdict.list_host), mail_host)
        if rule is not None:
            return TestResult(
                status=rule.status,
                info=rule.info,
                reason=rule.reason,
                recommendation=rule.recommendation,
                result=rule.result,
                severity=rule.severity,
                **common,
            )
        return TestResult(
            status=TestStatus.ERROR,
            info="Listed",
            reason=f"{label} {subject} is listed on {verdict.list_host} (return code {verdict.details}).",
            recommendation="Request delisting from this provider.",
            result="Listed",
            severity=Severity.HIGH,
            **common,
        )
