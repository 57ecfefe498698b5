"""DNS Hygiene Evaluator - apex CNAME, A, MX, NS, SOA and CAA checks."""
import asyncio
import ipaddress
import re
from typing import List, Optional

from mailhealth.schemas.report import TestResult, TestStatus
from mailhealth.services.dns.resolver import CachingResolver, DnsError, sort_mx

PRIVATE_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
]

SOA_SERIAL_RE = re.compile(r"^20[2-9]\d(0[1-9]|1[0-2])(0[1-9]|[12]\d|3[01])\d{2}$")
SOA_REFRESH_RANGE = (1200, 43200)
SOA_RETRY_RANGE = (180, 2419200)
SOA_EXPIRE_RANGE = (604800, 1209600)

NO_ACTION = "No action needed."


def is_private_ip(ip: str) -> bool:
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(address in network for network in PRIVATE_NETWORKS if network.version == address.version)


def lookup_warning(name: str, error: DnsError) -> TestResult:
    """A lookup that failed for a reason other than absence is inconclusive."""
    return TestResult(
        name=name, status=TestStatus.WARNING, info="DNS Error",
        reason=f"{error.record_type} lookup for {error.hostname} failed ({error.kind.value}).",
        recommendation="Check your DNS configuration or try again.",
    )


class DnsHygieneEvaluator:
    def __init__(self, resolver: CachingResolver):
        self.resolver = resolver

    async def evaluate(self, domain: str) -> List[TestResult]:
        sections = await asyncio.gather(
            self._check_apex_cname(domain),
            self._check_a_records(domain),
            self._check_mx(domain),
            self._check_ns(domain),
            self._check_soa(domain),
            self._check_caa(domain),
        )
        tests = [self._resolver_identity()]
        for section in sections:
            tests.extend(section)
        return tests

    def _resolver_identity(self) -> TestResult:
        nameservers = self.resolver.nameservers
        return TestResult(
            name="Local DNS Resolver",
            status=TestStatus.PASS,
            info=", ".join(nameservers) if nameservers else "System default",
            reason="Lookups are answered by the resolver configured for this service.",
            recommendation=NO_ACTION,
        )

    async def _check_apex_cname(self, domain: str) -> List[TestResult]:
        try:
            cnames = await self.resolver.resolve_cname(domain)
        except DnsError as e:
            if not e.is_not_found:
                return [lookup_warning("Apex CNAME", e)]
            cnames = []
        if cnames:
            return [TestResult(
                name="Apex CNAME", status=TestStatus.ERROR, info="Present",
                reason=f"A CNAME record ({cnames[0]}) exists at the root domain, which violates RFC 1034 and breaks MX records.",
                recommendation="Remove the CNAME and use an A record (or ALIAS/ANAME if supported by your provider).",
                host=domain, result="Apex CNAME Present",
            )]
        return [TestResult(
            name="Apex CNAME", status=TestStatus.PASS, info="Not Found",
            reason="No CNAME record found at root domain (RFC Compliant).", recommendation=NO_ACTION,
        )]

    async def _check_a_records(self, domain: str) -> List[TestResult]:
        try:
            addresses = await self.resolver.resolve_a(domain)
        except DnsError as e:
            if e.is_not_found:
                return [TestResult(
                    name="DNS Record Published", status=TestStatus.ERROR, info="No A Records",
                    reason="The domain does not resolve to an IPv4 address.",
                    recommendation="Add an A record pointing to your web server.",
                )]
            return [TestResult(
                name="DNS Record Published", status=TestStatus.ERROR, info="Failed",
                reason=f"DNS lookup failed ({e.kind.value}).",
                recommendation="Check your domain registrar settings.",
            )]

        tests = [
            TestResult(
                name="DNS Record Published", status=TestStatus.PASS, info="Primary IP Found",
                reason="A DNS record exists for this domain.", recommendation=NO_ACTION,
            ),
            TestResult(
                name="A Record Count", status=TestStatus.PASS, info=f"{len(addresses)} IP(s)",
                reason=f"Found {len(addresses)} IPv4 addresses.", recommendation="Ensure these IPs are correct.",
            ),
        ]
        private = [ip for ip in addresses if is_private_ip(ip)]
        if private:
            tests.append(TestResult(
                name="Public IP Check", status=TestStatus.ERROR, info="Private IP Found",
                reason=f"The IP {private[0]} is a private local network address (RFC 1918). It is not reachable from the internet.",
                recommendation="Change your A record to a public static IP.",
                host=domain, result="Private IP in A Record",
            ))
        else:
            tests.append(TestResult(
                name="Public IP Check", status=TestStatus.PASS, info="Valid Public IP",
                reason="All IPs appear to be valid public addresses.", recommendation=NO_ACTION,
            ))
        return tests

    async def _check_mx(self, domain: str) -> List[TestResult]:
        try:
            mx_records = await self.resolver.resolve_mx(domain)
        except DnsError as e:
            if e.is_not_found:
                return [TestResult(
                    name="MX Record Published", status=TestStatus.ERROR, info="Missing",
                    reason="No MX records found.", recommendation="You cannot receive email without MX records.",
                    host=domain, result="MX Record Missing",
                )]
            return [TestResult(
                name="MX Record Published", status=TestStatus.ERROR, info="DNS Error",
                reason=f"DNS lookup failed ({e.kind.value}).",
                recommendation="Check your DNS configuration or try again.",
            )]

        hosts = sort_mx(mx_records)
        if not hosts:
            return [TestResult(
                name="MX Record Published", status=TestStatus.ERROR, info="Missing",
                reason="No MX records found.", recommendation="You cannot receive email without MX records.",
                host=domain, result="MX Record Missing",
            )]

        tests = [TestResult(
            name="MX Record Published", status=TestStatus.PASS, info=f"{len(hosts)} Records",
            reason="Mail Exchange records found.", recommendation=NO_ACTION,
        )]
        primary = hosts[0]
        canonical, resolution = await asyncio.gather(
            self._check_mx_canonical(primary), self._check_mx_resolution(primary)
        )
        tests.append(canonical)
        tests.append(resolution)
        return tests

    async def _check_mx_canonical(self, primary: str) -> TestResult:
        try:
            cnames = await self.resolver.resolve_cname(primary)
        except DnsError as e:
            if not e.is_not_found:
                return lookup_warning("MX Canonical Check", e)
            cnames = []
        if cnames:
            return TestResult(
                name="MX Canonical Check", status=TestStatus.WARNING, info="MX points to CNAME",
                reason=f"The MX record {primary} points to a CNAME, which violates RFC 2181.",
                recommendation="Point your MX record directly to an A record host.",
                host=primary,
            )
        return TestResult(
            name="MX Canonical Check", status=TestStatus.PASS, info="Standard Host",
            reason="MX record points to a canonical host (not a CNAME).", recommendation=NO_ACTION,
        )

    async def _check_mx_resolution(self, primary: str) -> TestResult:
        try:
            ips = await self.resolver.resolve_a(primary)
            return TestResult(
                name="Primary MX Resolution", status=TestStatus.PASS, info=f"{primary} -> {ips[0]}",
                reason="Primary MX host resolves to an IP.", recommendation=NO_ACTION,
            )
        except DnsError as e:
            a_error = e
        try:
            await self.resolver.resolve_aaaa(primary)
            return TestResult(
                name="Primary MX Resolution", status=TestStatus.PASS, info=f"{primary} -> IPv6",
                reason="Primary MX host resolves to an IPv6 address.",
                recommendation="Ensure IPv4 is also supported for maximum compatibility.",
            )
        except DnsError as e:
            inconclusive = next((err for err in (a_error, e) if not err.is_not_found), None)
            if inconclusive is not None:
                return lookup_warning("Primary MX Resolution", inconclusive)
            return TestResult(
                name="Primary MX Resolution", status=TestStatus.ERROR, info=f"Could not resolve {primary}",
                reason="The mail server hostname does not resolve.",
                recommendation="Fix the MX record or create the missing A record for the mail server.",
                host=primary, result="MX Host Unresolvable",
            )

    async def _check_ns(self, domain: str) -> List[TestResult]:
        try:
            nameservers = await self.resolver.resolve_ns(domain)
        except DnsError as e:
            if not e.is_not_found:
                return [lookup_warning("NS Record Published", e)]
            nameservers = []
        if not nameservers:
            return [TestResult(
                name="NS Record Published", status=TestStatus.ERROR, info="Missing",
                reason="No Nameservers found.", recommendation="Configure nameservers at your registrar.",
                host=domain, result="NS Record Missing",
            )]

        tests = [TestResult(
            name="NS Record Published", status=TestStatus.PASS, info=f"{len(nameservers)} Nameservers",
            reason="Nameservers are configured.", recommendation=NO_ACTION,
        )]
        if len(nameservers) >= 2:
            tests.append(TestResult(
                name="NS Redundancy", status=TestStatus.PASS, info="Sufficient (2+)",
                reason="Multiple nameservers provide redundancy.", recommendation=NO_ACTION,
            ))
        else:
            tests.append(TestResult(
                name="NS Redundancy", status=TestStatus.WARNING, info="Single Point of Failure (1 NS)",
                reason="Only one nameserver is listed (RFC 2182 recommends at least two).",
                recommendation="Add at least one backup nameserver.",
            ))

        resolvable = await asyncio.gather(*[self._resolves(ns) for ns in nameservers])
        failed = [ns for ns, ok in zip(nameservers, resolvable) if ok is False]
        unchecked = [ns for ns, ok in zip(nameservers, resolvable) if ok is None]
        if failed:
            tests.append(TestResult(
                name="NS Glue Validity", status=TestStatus.WARNING, info="Unresolvable NS",
                reason=f"These nameservers could not be resolved: {', '.join(failed)}.",
                recommendation="Check your nameserver hostnames and glue records.",
            ))
        elif unchecked:
            tests.append(TestResult(
                name="NS Glue Validity", status=TestStatus.WARNING, info="DNS Error",
                reason=f"Lookups for these nameservers failed: {', '.join(unchecked)}.",
                recommendation="Check your DNS configuration or try again.",
            ))
        else:
            tests.append(TestResult(
                name="NS Glue Validity", status=TestStatus.PASS, info="Resolvable",
                reason="All nameserver hostnames resolve to IPs.", recommendation=NO_ACTION,
            ))
        return tests

    async def _resolves(self, hostname: str) -> Optional[bool]:
        """True or False for a definite answer, None when the lookup itself failed."""
        try:
            return bool(await self.resolver.resolve_a(hostname))
        except DnsError as e:
            return False if e.is_not_found else None

    async def _check_soa(self, domain: str) -> List[TestResult]:
        try:
            soa = await self.resolver.resolve_soa(domain)
        except DnsError as e:
            if not e.is_not_found:
                return [lookup_warning("SOA Record Published", e)]
            return [TestResult(
                name="SOA Record Published", status=TestStatus.WARNING, info="Missing",
                reason="SOA record not found.", recommendation="Ensure your zone file is valid.",
            )]

        tests = [
            TestResult(
                name="SOA Record Published", status=TestStatus.PASS, info="Present",
                reason="Start of Authority record found.", recommendation=NO_ACTION,
            ),
            TestResult(
                name="SOA Primary NS", status=TestStatus.PASS, info=soa.nsname,
                reason="Primary nameserver defined in SOA.", recommendation=NO_ACTION,
            ),
            TestResult(
                name="SOA RNAME", status=TestStatus.PASS, info=soa.hostmaster,
                reason="Responsible person email defined.", recommendation=NO_ACTION,
            ),
        ]

        if SOA_SERIAL_RE.match(str(soa.serial)):
            tests.append(TestResult(
                name="SOA Serial Number", status=TestStatus.PASS, info=f"{soa.serial} (Format OK)",
                reason="Serial number follows standard YYYYMMDDnn format.", recommendation=NO_ACTION,
                host=domain, result="SOA Serial Format Valid",
            ))
        else:
            tests.append(TestResult(
                name="SOA Serial Number", status=TestStatus.WARNING, info=f"{soa.serial} (Format Weak)",
                reason="Serial does not match recommended YYYYMMDDnn format (e.g., 2024010101).",
                recommendation="Update serial to YYYYMMDDnn standard.",
                host=domain, result="SOA Serial Format Weak",
            ))

        tests.append(self._timer("SOA Refresh Value", soa.refresh, SOA_REFRESH_RANGE))
        tests.append(self._timer("SOA Retry Value", soa.retry, SOA_RETRY_RANGE))
        tests.append(self._timer("SOA Expire Value", soa.expire, SOA_EXPIRE_RANGE))
        tests.append(TestResult(
            name="SOA Minimum TTL", status=TestStatus.PASS, info=str(soa.minttl),
            reason="Minimum TTL is defined.", recommendation=NO_ACTION,
        ))
        return tests

    @staticmethod
    def _timer(name: str, value: int, bounds) -> TestResult:
        low, high = bounds
        if low <= value <= high:
            return TestResult(
                name=name, status=TestStatus.PASS, info=f"{value} (RFC OK)",
                reason=f"Value is within the recommended range ({low}-{high}).", recommendation=NO_ACTION,
            )
        return TestResult(
            name=name, status=TestStatus.WARNING, info=f"{value} (Non-Standard)",
            reason=f"Value is outside the recommended range ({low}-{high}).",
            recommendation=f"Set the value between {low} and {high}.",
        )

    async def _check_caa(self, domain: str) -> List[TestResult]:
        try:
            records = await self.resolver.resolve_caa(domain)
        except DnsError as e:
            if not e.is_not_found:
                return [lookup_warning("CAA Record", e)]
            records = []
        if records:
            issuers = sorted({record.value for record in records if record.tag in ("issue", "issuewild")})
            return [TestResult(
                name="CAA Record", status=TestStatus.PASS, info=f"{len(records)} record(s)",
                reason=f"CAA records restrict certificate issuance{' to ' + ', '.join(issuers) if issuers else ''}.",
                recommendation=NO_ACTION,
            )]
        return [TestResult(
            name="CAA Record", status=TestStatus.PASS, info="Not published (Optional)",
            reason="No CAA records found.",
            recommendation="Consider adding CAA records to restrict which CAs may issue certificates.",
        )]
