"""SPF Evaluator - record selection, syntax checks and RFC 7208 lookup budget."""
import asyncio
import ipaddress
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Set

import structlog

from mailhealth.schemas.report import TestResult, TestStatus
from mailhealth.services.dns.resolver import CachingResolver, DnsError, join_txt

logger = structlog.get_logger()

QUALIFIERS = "+-~?"
# Mechanisms that cost one DNS lookup without recursing (RFC 7208 4.6.4).
LOOKUP_MECHANISMS = ("a", "mx", "ptr", "exists")
RECURSIVE_TERMS = ("include", "redirect")
MODIFIERS = ("redirect", "exp")


class SpfTerm(NamedTuple):
    raw: str
    qualifier: str
    name: str
    value: str

    @property
    def is_modifier(self) -> bool:
        return self.name in MODIFIERS or ("=" in self.raw and ":" not in self.raw.split("=", 1)[0])


@dataclass
class SpfEvaluation:
    tests: List[TestResult] = field(default_factory=list)
    raw_record: Optional[str] = None


def parse_term(term: str) -> SpfTerm:
    """Split ``~include:_spf.example.com`` into qualifier, name and value."""
    qualifier = "+"
    body = term
    if body and body[0] in QUALIFIERS:
        qualifier, body = body[0], body[1:]

    cut = len(body)
    for delimiter in (":", "=", "/"):
        index = body.find(delimiter)
        if index != -1 and index < cut:
            cut = index
    name = body[:cut].lower()
    value = body[cut + 1:] if cut < len(body) and body[cut] in ":=" else body[cut:]
    return SpfTerm(raw=term, qualifier=qualifier, name=name, value=value)


def is_spf_record(txt: str) -> bool:
    parts = txt.strip().split(None, 1)
    return bool(parts) and parts[0].lower() == "v=spf1"


def select_spf_records(txt_records: List[List[str]]) -> List[str]:
    return [txt for txt in join_txt(txt_records) if is_spf_record(txt)]


async def count_spf_lookups(resolver: CachingResolver, domain: str, visited: Set[str]) -> int:
    """Count DNS-querying terms reachable from ``domain``'s SPF record.

    ``visited`` is shared by the whole walk of one evaluation; a domain that
    was already expanded contributes nothing, which terminates include loops.
    Unresolvable targets also contribute nothing beyond the include itself.
    """
    domain = domain.strip().rstrip(".").lower()
    if domain in visited:
        return 0
    visited.add(domain)

    try:
        txt_records = await resolver.resolve_txt(domain)
    except DnsError:
        return 0
    records = select_spf_records(txt_records)
    if not records:
        return 0

    count = 0
    for raw in records[0].split()[1:]:
        term = parse_term(raw)
        if term.name in RECURSIVE_TERMS:
            count += 1
            if term.value:
                count += await count_spf_lookups(resolver, term.value, visited)
        elif term.name in LOOKUP_MECHANISMS:
            count += 1
    return count


def _valid_network(value: str, version: int) -> bool:
    try:
        network = ipaddress.ip_network(value, strict=False)
    except ValueError:
        return False
    return network.version == version


class SpfEvaluator:
    def __init__(
        self,
        resolver: CachingResolver,
        max_lookups: int = 10,
        void_check_limit: int = 5,
        txt_retries: int = 1,
    ):
        self.resolver = resolver
        self.max_lookups = max_lookups
        self.void_check_limit = void_check_limit
        self.txt_retries = txt_retries

    async def evaluate(self, domain: str) -> SpfEvaluation:
        evaluation = SpfEvaluation()
        tests = evaluation.tests

        try:
            txt_records = await self.resolver.resolve_txt_with_retry(domain, retries=self.txt_retries)
        except DnsError as e:
            logger.warning("SPF TXT lookup failed", domain=domain, kind=e.kind.value)
            tests.append(TestResult(
                name="SPF Record Found",
                status=TestStatus.WARNING,
                info="DNS Error",
                reason=f"Could not retrieve TXT records ({e.kind.value}). The SPF record may exist but could not be read.",
                recommendation="Check domain existence and DNS servers, then re-run the check.",
                host=domain,
                result="SPF DNS Lookup Failed",
            ))
            return evaluation

        spf_records = select_spf_records(txt_records)
        if not spf_records:
            tests.append(TestResult(
                name="SPF Record Found",
                status=TestStatus.ERROR,
                info="Missing",
                reason="No SPF record found.",
                recommendation="Create a TXT record starting with v=spf1.",
                host=domain,
                result="SPF Record Missing",
            ))
            return evaluation

        raw = spf_records[0]
        evaluation.raw_record = raw
        tests.append(TestResult(
            name="SPF Record Found",
            status=TestStatus.PASS,
            info="Present",
            reason="An SPF TXT record was found in DNS.",
            recommendation="No action needed.",
        ))

        if len(spf_records) > 1:
            tests.append(TestResult(
                name="SPF Multiple Records",
                status=TestStatus.ERROR,
                info=f"{len(spf_records)} records",
                reason="Multiple SPF records strictly invalidate SPF (RFC 7208 permerror).",
                recommendation="Consolidate all SPF records into a single TXT record.",
                host=domain,
                result="SPF Multiple Records",
            ))
        else:
            tests.append(TestResult(
                name="SPF Multiple Records",
                status=TestStatus.PASS,
                info="Valid (1 record)",
                reason="Only one SPF record exists.",
                recommendation="No action needed.",
            ))

        if raw.split()[0] == "v=spf1":
            tests.append(TestResult(
                name="SPF Version", status=TestStatus.PASS, info="v=spf1",
                reason="Correct version tag.", recommendation="No action needed.",
            ))
        else:
            tests.append(TestResult(
                name="SPF Version", status=TestStatus.WARNING, info=raw.split()[0],
                reason="Version tag is not in canonical lower case; some receivers compare it literally.",
                recommendation="Start the record with v=spf1.",
            ))

        terms = [parse_term(t) for t in raw.split()[1:]]
        tests.extend(self._check_structure(terms, raw))
        tests.append(await self._check_lookup_count(domain))
        tests.extend(self._check_terms(terms))
        tests.extend(await self._check_void_includes(terms))
        return evaluation

    def _check_structure(self, terms: List[SpfTerm], raw: str) -> List[TestResult]:
        tests = []
        terminator = None
        after_terminator = False
        for term in terms:
            if terminator is not None and not term.is_modifier:
                after_terminator = True
            if term.name == "all" and terminator is None:
                terminator = term

        if after_terminator:
            tests.append(TestResult(
                name="SPF Mechanisms Ordering",
                status=TestStatus.WARNING,
                info='Content after "all"',
                reason='Mechanisms found after the "all" terminator are never evaluated.',
                recommendation="Move all mechanisms before the ~all/-all tag.",
            ))
        else:
            tests.append(TestResult(
                name="SPF Mechanisms Ordering",
                status=TestStatus.PASS,
                info="Correct",
                reason="Terminator is the last mechanism.",
                recommendation="No action needed.",
            ))

        has_redirect = any(term.name == "redirect" for term in terms)
        if terminator is None and has_redirect:
            tests.append(TestResult(
                name="SPF Policy Strictness", status=TestStatus.PASS, info="Redirect",
                reason="Policy is controlled by a redirect.",
                recommendation="Ensure the target policy is strict.",
            ))
        elif terminator is None:
            tests.append(TestResult(
                name="SPF Policy Strictness", status=TestStatus.WARNING, info="Missing Terminator",
                reason='No "all" mechanism found; unmatched senders get a neutral result.',
                recommendation="Add -all or ~all at the end.",
            ))
        elif terminator.qualifier == "-":
            tests.append(TestResult(
                name="SPF Policy Strictness", status=TestStatus.PASS, info="Hard Fail (-all)",
                reason="Strict policy (Hard Fail).", recommendation="No action needed.",
            ))
        elif terminator.qualifier == "~":
            tests.append(TestResult(
                name="SPF Policy Strictness", status=TestStatus.PASS, info="Soft Fail (~all)",
                reason="Soft fail (Transitionary).", recommendation="Consider moving to -all.",
            ))
        elif terminator.qualifier == "?":
            tests.append(TestResult(
                name="SPF Policy Strictness", status=TestStatus.WARNING, info="Neutral (?all)",
                reason="Neutral policy allows spoofing.", recommendation="Change to ~all or -all.",
            ))
        else:
            tests.append(TestResult(
                name="SPF Policy Strictness", status=TestStatus.ERROR, info=f"Allow All ({terminator.raw})",
                reason="Explicitly allows the entire internet to send email as you.",
                recommendation="Change to -all immediately.",
                result="SPF Allows All Senders",
            ))
        return tests

    async def _check_lookup_count(self, domain: str) -> TestResult:
        lookup_count = await count_spf_lookups(self.resolver, domain, set())
        if lookup_count > self.max_lookups:
            return TestResult(
                name="SPF Lookup Count",
                status=TestStatus.ERROR,
                info=f"{lookup_count} (> {self.max_lookups} Limit)",
                reason=f"Found {lookup_count} DNS lookups (RFC limit: {self.max_lookups}). Nested includes are counted; receivers may return permerror.",
                recommendation="Flatten your SPF record (replace includes with ip4/ip6) or use a flattening service.",
                result=f"{lookup_count} lookups",
            )
        return TestResult(
            name="SPF Lookup Count",
            status=TestStatus.PASS,
            info=f"{lookup_count} (Safe <= {self.max_lookups})",
            reason="Lookup count is within the RFC limit.",
            recommendation="No action needed.",
            result=f"{lookup_count} lookups",
        )

    def _check_terms(self, terms: List[SpfTerm]) -> List[TestResult]:
        tests = []
        if any(term.name == "ptr" for term in terms):
            tests.append(TestResult(
                name="Global PTR Mechanism", status=TestStatus.WARNING, info="Used",
                reason="The ptr mechanism is deprecated (RFC 7208 5.5) and slow.",
                recommendation='Remove "ptr" and list specific IPs.',
            ))
        else:
            tests.append(TestResult(
                name="Global PTR Mechanism", status=TestStatus.PASS, info="Not used",
                reason="No deprecated mechanisms found.", recommendation="No action needed.",
            ))

        lowered = [term.raw.lower() for term in terms]
        if len(set(lowered)) != len(lowered):
            tests.append(TestResult(
                name="SPF Redundancy", status=TestStatus.WARNING, info="Duplicate Items",
                reason="Record contains duplicate mechanisms.", recommendation="Clean up duplicate entries.",
            ))

        bad = [
            term.raw for term in terms
            if (term.name == "ip4" and not _valid_network(term.value, 4))
            or (term.name == "ip6" and not _valid_network(term.value, 6))
        ]
        if bad:
            tests.append(TestResult(
                name="SPF IP Syntax", status=TestStatus.ERROR, info="Invalid Format",
                reason=f"Found malformed IP tags: {', '.join(bad)}",
                recommendation="Fix IP syntax (e.g., ip4:192.0.2.1 or ip4:192.0.2.0/24).",
            ))
        return tests

    async def _check_void_includes(self, terms: List[SpfTerm]) -> List[TestResult]:
        includes = [term.value for term in terms if term.name == "include" and term.value]
        if not includes:
            return []

        checked = includes[:self.void_check_limit]
        outcomes = await asyncio.gather(*[self._has_txt(name) for name in checked])
        void = [name for name, ok in zip(checked, outcomes) if not ok]
        if void:
            return [TestResult(
                name="SPF Void Lookups",
                status=TestStatus.WARNING,
                info=f"{len(void)} Failed",
                reason=f"The following included domains do not exist or have no TXT record: {', '.join(void)}",
                recommendation="Remove dead includes.",
            )]
        return [TestResult(
            name="SPF Void Lookups",
            status=TestStatus.PASS,
            info="Clean",
            reason="All checked includes resolve correctly.",
            recommendation="No action needed.",
        )]

    async def _has_txt(self, name: str) -> bool:
        """False only when the include provably has no TXT record."""
        try:
            records = await self.resolver.resolve_txt(name)
        except DnsError as e:
            if e.is_not_found:
                return False
            logger.info("SPF include lookup failed", host=name, kind=e.kind.value)
            return True
        return bool(records)
