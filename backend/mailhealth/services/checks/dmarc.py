"""DMARC Evaluator - policy grading and external report authorization."""
import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

from mailhealth.schemas.report import TestResult, TestStatus
from mailhealth.services.dns.resolver import CachingResolver, DnsError, join_txt

logger = structlog.get_logger()

POLICY_STRENGTH = {"none": 0, "quarantine": 1, "reject": 2}
MAX_REPORT_URIS = 3


@dataclass
class DmarcEvaluation:
    tests: List[TestResult] = field(default_factory=list)
    raw_record: Optional[str] = None
    policy: Optional[str] = None


def is_dmarc_record(txt: str) -> bool:
    return txt.strip().lower().replace(" ", "").startswith("v=dmarc1")


def parse_tags(record: str) -> Dict[str, str]:
    """``v=DMARC1; p=reject; rua=mailto:a@b`` -> ``{"v": "DMARC1", "p": "reject", ...}``"""
    tags = {}
    for part in record.split(";"):
        key, sep, value = part.partition("=")
        key = key.strip().lower()
        if sep and key and value.strip():
            tags[key] = value.strip()
    return tags


def same_organization(domain: str, other: str) -> bool:
    domain, other = domain.lower().rstrip("."), other.lower().rstrip(".")
    return domain == other or domain.endswith("." + other) or other.endswith("." + domain)


def report_addresses(value: str) -> List[str]:
    return [uri.strip() for uri in value.split(",") if uri.strip()]


class DmarcEvaluator:
    def __init__(self, resolver: CachingResolver, txt_retries: int = 1):
        self.resolver = resolver
        self.txt_retries = txt_retries

    async def evaluate(self, domain: str) -> DmarcEvaluation:
        evaluation = DmarcEvaluation()
        tests = evaluation.tests
        dmarc_host = f"_dmarc.{domain}"

        try:
            txt_records = await self.resolver.resolve_txt_with_retry(dmarc_host, retries=self.txt_retries)
        except DnsError as e:
            logger.warning("DMARC TXT lookup failed", domain=domain, kind=e.kind.value)
            tests.append(TestResult(
                name="DMARC Record Found",
                status=TestStatus.WARNING,
                info="DNS Error",
                reason=f"DNS lookup for {dmarc_host} failed ({e.kind.value}); the record may exist but could not be read.",
                recommendation="Check your DNS configuration or nameservers, then re-run the check.",
                host=domain,
                result="DMARC DNS Lookup Failed",
            ))
            return evaluation

        records = [txt for txt in join_txt(txt_records) if is_dmarc_record(txt)]
        if not records:
            tests.append(TestResult(
                name="DMARC Record Found",
                status=TestStatus.ERROR,
                info="Missing",
                reason=f"No DMARC record found at {dmarc_host}",
                recommendation="Create a DMARC record to protect your domain.",
                host=domain,
                result="DMARC Record Missing",
            ))
            return evaluation

        raw = records[0]
        evaluation.raw_record = raw
        tests.append(TestResult(
            name="DMARC Record Found",
            status=TestStatus.PASS,
            info="Present",
            reason="DMARC record published at _dmarc subdomain.",
            recommendation="No action needed.",
        ))
        if len(records) > 1:
            tests.append(TestResult(
                name="DMARC Multiple Records",
                status=TestStatus.ERROR,
                info=f"{len(records)} records",
                reason="Multiple DMARC records cause receivers to ignore DMARC entirely (RFC 7489 6.6.3).",
                recommendation="Delete all but one DMARC record.",
                host=domain,
                result="DMARC Multiple Records",
            ))

        tags = parse_tags(raw)
        policy = tags.get("p", "").lower()
        evaluation.policy = policy or None

        tests.append(self._grade_policy(domain, policy))
        tests.append(self._grade_subdomain_policy(tags, policy))
        pct_test, pct = self._grade_percentage(tags)
        tests.append(pct_test)
        tests.extend(await self._check_reports(domain, tags))
        tests.extend(self._grade_alignment(tags))
        tests.append(self._bimi_readiness(domain, policy, pct))
        return evaluation

    def _grade_policy(self, domain: str, policy: str) -> TestResult:
        if policy == "reject":
            return TestResult(
                name="DMARC Policy", status=TestStatus.PASS, info="Reject (Secure)",
                reason="Strict enforcement policy enabled.", recommendation="No action needed.",
            )
        if policy == "quarantine":
            return TestResult(
                name="DMARC Policy", status=TestStatus.PASS, info="Quarantine",
                reason="Suspicious emails are sent to spam.",
                recommendation="Consider moving to reject for full protection.",
            )
        if policy == "none":
            return TestResult(
                name="DMARC Policy", status=TestStatus.ERROR, info="None",
                reason='Policy is set to "none", which offers no protection.',
                recommendation="Change to quarantine or reject when ready.",
                host=domain, result="DMARC Quarantine/Reject Policy Not Enabled",
            )
        if not policy:
            return TestResult(
                name="DMARC Policy", status=TestStatus.ERROR, info="Missing p= tag",
                reason="Policy tag is mandatory.",
                recommendation="Add p=reject, p=quarantine, or p=none.",
                host=domain, result="DMARC Policy Missing",
            )
        return TestResult(
            name="DMARC Policy", status=TestStatus.ERROR, info=f"Invalid ({policy})",
            reason=f'"{policy}" is not a valid DMARC policy; receivers treat the record as invalid.',
            recommendation="Use p=reject, p=quarantine, or p=none.",
            host=domain, result="DMARC Policy Invalid",
        )

    def _grade_subdomain_policy(self, tags: Dict[str, str], policy: str) -> TestResult:
        sub_policy = tags.get("sp", "").lower()
        if not sub_policy:
            return TestResult(
                name="DMARC Subdomain Policy", status=TestStatus.PASS, info="Inherited",
                reason="Subdomains inherit the main policy.", recommendation="No action needed.",
            )
        if sub_policy not in POLICY_STRENGTH:
            return TestResult(
                name="DMARC Subdomain Policy", status=TestStatus.WARNING, info=f"Invalid ({sub_policy})",
                reason="The sp= value is not a recognized policy.",
                recommendation="Use sp=reject, sp=quarantine, or remove the tag.",
            )
        if POLICY_STRENGTH[sub_policy] < POLICY_STRENGTH.get(policy, 0):
            return TestResult(
                name="DMARC Subdomain Policy", status=TestStatus.WARNING, info=f"Weaker (sp={sub_policy})",
                reason="Subdomains are less protected than the root domain and can be spoofed.",
                recommendation=f"Remove sp={sub_policy} or raise it to match p={policy}.",
            )
        return TestResult(
            name="DMARC Subdomain Policy", status=TestStatus.PASS, info=sub_policy,
            reason="Subdomain policy explicitly defined.", recommendation="No action needed.",
        )

    def _grade_percentage(self, tags: Dict[str, str]):
        if "pct" not in tags:
            return TestResult(
                name="DMARC Percentage", status=TestStatus.PASS, info="100% (Default)",
                reason="Defaults to 100% if missing.", recommendation="No action needed.",
            ), 100
        try:
            pct = int(tags["pct"])
        except ValueError:
            return TestResult(
                name="DMARC Percentage", status=TestStatus.WARNING, info=f"Invalid ({tags['pct']})",
                reason="pct must be an integer between 0 and 100.",
                recommendation="Set pct=100 or remove the tag.",
            ), 0
        if pct >= 100:
            return TestResult(
                name="DMARC Percentage", status=TestStatus.PASS, info="100%",
                reason="Policy applies to all emails.", recommendation="No action needed.",
            ), pct
        return TestResult(
            name="DMARC Percentage", status=TestStatus.WARNING, info=f"{pct}%",
            reason="Policy only applies to a random subset of emails.",
            recommendation="Set pct=100 for full consistency.",
        ), pct

    async def _check_reports(self, domain: str, tags: Dict[str, str]) -> List[TestResult]:
        tests = []
        if "rua" not in tags:
            tests.append(TestResult(
                name="DMARC RUA Reports", status=TestStatus.WARNING, info="Missing",
                reason="No visibility into who is sending email as you.",
                recommendation="Add rua=mailto:dmarc@yourdomain.",
            ))
        else:
            tests.append(TestResult(
                name="DMARC RUA Reports", status=TestStatus.PASS, info="Enabled",
                reason="Aggregate reports configured.", recommendation="No action needed.",
            ))
            uris = report_addresses(tags["rua"])[:MAX_REPORT_URIS]
            checked = await asyncio.gather(*[self._check_external_authorization(domain, uri) for uri in uris])
            tests.extend(test for test in checked if test is not None)

        if "ruf" in tags:
            tests.append(TestResult(
                name="DMARC RUF Reports", status=TestStatus.PASS, info="Enabled",
                reason="Forensic reports configured (not supported by all providers).",
                recommendation="No action needed.",
            ))
        else:
            tests.append(TestResult(
                name="DMARC RUF Reports", status=TestStatus.PASS, info="Not Enabled",
                reason="Forensic reports are optional and often noisy.", recommendation="No action needed.",
            ))
        return tests

    async def _check_external_authorization(self, domain: str, uri: str) -> Optional[TestResult]:
        if not uri.lower().startswith("mailto:"):
            return TestResult(
                name="DMARC Report URI", status=TestStatus.WARNING, info=uri,
                reason="Report destinations must be mailto: URIs.",
                recommendation="Prefix the report address with mailto:.",
            )
        address = uri[len("mailto:"):].split("!", 1)[0]
        if "@" not in address:
            return TestResult(
                name="DMARC Report URI", status=TestStatus.WARNING, info=uri,
                reason="Report address is not a valid email address.",
                recommendation="Use rua=mailto:user@example.com.",
            )
        target = address.rsplit("@", 1)[1].lower()
        if same_organization(domain, target):
            return None

        verify_host = f"{domain}._report._dmarc.{target}"
        try:
            records = join_txt(await self.resolver.resolve_txt(verify_host))
        except DnsError as e:
            if not e.is_not_found:
                logger.info("DMARC report authorization lookup failed", host=verify_host, kind=e.kind.value)
            records = []

        if any(is_dmarc_record(txt) for txt in records):
            return TestResult(
                name="DMARC External Auth", status=TestStatus.PASS, info=f"Authorized ({target})",
                reason=f"Target domain {target} has authorized reports from {domain}.",
                recommendation="No action needed.", host=verify_host,
            )
        return TestResult(
            name="DMARC External Auth", status=TestStatus.WARNING, info=f"Missing Auth ({target})",
            reason=f"Target domain {target} has NOT authorized reports from {domain}. Reports will likely be dropped.",
            recommendation=f'Add a TXT record at {verify_host} with value "v=DMARC1".',
            host=verify_host,
        )

    def _grade_alignment(self, tags: Dict[str, str]) -> List[TestResult]:
        tests = []
        for tag, label in (("aspf", "SPF Alignment Mode"), ("adkim", "DKIM Alignment Mode")):
            if tags.get(tag, "").lower() == "s":
                tests.append(TestResult(
                    name=label, status=TestStatus.PASS, info="Strict",
                    reason="Strict alignment requires exact domain match.", recommendation="No action needed.",
                ))
            else:
                tests.append(TestResult(
                    name=label, status=TestStatus.PASS, info="Relaxed (Default)",
                    reason="Relaxed alignment allows subdomains.", recommendation="No action needed.",
                ))
        return tests

    def _bimi_readiness(self, domain: str, policy: str, pct: int) -> TestResult:
        if policy in ("quarantine", "reject") and pct >= 100:
            return TestResult(
                name="BIMI Readiness", status=TestStatus.PASS, info="Ready",
                reason="DMARC policy supports BIMI implementation.",
                recommendation="You can now set up a BIMI record.",
                host=domain, result="BIMI Ready",
            )
        return TestResult(
            name="BIMI Readiness", status=TestStatus.ERROR, info="Not Ready",
            reason="BIMI requires p=quarantine/reject and pct=100.",
            recommendation="Strengthen DMARC policy to enable BIMI.",
            host=domain, result="BIMI Not Ready",
        )
