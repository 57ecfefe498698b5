"""Orchestrator - runs every evaluator for a domain and assembles the report."""
import asyncio
import math
from typing import Awaitable, List, Optional, Sequence, Union

import structlog

from mailhealth.schemas.report import (
    CategoryResult,
    FailedResult,
    FullHealthReport,
    PartialResult,
    ReportCategories,
    TestResult,
    TestStatus,
)
from mailhealth.services.checks.blacklist import BlacklistChecker
from mailhealth.services.checks.dkim import DkimProber
from mailhealth.services.checks.dmarc import DmarcEvaluation, DmarcEvaluator
from mailhealth.services.checks.dns_hygiene import DnsHygieneEvaluator
from mailhealth.services.checks.spf import SpfEvaluation, SpfEvaluator
from mailhealth.services.checks.web_server import WebServerChecker
from mailhealth.services.dns.cache import SingleFlightCache
from mailhealth.services.dns.resolver import CachingResolver, DnsError, build_resolver, sort_mx

logger = structlog.get_logger()

# Category labels, in Problems emission order.
DNS = "DNS"
SPF = "SPF"
DMARC = "DMARC"
DKIM = "DKIM"
BLACKLIST = "Blacklist"
WEB_SERVER = "Web Server"
SMTP = "SMTP"
PROBLEMS = "Problems"

SMTP_PLACEHOLDER = [
    TestResult(
        name="SMTP Connect",
        status=TestStatus.PASS,
        info="Skipped (Passive)",
        reason="We do not perform active SMTP probing (sending test packets) to ensure legal safety and avoid blacklisting.",
        recommendation="This is a passive health check tool.",
    ),
    TestResult(
        name="Open Relay",
        status=TestStatus.PASS,
        info="Skipped (Passive)",
        reason="Open relay testing requires active intrusion attempts, which we strictly avoid.",
        recommendation="Use internal tools to verify relay security.",
    ),
]


class DomainCheckError(Exception):
    """No evaluator produced a result for the domain."""

    def __init__(self, domain: str, message: str = ""):
        self.domain = domain
        super().__init__(message or f"Health check failed for {domain}")


def calculate_score(passed: int, total: int, errors: int, error_weight: float = 5.0) -> int:
    """``clamp(0, 100, 100 * passed / total - error_weight * errors)``, rounded half-up."""
    if total <= 0:
        return 0
    raw = passed * 100 / total - errors * error_weight
    return int(math.floor(max(0.0, min(100.0, raw)) + 0.5))


def collect_problems(categories: Sequence[CategoryResult]) -> List[TestResult]:
    return [test for category in categories for test in category.tests if test.status != TestStatus.PASS]


def _failed_branch(category: str, error: BaseException) -> List[TestResult]:
    return [TestResult(
        name=f"{category} Check Failed",
        status=TestStatus.ERROR,
        info="Internal Error",
        reason=f"The {category} checks could not be completed: {error.__class__.__name__}.",
        recommendation="Re-run the check. If the problem persists, report it.",
        category=category,
    )]


class HealthCheckEngine:
    """Holds the process-wide resolver and caches and runs domain checks."""

    def __init__(
        self,
        resolver: CachingResolver,
        blacklist: BlacklistChecker,
        spf: SpfEvaluator,
        dmarc: DmarcEvaluator,
        dkim: DkimProber,
        dns_hygiene: DnsHygieneEvaluator,
        web_server: WebServerChecker,
        score_error_weight: float = 5.0,
    ):
        self.resolver = resolver
        self.blacklist = blacklist
        self.spf = spf
        self.dmarc = dmarc
        self.dkim = dkim
        self.dns_hygiene = dns_hygiene
        self.web_server = web_server
        self.score_error_weight = score_error_weight

    @classmethod
    def from_settings(cls, settings, resolver: Optional[CachingResolver] = None, **overrides) -> "HealthCheckEngine":
        resolver = resolver or build_resolver(settings)
        components = dict(
            blacklist=BlacklistChecker(
                resolver,
                SingleFlightCache(ttl=settings.BLACKLIST_CACHE_TTL_SECONDS),
                jitter_max=settings.BLACKLIST_JITTER_MAX_SECONDS,
            ),
            spf=SpfEvaluator(
                resolver,
                max_lookups=settings.SPF_MAX_LOOKUPS,
                void_check_limit=settings.SPF_VOID_LOOKUP_CHECK_LIMIT,
                txt_retries=settings.DNS_TXT_RETRIES,
            ),
            dmarc=DmarcEvaluator(resolver, txt_retries=settings.DNS_TXT_RETRIES),
            dkim=DkimProber(resolver, selectors=settings.DKIM_SELECTORS),
            dns_hygiene=DnsHygieneEvaluator(resolver),
            web_server=WebServerChecker(
                http_timeout=settings.HTTP_TIMEOUT_SECONDS,
                tls_timeout=settings.TLS_TIMEOUT_SECONDS,
                expiry_warning_days=settings.CERT_EXPIRY_WARNING_DAYS,
                user_agent=settings.HTTP_USER_AGENT,
            ),
        )
        components.update(overrides)
        return cls(resolver=resolver, score_error_weight=settings.SCORE_ERROR_WEIGHT, **components)

    async def _mx_hosts(self, domain: str) -> List[str]:
        try:
            return sort_mx(await self.resolver.resolve_mx(domain))
        except DnsError:
            return []

    async def _blacklist_branch(self, domain: str, mx_task: Awaitable[List[str]]) -> List[TestResult]:
        return await self.blacklist.run_blacklist_tests(domain, await mx_task)

    async def run_full_health_check(self, domain: str) -> FullHealthReport:
        domain = domain.strip().rstrip(".").lower()
        logger.info("Starting health check", domain=domain)

        # MX is resolved on its own so the blacklist branch does not wait on DNS hygiene.
        mx_task = asyncio.ensure_future(self._mx_hosts(domain))
        branches = await asyncio.gather(
            self.dns_hygiene.evaluate(domain),
            self.spf.evaluate(domain),
            self.dmarc.evaluate(domain),
            self.dkim.probe(domain),
            self.web_server.evaluate(domain),
            self._blacklist_branch(domain, mx_task),
            return_exceptions=True,
        )
        mx_hosts = [] if mx_task.cancelled() or mx_task.exception() else mx_task.result()

        labels = (DNS, SPF, DMARC, DKIM, WEB_SERVER, BLACKLIST)
        failures = [(label, b) for label, b in zip(labels, branches) if isinstance(b, BaseException)]
        for label, error in failures:
            if isinstance(error, asyncio.CancelledError):
                raise error
            logger.error("Evaluator failed", domain=domain, category=label, error=repr(error))
        if len(failures) == len(labels):
            raise DomainCheckError(domain, "All evaluators failed")

        def tests_for(label, value) -> List[TestResult]:
            if isinstance(value, BaseException):
                return _failed_branch(label, value)
            if isinstance(value, (SpfEvaluation, DmarcEvaluation)):
                return value.tests
            return value

        dns_res, spf_res, dmarc_res, dkim_res, web_res, blacklist_res = branches
        spf_eval = spf_res if isinstance(spf_res, SpfEvaluation) else SpfEvaluation()
        dmarc_eval = dmarc_res if isinstance(dmarc_res, DmarcEvaluation) else DmarcEvaluation()

        dns_cat = CategoryResult.from_tests(DNS, tests_for(DNS, dns_res))
        spf_cat = CategoryResult.from_tests(SPF, tests_for(SPF, spf_res))
        dmarc_cat = CategoryResult.from_tests(DMARC, tests_for(DMARC, dmarc_res))
        dkim_cat = CategoryResult.from_tests(DKIM, tests_for(DKIM, dkim_res))
        blacklist_cat = CategoryResult.from_tests(BLACKLIST, tests_for(BLACKLIST, blacklist_res))
        web_cat = CategoryResult.from_tests(WEB_SERVER, tests_for(WEB_SERVER, web_res))
        smtp_cat = CategoryResult.from_tests(SMTP, SMTP_PLACEHOLDER)

        ordered = [dns_cat, spf_cat, dmarc_cat, dkim_cat, blacklist_cat, web_cat, smtp_cat]
        all_tests = [test for category in ordered for test in category.tests]
        passed = sum(1 for test in all_tests if test.status == TestStatus.PASS)
        errors = sum(1 for test in all_tests if test.status == TestStatus.ERROR)
        score = calculate_score(passed, len(all_tests), errors, self.score_error_weight)

        report = FullHealthReport(
            domain=domain,
            raw_spf=spf_eval.raw_record,
            raw_dmarc=dmarc_eval.raw_record,
            dmarc_policy=dmarc_eval.policy,
            mx_records=mx_hosts,
            score=score,
            categories=ReportCategories(
                problems=CategoryResult.from_tests(PROBLEMS, collect_problems(ordered)),
                dns=dns_cat,
                spf=spf_cat,
                dmarc=dmarc_cat,
                dkim=dkim_cat,
                blacklist=blacklist_cat,
                web_server=web_cat,
                smtp=smtp_cat,
            ),
        )
        logger.info("Health check completed", domain=domain, score=score, errors=errors)
        return report

    async def run_with_deadline(self, domain: str, timeout: float) -> Union[FullHealthReport, PartialResult]:
        """Race the check against ``timeout``; in-flight lookups are abandoned."""
        try:
            return await asyncio.wait_for(self.run_full_health_check(domain), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Health check deadline exceeded", domain=domain, timeout=timeout)
            return PartialResult(domain=domain)

    async def run_bulk_health_check(
        self, domains: Sequence[str], timeout: float, concurrency: int = 5
    ) -> List[Union[FullHealthReport, PartialResult, FailedResult]]:
        """Check several domains with at most ``concurrency`` in flight, results in input order.

        A domain whose check fails outright becomes a ``FailedResult`` entry;
        the other domains keep their reports.
        """
        limiter = asyncio.Semaphore(concurrency)

        async def run_one(domain: str):
            async with limiter:
                try:
                    return await self.run_with_deadline(domain, timeout)
                except DomainCheckError as e:
                    logger.error("Bulk entry failed", domain=domain, error=str(e))
                    return FailedResult(domain=domain, message=str(e))
                except Exception as e:
                    logger.exception("Bulk entry crashed", domain=domain, error=str(e))
                    return FailedResult(domain=domain)

        return list(await asyncio.gather(*[run_one(domain) for domain in domains]))
