"""Unit tests for the SPF evaluator."""
import asyncio

from conftest import FakeDnsBackend, make_resolver
from mailhealth.schemas.report import TestStatus
from mailhealth.services.checks.spf import (
    SpfEvaluator,
    count_spf_lookups,
    is_spf_record,
    parse_term,
    select_spf_records,
)
from mailhealth.services.dns.resolver import DnsErrorKind


def evaluate(backend, domain="example.com", **kwargs):
    evaluator = SpfEvaluator(make_resolver(backend), txt_retries=0, **kwargs)
    return asyncio.run(evaluator.evaluate(domain))


def spf_zone(record: str) -> FakeDnsBackend:
    return FakeDnsBackend().set("TXT", "example.com", [[record]])


def by_name(evaluation):
    return {test.name: test for test in evaluation.tests}


class TestParsing:
    """Term parsing and record selection."""

    def test_parse_qualified_include(self):
        term = parse_term("~include:_spf.example.net")
        assert term.qualifier == "~"
        assert term.name == "include"
        assert term.value == "_spf.example.net"

    def test_parse_default_qualifier(self):
        term = parse_term("mx")
        assert term.qualifier == "+"
        assert term.name == "mx"
        assert term.value == ""

    def test_parse_cidr_suffix(self):
        term = parse_term("a/24")
        assert term.name == "a"
        assert term.value == "/24"

    def test_modifier_detection(self):
        assert parse_term("redirect=_spf.example.net").is_modifier
        assert parse_term("exp=explain.example.com").is_modifier
        assert not parse_term("include:_spf.example.net").is_modifier

    def test_is_spf_record_is_case_insensitive(self):
        assert is_spf_record("V=SPF1 -all")
        assert not is_spf_record("v=spf10 -all")
        assert not is_spf_record("google-site-verification=abc")

    def test_select_joins_chunks(self):
        records = [["v=spf1 ip4:192.0.2.0/24 ", "-all"], ["other=1"]]
        assert select_spf_records(records) == ["v=spf1 ip4:192.0.2.0/24 -all"]


class TestLookupCount:
    """Recursive DNS lookup budget."""

    def test_hard_fail_only_costs_nothing(self):
        resolver = make_resolver(spf_zone("v=spf1 -all"))
        assert asyncio.run(count_spf_lookups(resolver, "example.com", set())) == 0

    def test_a_and_mx_are_counted(self):
        resolver = make_resolver(spf_zone("v=spf1 a mx ip4:192.0.2.1 -all"))
        assert asyncio.run(count_spf_lookups(resolver, "example.com", set())) == 2

    def test_include_loop_terminates(self):
        resolver = make_resolver(spf_zone("v=spf1 include:example.com -all"))
        assert asyncio.run(count_spf_lookups(resolver, "example.com", set())) == 1

    def test_nested_includes_are_counted(self):
        backend = (
            spf_zone("v=spf1 include:a.example.net -all")
            .set("TXT", "a.example.net", [["v=spf1 include:b.example.net mx ~all"]])
            .set("TXT", "b.example.net", [["v=spf1 a ~all"]])
        )
        assert asyncio.run(count_spf_lookups(make_resolver(backend), "example.com", set())) == 4

    def test_unresolvable_include_costs_one(self):
        resolver = make_resolver(spf_zone("v=spf1 include:gone.example.net -all"))
        assert asyncio.run(count_spf_lookups(resolver, "example.com", set())) == 1


class TestSpfEvaluator:
    """Tests for SpfEvaluator.evaluate."""

    def test_strict_record(self):
        evaluation = evaluate(spf_zone("v=spf1 -all"))
        tests = by_name(evaluation)

        assert evaluation.raw_record == "v=spf1 -all"
        assert tests["SPF Record Found"].status == TestStatus.PASS
        assert tests["SPF Policy Strictness"].info == "Hard Fail (-all)"
        assert tests["SPF Lookup Count"].status == TestStatus.PASS
        assert tests["SPF Lookup Count"].info == "0 (Safe <= 10)"
        assert tests["SPF Lookup Count"].result == "0 lookups"
        assert "SPF Void Lookups" not in tests

    def test_missing_record_is_error(self):
        evaluation = evaluate(FakeDnsBackend().set("TXT", "example.com", [["unrelated"]]))
        assert evaluation.raw_record is None
        assert len(evaluation.tests) == 1
        assert evaluation.tests[0].status == TestStatus.ERROR
        assert evaluation.tests[0].result == "SPF Record Missing"

    def test_dns_failure_is_warning(self):
        backend = FakeDnsBackend().fail("TXT", "example.com", DnsErrorKind.SERVER_FAILURE)
        evaluation = evaluate(backend)
        assert len(evaluation.tests) == 1
        assert evaluation.tests[0].status == TestStatus.WARNING
        assert evaluation.tests[0].info == "DNS Error"

    def test_multiple_records(self):
        backend = FakeDnsBackend().set("TXT", "example.com", [["v=spf1 -all"], ["v=spf1 ~all"]])
        tests = by_name(evaluate(backend))
        assert tests["SPF Multiple Records"].status == TestStatus.ERROR
        assert tests["SPF Multiple Records"].info == "2 records"

    def test_too_many_lookups(self):
        includes = " ".join(f"include:i{n}.example.net" for n in range(12))
        backend = spf_zone(f"v=spf1 {includes} -all")
        for n in range(12):
            backend.set("TXT", f"i{n}.example.net", [["v=spf1 -all"]])

        tests = by_name(evaluate(backend))
        assert tests["SPF Lookup Count"].status == TestStatus.ERROR
        assert tests["SPF Lookup Count"].info == "12 (> 10 Limit)"
        assert tests["SPF Void Lookups"].status == TestStatus.PASS

    def test_void_include_is_warning(self):
        backend = spf_zone("v=spf1 include:gone.example.net -all")
        tests = by_name(evaluate(backend))
        assert tests["SPF Void Lookups"].status == TestStatus.WARNING
        assert "gone.example.net" in tests["SPF Void Lookups"].reason

    def test_void_checks_are_capped(self):
        includes = " ".join(f"include:v{n}.example.net" for n in range(8))
        backend = spf_zone(f"v=spf1 {includes} -all")
        tests = by_name(evaluate(backend, void_check_limit=5))
        assert tests["SPF Void Lookups"].info == "5 Failed"

    def test_include_lookup_failure_is_not_void(self):
        backend = spf_zone("v=spf1 include:flaky.example.net -all").fail(
            "TXT", "flaky.example.net", DnsErrorKind.SERVER_FAILURE
        )
        tests = by_name(evaluate(backend))
        assert tests["SPF Void Lookups"].status == TestStatus.PASS

    def test_allow_all_is_error(self):
        tests = by_name(evaluate(spf_zone("v=spf1 +all")))
        assert tests["SPF Policy Strictness"].status == TestStatus.ERROR

    def test_bare_all_allows_everyone(self):
        tests = by_name(evaluate(spf_zone("v=spf1 all")))
        assert tests["SPF Policy Strictness"].status == TestStatus.ERROR

    def test_neutral_is_warning(self):
        tests = by_name(evaluate(spf_zone("v=spf1 ?all")))
        assert tests["SPF Policy Strictness"].status == TestStatus.WARNING

    def test_missing_terminator_is_warning(self):
        tests = by_name(evaluate(spf_zone("v=spf1 ip4:192.0.2.1")))
        assert tests["SPF Policy Strictness"].info == "Missing Terminator"

    def test_redirect_without_terminator_passes(self):
        backend = spf_zone("v=spf1 redirect=_spf.example.net").set("TXT", "_spf.example.net", [["v=spf1 -all"]])
        tests = by_name(evaluate(backend))
        assert tests["SPF Policy Strictness"].info == "Redirect"
        assert tests["SPF Lookup Count"].info == "1 (Safe <= 10)"

    def test_mechanism_after_all(self):
        tests = by_name(evaluate(spf_zone("v=spf1 -all ip4:192.0.2.1")))
        assert tests["SPF Mechanisms Ordering"].status == TestStatus.WARNING

    def test_modifier_after_all_is_fine(self):
        tests = by_name(evaluate(spf_zone("v=spf1 -all exp=explain.example.com")))
        assert tests["SPF Mechanisms Ordering"].status == TestStatus.PASS

    def test_ptr_is_flagged(self):
        tests = by_name(evaluate(spf_zone("v=spf1 ptr -all")))
        assert tests["Global PTR Mechanism"].status == TestStatus.WARNING
        assert tests["SPF Lookup Count"].info == "1 (Safe <= 10)"

    def test_duplicates_are_flagged(self):
        tests = by_name(evaluate(spf_zone("v=spf1 ip4:192.0.2.1 ip4:192.0.2.1 -all")))
        assert tests["SPF Redundancy"].status == TestStatus.WARNING

    def test_invalid_ip_syntax(self):
        tests = by_name(evaluate(spf_zone("v=spf1 ip4:300.1.1.1 ip6:2001:db8::/32 -all")))
        assert tests["SPF IP Syntax"].status == TestStatus.ERROR
        assert "ip4:300.1.1.1" in tests["SPF IP Syntax"].reason
        assert "ip6:2001:db8::/32" not in tests["SPF IP Syntax"].reason

    def test_uppercase_version_is_warning(self):
        tests = by_name(evaluate(spf_zone("V=SPF1 -all")))
        assert tests["SPF Version"].status == TestStatus.WARNING
