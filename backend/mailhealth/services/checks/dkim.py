"""DKIM Prober - brute-force discovery of common selectors."""
import asyncio
import re
from typing import List, Optional, Tuple

from mailhealth.schemas.report import TestResult, TestStatus
from mailhealth.services.dns.resolver import CachingResolver, DnsError, join_txt

DEFAULT_SELECTORS = [
    "google", "default", "k1", "s1", "mail", "selector1", "selector2",
    "mandrill", "smtp", "pic", "dkim", "uk",
]

KEY_RE = re.compile(r"(?:^|;)\s*p=([^;]*)", re.IGNORECASE)
KEY_TYPE_RE = re.compile(r"(?:^|;)\s*k=([^;]*)", re.IGNORECASE)
VERSION_RE = re.compile(r"(?:^|;)\s*v=DKIM1\s*(?:;|$)", re.IGNORECASE)

STRONG_KEY_BITS = 2000
ACCEPTABLE_KEY_BITS = 1000


def public_key(record: str) -> Optional[str]:
    match = KEY_RE.search(record)
    if match is None:
        return None
    return re.sub(r"\s+", "", match.group(1))


def is_dkim_key(record: str) -> bool:
    """Reject unrelated TXT data published under the same label."""
    return bool(VERSION_RE.search(record)) or bool(public_key(record))


def estimate_key_bits(key: str) -> int:
    return len(key) * 6


class DkimProber:
    def __init__(self, resolver: CachingResolver, selectors: Optional[List[str]] = None):
        self.resolver = resolver
        self.selectors = selectors or DEFAULT_SELECTORS

    async def _lookup(self, domain: str, selector: str) -> Optional[Tuple[str, str]]:
        try:
            records = await self.resolver.resolve_txt(f"{selector}._domainkey.{domain}")
        except DnsError:
            return None
        record = "".join(join_txt(records))
        return (selector, record) if record else None

    async def probe(self, domain: str) -> List[TestResult]:
        found = await asyncio.gather(*[self._lookup(domain, sel) for sel in self.selectors])
        keys = [item for item in found if item is not None and is_dkim_key(item[1])]

        if not keys:
            return [TestResult(
                name="DKIM Selectors",
                status=TestStatus.PASS,
                info="Info: Selector not discoverable",
                reason="Common selectors were checked but not found. This is normal if you use custom selectors.",
                recommendation="No action needed unless you are missing DKIM.",
            )]

        tests = [TestResult(
            name="DKIM Record Found",
            status=TestStatus.PASS,
            info=f"{len(keys)} Keys",
            reason=f"Found DKIM keys for selectors: {', '.join(sel for sel, _ in keys)}",
            recommendation="No action needed.",
        )]
        for selector, record in keys:
            tests.extend(self._grade_key(domain, selector, record))
        return tests

    def _grade_key(self, domain: str, selector: str, record: str) -> List[TestResult]:
        tests = []
        host = f"{selector}._domainkey.{domain}"

        if VERSION_RE.search(record):
            tests.append(TestResult(
                name=f"DKIM Version ({selector})", status=TestStatus.PASS, info="v=DKIM1",
                reason="Correct version.", recommendation="No action needed.",
            ))
        else:
            tests.append(TestResult(
                name=f"DKIM Version ({selector})", status=TestStatus.WARNING, info="Legacy/Missing",
                reason="v=DKIM1 tag is missing (minor issue).", recommendation="Update record to include v=DKIM1.",
            ))

        key_type_match = KEY_TYPE_RE.search(record)
        key_type = key_type_match.group(1).strip().lower() if key_type_match else "rsa"
        if key_type in ("rsa", "ed25519"):
            tests.append(TestResult(
                name=f"DKIM Key Type ({selector})", status=TestStatus.PASS,
                info="Ed25519" if key_type == "ed25519" else "RSA",
                reason="Supported key algorithm.", recommendation="No action needed.",
            ))
        else:
            tests.append(TestResult(
                name=f"DKIM Key Type ({selector})", status=TestStatus.WARNING, info=key_type,
                reason="Unknown key type; verifiers will ignore this key.", recommendation="Use k=rsa or k=ed25519.",
            ))

        key = public_key(record)
        if key is None:
            tests.append(TestResult(
                name=f"DKIM Key Data ({selector})", status=TestStatus.ERROR, info="Missing p=",
                reason="Public key data not found.", recommendation="Fix the DKIM record syntax.",
                host=host, result=f"DKIM Key Missing ({selector})",
            ))
        elif not key:
            tests.append(TestResult(
                name=f"DKIM Key Data ({selector})", status=TestStatus.WARNING, info="Revoked (empty p=)",
                reason="An empty p= tag means the key has been revoked.",
                recommendation="Remove the selector if it is no longer used.",
                host=host,
            ))
        elif key_type == "ed25519":
            tests.append(TestResult(
                name=f"DKIM Key Strength ({selector})", status=TestStatus.PASS, info="Ed25519",
                reason="Ed25519 keys are short by design and considered strong.", recommendation="No action needed.",
            ))
        else:
            tests.append(self._grade_strength(selector, host, estimate_key_bits(key)))
        return tests

    def _grade_strength(self, selector: str, host: str, bits: int) -> TestResult:
        if bits >= STRONG_KEY_BITS:
            return TestResult(
                name=f"DKIM Key Strength ({selector})", status=TestStatus.PASS, info="2048-bit+",
                reason=f"Key appears strong (~{bits} bits).", recommendation="No action needed.",
            )
        if bits >= ACCEPTABLE_KEY_BITS:
            return TestResult(
                name=f"DKIM Key Strength ({selector})", status=TestStatus.WARNING, info="1024-bit",
                reason=f"Key is 1024-bit (~{bits} bits). 2048-bit is recommended.",
                recommendation="Rotate to a 2048-bit key.",
            )
        return TestResult(
            name=f"DKIM Key Strength ({selector})", status=TestStatus.ERROR, info="Weak (<1024)",
            reason=f"Key is too short to be secure (~{bits} bits).",
            recommendation="Generate a new 2048-bit key immediately.",
            host=host, result=f"DKIM Key Weak ({selector})",
        )
