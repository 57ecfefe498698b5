"""Cached, concurrency-governed DNS resolution via dnspython."""
import asyncio
from enum import Enum
from typing import Any, List, NamedTuple, Optional, Protocol

import dns.asyncresolver
import dns.exception
import dns.resolver
import structlog

from mailhealth.services.dns.cache import SingleFlightCache
from mailhealth.services.dns.governor import ConcurrencyGovernor

logger = structlog.get_logger()

SUPPORTED_RECORD_TYPES = ("A", "AAAA", "MX", "TXT", "NS", "SOA", "CAA", "CNAME", "PTR")


class DnsErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    TIMEOUT = "Timeout"
    SERVER_FAILURE = "ServerFailure"
    OTHER = "Other"


class DnsError(Exception):
    """A lookup failed. ``kind`` separates absence from transient trouble."""

    def __init__(self, kind: DnsErrorKind, record_type: str, hostname: str, message: str = ""):
        self.kind = kind
        self.record_type = record_type
        self.hostname = hostname
        super().__init__(message or f"{record_type} {hostname}: {kind.value}")

    @property
    def is_not_found(self) -> bool:
        return self.kind == DnsErrorKind.NOT_FOUND

    @property
    def is_transient(self) -> bool:
        return self.kind in (DnsErrorKind.TIMEOUT, DnsErrorKind.SERVER_FAILURE)


class MxRecord(NamedTuple):
    priority: int
    exchange: str


class SoaRecord(NamedTuple):
    nsname: str
    hostmaster: str
    serial: int
    refresh: int
    retry: int
    expire: int
    minttl: int


class CaaRecord(NamedTuple):
    flags: int
    tag: str
    value: str


class DnsBackend(Protocol):
    """Performs one live lookup. Raises ``DnsError`` on failure."""

    nameservers: List[str]

    async def query(self, record_type: str, hostname: str) -> Any:
        ...


def _name(value) -> str:
    return value.to_text().rstrip(".")


class DnsPythonBackend:
    """Live lookups through ``dns.asyncresolver``, normalized to plain values."""

    def __init__(self, nameservers: Optional[List[str]] = None, lifetime: float = 2.5):
        self._resolver = dns.asyncresolver.Resolver()
        if nameservers:
            self._resolver.nameservers = list(nameservers)
        self._resolver.timeout = lifetime
        self._resolver.lifetime = lifetime

    @property
    def nameservers(self) -> List[str]:
        return [str(ns) for ns in self._resolver.nameservers]

    async def query(self, record_type: str, hostname: str) -> Any:
        try:
            answer = await self._resolver.resolve(hostname, record_type)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer) as e:
            raise DnsError(DnsErrorKind.NOT_FOUND, record_type, hostname, str(e)) from e
        except dns.exception.Timeout as e:
            raise DnsError(DnsErrorKind.TIMEOUT, record_type, hostname, str(e)) from e
        except dns.resolver.NoNameservers as e:
            raise DnsError(DnsErrorKind.SERVER_FAILURE, record_type, hostname, str(e)) from e
        except dns.exception.DNSException as e:
            raise DnsError(DnsErrorKind.OTHER, record_type, hostname, str(e)) from e
        return self._convert(record_type, answer)

    @staticmethod
    def _convert(record_type: str, answer) -> Any:
        if record_type in ("A", "AAAA"):
            return [rdata.address for rdata in answer]
        if record_type in ("NS", "CNAME", "PTR"):
            return [_name(rdata.target) for rdata in answer]
        if record_type == "MX":
            return [MxRecord(rdata.preference, _name(rdata.exchange)) for rdata in answer]
        if record_type == "TXT":
            return [
                [chunk.decode("utf-8", errors="replace") for chunk in rdata.strings]
                for rdata in answer
            ]
        if record_type == "SOA":
            rdata = answer[0]
            return SoaRecord(
                nsname=_name(rdata.mname),
                hostmaster=_name(rdata.rname),
                serial=rdata.serial,
                refresh=rdata.refresh,
                retry=rdata.retry,
                expire=rdata.expire,
                minttl=rdata.minimum,
            )
        if record_type == "CAA":
            return [
                CaaRecord(rdata.flags, rdata.tag.decode(), rdata.value.decode(errors="replace"))
                for rdata in answer
            ]
        raise ValueError(f"Unsupported record type: {record_type}")


class CachingResolver:
    """Front door for every DNS lookup the engine makes.

    Answers are shared through a single-flight cache keyed by
    ``{TYPE}:{hostname}``; live queries are admitted through the governor
    and raced against ``query_timeout``.
    """

    def __init__(
        self,
        backend: DnsBackend,
        governor: ConcurrencyGovernor,
        cache: SingleFlightCache,
        query_timeout: float = 2.5,
    ):
        self.backend = backend
        self.governor = governor
        self.cache = cache
        self.query_timeout = query_timeout

    @property
    def nameservers(self) -> List[str]:
        return list(getattr(self.backend, "nameservers", []) or [])

    async def resolve(self, record_type: str, hostname: str) -> Any:
        record_type = record_type.upper()
        if record_type not in SUPPORTED_RECORD_TYPES:
            raise ValueError(f"Unsupported record type: {record_type}")
        hostname = hostname.strip().rstrip(".").lower()
        key = f"{record_type}:{hostname}"
        return await self.cache.get_or_compute(key, lambda: self._live_query(record_type, hostname))

    async def _live_query(self, record_type: str, hostname: str) -> Any:
        async with self.governor.slot():
            try:
                return await asyncio.wait_for(
                    self.backend.query(record_type, hostname), timeout=self.query_timeout
                )
            except asyncio.TimeoutError as e:
                logger.debug("DNS query timed out", record_type=record_type, hostname=hostname)
                raise DnsError(DnsErrorKind.TIMEOUT, record_type, hostname, "DNS Timeout") from e

    async def resolve_a(self, hostname: str) -> List[str]:
        return await self.resolve("A", hostname)

    async def resolve_aaaa(self, hostname: str) -> List[str]:
        return await self.resolve("AAAA", hostname)

    async def resolve_mx(self, hostname: str) -> List[MxRecord]:
        return await self.resolve("MX", hostname)

    async def resolve_txt(self, hostname: str) -> List[List[str]]:
        return await self.resolve("TXT", hostname)

    async def resolve_ns(self, hostname: str) -> List[str]:
        return await self.resolve("NS", hostname)

    async def resolve_soa(self, hostname: str) -> SoaRecord:
        return await self.resolve("SOA", hostname)

    async def resolve_caa(self, hostname: str) -> List[CaaRecord]:
        return await self.resolve("CAA", hostname)

    async def resolve_cname(self, hostname: str) -> List[str]:
        return await self.resolve("CNAME", hostname)

    async def resolve_txt_with_retry(self, hostname: str, retries: int = 1) -> List[List[str]]:
        """TXT lookup where absence is an empty answer and transient failures retry."""
        for attempt in range(retries + 1):
            try:
                return await self.resolve_txt(hostname)
            except DnsError as e:
                if e.is_not_found:
                    return []
                if attempt == retries or not e.is_transient:
                    raise
                await asyncio.sleep(0.2 * (2 ** attempt))
        return []


def join_txt(records: List[List[str]]) -> List[str]:
    """Join the character-string chunks of each TXT record."""
    return ["".join(chunks) for chunks in records]


def sort_mx(records: List[MxRecord]) -> List[str]:
    return [mx.exchange for mx in sorted(records, key=lambda mx: mx.priority)]


def build_resolver(settings) -> CachingResolver:
    """Wire a resolver from settings. Called once per process."""
    return CachingResolver(
        backend=DnsPythonBackend(settings.DNS_NAMESERVERS or None, lifetime=settings.DNS_QUERY_TIMEOUT),
        governor=ConcurrencyGovernor(settings.DNS_MAX_CONCURRENT_QUERIES),
        cache=SingleFlightCache(ttl=settings.DNS_CACHE_TTL_SECONDS),
        query_timeout=settings.DNS_QUERY_TIMEOUT,
    )
