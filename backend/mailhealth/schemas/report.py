"""Pydantic schemas for the domain health report.

The serialized form of these models is the JSON contract consumed by the
front end, so field aliases (``rawSpf``, ``webServer`` ...) must not change.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_serializer, model_validator


class TestStatus(str, Enum):
    """Outcome of a single diagnostic."""
    __test__ = False  # not a pytest class

    PASS = "Pass"
    WARNING = "Warning"
    ERROR = "Error"


class ResultType(str, Enum):
    """Subject kind of a blacklist entry."""
    IP = "IP"
    DOMAIN = "DOMAIN"


class Severity(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class TestResult(BaseModel):
    """One atomic diagnostic finding."""
    __test__ = False  # not a pytest class

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    name: str
    status: TestStatus
    info: str
    reason: str
    recommendation: str
    category: Optional[str] = None
    host: Optional[str] = None
    result: Optional[str] = None
    type: Optional[ResultType] = None
    severity: Optional[Severity] = None

    @model_serializer(mode="wrap")
    def _drop_unset_optionals(self, handler):
        data = handler(self)
        return {key: value for key, value in data.items() if value is not None}

    def with_category(self, category: str) -> "TestResult":
        """Return a copy stamped with ``category`` unless one is already set."""
        if self.category:
            return self
        return self.model_copy(update={"category": category})


class CategoryStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    passed: int = 0
    warnings: int = 0
    errors: int = 0


class CategoryResult(BaseModel):
    """A named bucket of findings with derived counters."""
    model_config = ConfigDict(frozen=True)

    category: str
    tests: List[TestResult]
    stats: CategoryStats

    @model_validator(mode="after")
    def _stats_match_tests(self) -> "CategoryResult":
        expected = count_statuses(self.tests)
        if expected != self.stats:
            raise ValueError(
                f"stats {self.stats.model_dump()} do not match tests {expected.model_dump()}"
            )
        return self

    @classmethod
    def from_tests(cls, name: str, tests: List[TestResult]) -> "CategoryResult":
        stamped = [test.with_category(name) for test in tests]
        return cls(category=name, tests=stamped, stats=count_statuses(stamped))


def count_statuses(tests: List[TestResult]) -> CategoryStats:
    passed = warnings = errors = 0
    for test in tests:
        if test.status == TestStatus.PASS:
            passed += 1
        elif test.status == TestStatus.WARNING:
            warnings += 1
        elif test.status == TestStatus.ERROR:
            errors += 1
    return CategoryStats(passed=passed, warnings=warnings, errors=errors)


class ReportCategories(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    problems: CategoryResult
    dns: CategoryResult
    spf: CategoryResult
    dmarc: CategoryResult
    dkim: CategoryResult
    blacklist: CategoryResult
    web_server: CategoryResult = Field(alias="webServer")
    smtp: CategoryResult


class FullHealthReport(BaseModel):
    """Terminal artifact for one domain check."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    domain: str
    raw_spf: Optional[str] = Field(default=None, alias="rawSpf")
    raw_dmarc: Optional[str] = Field(default=None, alias="rawDmarc")
    dmarc_policy: Optional[str] = Field(default=None, alias="dmarcPolicy")
    mx_records: List[str] = Field(default_factory=list, alias="mxRecords")
    score: int = Field(ge=0, le=100)
    categories: ReportCategories

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class PartialResult(BaseModel):
    """Returned in place of a report when the outer deadline fires first."""
    domain: Optional[str] = None
    error: str = "Timeout"
    message: str = "The health check exceeded the execution time limit. Please retry or check fewer domains."
    status: str = "partial"


class FailedResult(BaseModel):
    """Bulk entry for a domain whose check failed outright."""
    domain: str
    error: str = "Internal Server Error"
    message: str = "The health check could not be completed for this domain."
    status: str = "failed"
