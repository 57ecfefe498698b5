"""Pydantic schemas package."""
from mailhealth.schemas.report import (
    TestStatus, ResultType, Severity, TestResult, CategoryStats,
    CategoryResult, ReportCategories, FullHealthReport, PartialResult, FailedResult
)
from mailhealth.schemas.check import DomainCheckRequest, BulkDomainCheckRequest, BulkDomainCheckResponse

__all__ = [
    "TestStatus", "ResultType", "Severity", "TestResult", "CategoryStats",
    "CategoryResult", "ReportCategories", "FullHealthReport", "PartialResult", "FailedResult",
    "DomainCheckRequest", "BulkDomainCheckRequest", "BulkDomainCheckResponse"
]
