"""Request schemas for the domain check endpoints."""
from typing import List, Union

from pydantic import BaseModel, Field

from mailhealth.schemas.report import FailedResult, FullHealthReport, PartialResult


class DomainCheckRequest(BaseModel):
    """Schema for a single domain check."""
    domain: str = ""


class BulkDomainCheckRequest(BaseModel):
    """Schema for a bulk domain check."""
    domains: List[str] = Field(default_factory=list)


class BulkDomainCheckResponse(BaseModel):
    results: List[Union[FullHealthReport, PartialResult, FailedResult]]
