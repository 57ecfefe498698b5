"""Domain health check endpoints."""
from typing import Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
import structlog

from mailhealth.api.deps import get_engine
from mailhealth.core.config import settings
from mailhealth.schemas.check import BulkDomainCheckRequest, BulkDomainCheckResponse, DomainCheckRequest
from mailhealth.schemas.report import FullHealthReport, PartialResult
from mailhealth.services.health_check import DomainCheckError, HealthCheckEngine

router = APIRouter(prefix="/check-domain", tags=["Domain Health"])

logger = structlog.get_logger()


def clean_domain(raw: Optional[str]) -> Optional[str]:
    """Trim and lower-case; None when the input cannot be a hostname."""
    if not raw or not isinstance(raw, str):
        return None
    domain = raw.strip().lower().rstrip(".")
    if not domain or "." not in domain or " " in domain:
        return None
    return domain


def _serialize(result) -> dict:
    if isinstance(result, FullHealthReport):
        return result.to_json_dict()
    return result.model_dump(mode="json")


@router.post("", responses={200: {"model": FullHealthReport}})
async def check_domain(
    request: DomainCheckRequest,
    engine: HealthCheckEngine = Depends(get_engine)
):
    """Run the full passive health check for one domain."""
    domain = clean_domain(request.domain)
    if domain is None:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid domain format"})

    try:
        result = await engine.run_with_deadline(domain, settings.GLOBAL_TIMEOUT_SECONDS)
    except DomainCheckError as e:
        logger.error("Domain check failed", domain=domain, error=str(e))
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Internal Server Error"})

    if isinstance(result, PartialResult):
        return JSONResponse(content=result.model_dump(mode="json", exclude={"domain"}))
    return JSONResponse(content=result.to_json_dict())


@router.post("/bulk", responses={200: {"model": BulkDomainCheckResponse}})
async def check_domains_bulk(
    request: BulkDomainCheckRequest,
    engine: HealthCheckEngine = Depends(get_engine)
):
    """Check several domains; each entry is a report or a timeout/failure marker."""
    if not request.domains:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "No domains provided"})
    if len(request.domains) > settings.BULK_MAX_DOMAINS:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": f"At most {settings.BULK_MAX_DOMAINS} domains per request"}
        )

    domains = [clean_domain(d) for d in request.domains]
    invalid = [raw for raw, domain in zip(request.domains, domains) if domain is None]
    if invalid:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid domain format", "invalid": invalid}
        )

    results = await engine.run_bulk_health_check(
        domains,
        timeout=settings.GLOBAL_TIMEOUT_SECONDS,
        concurrency=settings.BULK_CONCURRENCY,
    )

    logger.info("Bulk domain check completed", count=len(results))
    return JSONResponse(content={"results": [_serialize(r) for r in results]})
