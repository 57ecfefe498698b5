"""Health check engine dependency."""
from fastapi import Request

from mailhealth.services.health_check import HealthCheckEngine


def get_engine(request: Request) -> HealthCheckEngine:
    """Get the process-wide engine created at startup."""
    return request.app.state.engine
