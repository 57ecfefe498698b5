"""API endpoints package."""
from mailhealth.api.endpoints import check_domain

__all__ = ["check_domain"]
