"""API router configuration."""
from fastapi import APIRouter
from mailhealth.api.endpoints import check_domain

api_router = APIRouter()

api_router.include_router(check_domain.router)
