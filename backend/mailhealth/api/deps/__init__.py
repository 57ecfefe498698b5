"""API dependencies package."""
from mailhealth.api.deps.engine import get_engine

__all__ = ["get_engine"]
