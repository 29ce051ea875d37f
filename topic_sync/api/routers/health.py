"""
Health Check Endpoints

Used by monitoring systems and load balancers.
"""

from datetime import datetime, timezone

from fastapi import APIRouter
from pydantic import BaseModel

from ... import __version__

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    version: str
    timestamp: datetime


@router.get("/health", response_model=HealthResponse)
def health_check():
    """
    Basic health check endpoint.

    Returns 200 OK if the API is running. Does not check the database or
    any upstream API.
    """
    return HealthResponse(
        status="ok",
        version=__version__,
        timestamp=datetime.now(timezone.utc),
    )
