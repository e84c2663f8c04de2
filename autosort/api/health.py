"""
Health check endpoint.
"""

from datetime import datetime

from fastapi import APIRouter, Request
from pydantic import BaseModel

from autosort import __version__
from autosort.models.schemas import DaemonState
from autosort.utils.helpers import utcnow

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str
    state: DaemonState
    version: str
    timestamp: datetime


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Health check endpoint.

    Reports "healthy" while the service is Running and "degraded" in any
    other state (reloading, stopping).
    """
    state = request.app.state.service.state

    return HealthResponse(
        status="healthy" if state is DaemonState.RUNNING else "degraded",
        state=state,
        version=__version__,
        timestamp=utcnow(),
    )
