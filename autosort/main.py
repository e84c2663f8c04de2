"""
autosort - Control Channel application

FastAPI app served by the background service on its local socket:
- /rpc - status, rule CRUD, reload, stop, activity tail
- /subscribe - pushed status snapshots
- /health - liveness
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from autosort import __version__
from autosort.api import control, health
from autosort.exceptions import AutosortError

if TYPE_CHECKING:
    from domains.daemon.service import DaemonService

# HTTP status per error kind; the body always carries the structured error
STATUS_CODES = {
    "ChannelProtocolError": 400,
    "RuleInvalid": 422,
    "ConfigInvalid": 422,
    "NotFound": 404,
    "InvalidState": 409,
}


def create_app(service: "DaemonService") -> FastAPI:
    """
    Build the Control Channel app bound to one service instance.

    Args:
        service: Running DaemonService the endpoints operate on

    Returns:
        FastAPI application
    """
    app = FastAPI(
        title="autosort",
        version=__version__,
        description="Control Channel for the autosort file organizer",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.service = service

    @app.exception_handler(AutosortError)
    async def autosort_exception_handler(request: Request, exc: AutosortError):
        """Render domain errors as a structured error body."""
        logger.warning(f"Control request failed: {exc.kind}: {exc.message}")
        return JSONResponse(
            status_code=STATUS_CODES.get(exc.kind, 400),
            content={"error": exc.to_dict()},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.opt(exception=exc).error(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": {"kind": "InternalError", "message": str(exc) or type(exc).__name__}},
        )

    app.include_router(health.router, tags=["Health"])
    app.include_router(control.router, tags=["Control"])

    return app
