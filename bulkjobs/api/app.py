from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from bulkjobs.api import jobs as jobs_routes
from bulkjobs.api.deps import get_dispatcher, get_settings, get_store
from bulkjobs.exceptions import (
    JobNotFound,
    OwnerRejected,
    QuotaRejected,
    SubmissionRejected,
)
from bulkjobs.recovery import RecoverySweep

log = logging.getLogger(__name__)


def _error_response(status_code: int, error: str, detail: str) -> JSONResponse:
    """
    Helper to return a JSON error payload with a consistent shape.

    Example:
        { "error": "empty_batch", "detail": "Batch contains no items" }
    """
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "detail": detail},
    )


def _rejection_status(exc: SubmissionRejected) -> int:
    if isinstance(exc, OwnerRejected):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(exc, QuotaRejected):
        if exc.code == "quota_unavailable":
            return status.HTTP_503_SERVICE_UNAVAILABLE
        return status.HTTP_402_PAYMENT_REQUIRED
    return status.HTTP_400_BAD_REQUEST


async def _handle_rejection(request: Request, exc: SubmissionRejected) -> JSONResponse:
    return _error_response(_rejection_status(exc), exc.code, exc.message)


async def _handle_not_found(request: Request, exc: JobNotFound) -> JSONResponse:
    return _error_response(status.HTTP_404_NOT_FOUND, "not_found", "Job not found")


def _startup_recovery() -> None:
    try:
        sweep = RecoverySweep(get_store(), get_dispatcher(), get_settings().recovery)
        sweep.recover_stuck_jobs()
    except Exception:
        log.exception("startup recovery sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    if getattr(app.state, "recover_on_startup", True):
        _startup_recovery()
    yield


def create_app(*, recover_on_startup: bool = True) -> FastAPI:
    app = FastAPI(title="Bulk Email Jobs API", lifespan=lifespan)
    app.state.recover_on_startup = recover_on_startup
    app.add_exception_handler(SubmissionRejected, _handle_rejection)
    app.add_exception_handler(JobNotFound, _handle_not_found)
    app.include_router(jobs_routes.router)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
