# bulkjobs/api/jobs.py
"""
Bulk jobs API.

  POST /api/v1/bulk/jobs              submit a find/verify batch
  GET  /api/v1/bulk/jobs              list the caller's jobs, newest first
  GET  /api/v1/bulk/jobs/{job_id}     status + items for one job
  POST /api/v1/bulk/jobs/{job_id}/stop
  POST /api/v1/bulk/jobs/stop         stop every active job of the caller
  POST /api/v1/bulk/recover           run the recovery sweep (admin)

Submission rejections and unknown jobs are raised as exceptions and turned
into `{"error", "detail"}` payloads by the handlers registered in app.py.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator

from bulkjobs.api.deps import (
    get_owner,
    get_recovery,
    get_settings,
    get_store,
    get_submission,
    require_admin,
)
from bulkjobs.config import AppConfig
from bulkjobs.models import JobKind
from bulkjobs.recovery import RecoverySweep
from bulkjobs.store import JobStore
from bulkjobs.submission import SubmissionService

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/bulk", tags=["bulk-jobs"])

Owner = Annotated[str, Depends(get_owner)]
Store = Annotated[JobStore, Depends(get_store)]


class SubmitRequest(BaseModel):
    kind: str
    items: list[Any] = Field(default_factory=list)
    label: str | None = Field(default=None, max_length=200)

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v


@router.post("/jobs", status_code=status.HTTP_201_CREATED)
def submit_job(
    payload: SubmitRequest,
    owner: Owner,
    store: Store,
    service: Annotated[SubmissionService, Depends(get_submission)],
) -> dict[str, Any]:
    job_id = service.submit(owner, payload.kind, payload.items, payload.label)
    job = store.get(job_id, owner, include_items=False)
    return {"job_id": job.id, "status": job.status.value, "total_items": job.total_items}


@router.get("/jobs")
def list_jobs(
    owner: Owner,
    store: Store,
    sweep: Annotated[RecoverySweep, Depends(get_recovery)],
    settings: Annotated[AppConfig, Depends(get_settings)],
    limit: int = Query(default=10, ge=1, le=100),
    kind: JobKind | None = Query(default=None),
) -> dict[str, Any]:
    if settings.recovery.on_list:
        try:
            sweep.recover_stuck_jobs()
        except Exception:
            # Listing must still work when the sweep cannot run.
            log.exception("recovery sweep before listing failed", extra={"owner": owner})
    jobs = store.list_by_owner(owner, limit, kind=kind)
    return {"jobs": [job.summary(include_items=False) for job in jobs]}


@router.post("/jobs/stop")
def stop_all_jobs(owner: Owner, store: Store) -> dict[str, Any]:
    stopped = store.stop_all(owner)
    log.info("stopped all active bulk jobs", extra={"owner": owner, "stopped": stopped})
    return {"stopped": stopped}


@router.get("/jobs/{job_id}")
def get_job(job_id: str, owner: Owner, store: Store) -> dict[str, Any]:
    return store.get(job_id, owner).summary()


@router.post("/jobs/{job_id}/stop")
def stop_job(job_id: str, owner: Owner, store: Store) -> dict[str, Any]:
    result = store.stop(job_id, owner)
    if result.stopped:
        log.info("bulk job stopped", extra={"job_id": job_id, "owner": owner})
    return {"job_id": result.job_id, "stopped": result.stopped, "status": result.status.value}


@router.post("/recover", dependencies=[Depends(require_admin)])
def recover(sweep: Annotated[RecoverySweep, Depends(get_recovery)]) -> dict[str, Any]:
    return sweep.recover_stuck_jobs().to_dict()
