"""
Submission service: validate a batch, create the job, hand it to dispatch.

Everything here happens before the job exists, so every problem is raised to
the caller as a SubmissionRejected and nothing is written. Once the job row
is created the submission has succeeded; dispatch trouble only changes *how*
the worker gets started, never whether submit returns the id.
"""

from __future__ import annotations

import logging
from typing import Any

from bulkjobs.config import load_settings
from bulkjobs.exceptions import OwnerRejected, QuotaRejected, ValidationRejected
from bulkjobs.models import ITEM_PENDING, Item, Job, JobKind, JobStatus
from bulkjobs.queueing.dispatch import Dispatcher
from bulkjobs.quota import QuotaProvider
from bulkjobs.store import JobStore

log = logging.getLogger(__name__)

_QUOTA_LABEL = {JobKind.FIND: "Find", JobKind.VERIFY: "Verify"}


def _clean(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


def normalize_item(kind: JobKind, raw: Any, index: int) -> dict[str, Any]:
    """
    Validate one caller record and return the stored input payload.

    Extra keys are kept as passthrough so results can be exported alongside
    the caller's original columns.
    """
    if not isinstance(raw, dict):
        if kind == JobKind.VERIFY and isinstance(raw, str):
            raw = {"email": raw}
        else:
            raise ValidationRejected(f"Item {index} must be an object", code="invalid_item")

    data = {str(k): _clean(v) for k, v in raw.items() if k != "status"}

    if kind == JobKind.FIND:
        full_name = data.get("full_name") or data.pop("name", None)
        domain = data.get("domain")
        if not full_name or not isinstance(full_name, str):
            raise ValidationRejected(f"Item {index} is missing a name", code="invalid_item")
        if not domain or not isinstance(domain, str):
            raise ValidationRejected(f"Item {index} is missing a domain", code="invalid_item")
        data["full_name"] = full_name
        data["domain"] = domain.lower()
        if not data.get("role"):
            data.pop("role", None)
        return data

    email = data.get("email")
    if not email or not isinstance(email, str) or "@" not in email:
        raise ValidationRejected(f"Item {index} is not a valid email address", code="invalid_item")
    data["email"] = email
    return data


class SubmissionService:
    def __init__(
        self,
        store: JobStore,
        quota: QuotaProvider,
        dispatcher: Dispatcher,
        *,
        max_items: int | None = None,
    ) -> None:
        self.store = store
        self.quota = quota
        self.dispatcher = dispatcher
        self.max_items = max_items if max_items is not None else load_settings().max_items

    def _check_quota(self, owner: str, kind: JobKind, required: int) -> None:
        available = self.quota.available(owner, kind)
        if available is None:
            raise OwnerRejected("Unauthorized")
        label = _QUOTA_LABEL[kind]
        if available <= 0:
            raise QuotaRejected(
                f"You don't have any {label} Credits to perform this action. "
                "Please purchase more credits.",
                code="no_quota",
            )
        if available < required:
            raise QuotaRejected(
                f"You need {required} {label} Credits but only have {available}. "
                "Please purchase more credits."
            )

    def submit(
        self,
        owner: str,
        kind: JobKind | str,
        items: list[Any],
        label: str | None = None,
    ) -> str:
        if not owner:
            raise OwnerRejected("Unauthorized")
        try:
            kind = JobKind(kind)
        except ValueError as err:
            raise ValidationRejected(f"Unknown job kind: {kind!r}", code="invalid_kind") from err
        if not items:
            raise ValidationRejected("Batch contains no items", code="empty_batch")
        if len(items) > self.max_items:
            raise ValidationRejected(
                f"Batch has {len(items)} items; the limit is {self.max_items}",
                code="too_many_items",
            )

        inputs = [normalize_item(kind, raw, i) for i, raw in enumerate(items)]
        self._check_quota(owner, kind, len(inputs))

        job = Job(
            id="",
            owner=owner,
            kind=kind,
            status=JobStatus.PENDING,
            items=[Item(index=i, input=data, status=ITEM_PENDING) for i, data in enumerate(inputs)],
            source_label=(label or "").strip() or None,
        )
        job_id = self.store.create(job)
        log.info(
            "bulk job created",
            extra={"job_id": job_id, "owner": owner, "kind": kind.value, "total": len(inputs)},
        )

        try:
            result = self.dispatcher.dispatch(job_id)
        except Exception:
            # The job stays pending; the recovery sweep re-dispatches it.
            log.exception("bulk job dispatch failed", extra={"job_id": job_id})
        else:
            log.info("bulk job dispatched", extra={"job_id": job_id, "mode": result.mode})
        return job_id


__all__ = ["SubmissionService", "normalize_item"]
