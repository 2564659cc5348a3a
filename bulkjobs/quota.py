"""
Quota collaborator: how many lookups of a kind an owner may still run.

Balance bookkeeping and debiting live in the billing service; this module only
answers "how much is left" so submission can refuse batches that cannot be
paid for.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from bulkjobs.config import QuotaConfig, load_settings
from bulkjobs.exceptions import QuotaRejected
from bulkjobs.models import JobKind

log = logging.getLogger(__name__)


class QuotaProvider(Protocol):
    def available(self, owner: str, kind: JobKind) -> int | None:
        """Remaining allowance, or None when the owner is unknown."""
        ...


class StaticQuotaProvider:
    """Fixed allowance per kind. Used in dev mode and tests."""

    def __init__(self, allowance: int | dict[JobKind, int], owners: set[str] | None = None) -> None:
        if isinstance(allowance, int):
            allowance = {kind: allowance for kind in JobKind}
        self.allowance = allowance
        self.owners = owners

    def available(self, owner: str, kind: JobKind) -> int | None:
        if self.owners is not None and owner not in self.owners:
            return None
        return int(self.allowance.get(kind, 0))


class HttpQuotaProvider:
    """
    Reads balances from the billing service.

    Accepts either `credits_find` / `credits_verify` or `find` / `verify`
    keys, optionally nested under `data`. A 404 means the owner does not
    exist; any other failure is reported to the submitter as a retryable
    rejection.
    """

    def __init__(self, url: str, *, timeout: float = 10.0) -> None:
        self.url = url
        self.timeout = timeout

    def available(self, owner: str, kind: JobKind) -> int | None:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.get(self.url, headers={"x-user-id": owner})
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            log.warning("quota lookup failed", extra={"owner": owner, "exc": str(exc)})
            raise QuotaRejected(
                "Failed to check your credits. Please try again.",
                code="quota_unavailable",
            ) from exc

        if not isinstance(data, dict):
            return 0
        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        key = JobKind(kind).value
        for source in (data, nested):
            for name in (f"credits_{key}", key):
                value = source.get(name)
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    return int(value)
        return 0


def default_quota_provider(cfg: QuotaConfig | None = None) -> QuotaProvider:
    cfg = cfg or load_settings().quota
    if cfg.api_url:
        return HttpQuotaProvider(cfg.api_url)
    return StaticQuotaProvider(cfg.dev_allowance)


__all__ = [
    "QuotaProvider",
    "StaticQuotaProvider",
    "HttpQuotaProvider",
    "default_quota_provider",
]
