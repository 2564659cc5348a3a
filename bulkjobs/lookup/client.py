"""
Client for the external find/verify lookup service.

Each call applies its own timeout and retries transient failures with
exponential backoff (tenacity). When every attempt fails the call does not
raise: it returns a result with status="error" and a message saying whether
the service timed out, refused the connection, or rate-limited us.

`run_item()` is what the batch worker calls: it dispatches on job kind and
maps the lookup result onto an item outcome.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from bulkjobs.config import LookupConfig, load_settings
from bulkjobs.lookup.normalize import (
    FindResult,
    VerifyResult,
    normalize_find_payload,
    normalize_verify_payload,
)
from bulkjobs.models import ITEM_ERROR, RESERVED_ITEM_STATES, JobKind

log = logging.getLogger(__name__)

_RETRYABLE = (httpx.HTTPError, ValueError)


@dataclass
class ItemOutcome:
    status: str
    result: dict[str, Any] | None
    error_reason: str | None = None


def classify_error(exc: BaseException) -> str:
    """timeout | connection | rate_limit | api_error"""
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429:
        return "rate_limit"
    if isinstance(exc, httpx.TransportError):
        return "connection"
    return "api_error"


class LookupClient:
    def __init__(
        self,
        cfg: LookupConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cfg = cfg or load_settings().lookup
        self._sleep = sleep

    def _retrying(self) -> Retrying:
        return Retrying(
            reraise=True,
            retry=retry_if_exception_type(_RETRYABLE),
            stop=stop_after_attempt(max(1, self.cfg.max_attempts)),
            wait=wait_exponential(multiplier=self.cfg.backoff_base_seconds, exp_base=2),
            sleep=self._sleep,
            before_sleep=before_sleep_log(log, logging.WARNING),
        )

    def _post(self, path: str, payload: dict[str, Any]) -> Any:
        with httpx.Client(timeout=self.cfg.timeout_seconds) as client:
            resp = client.post(
                f"{self.cfg.api_url}{path}",
                json=payload,
                headers={"Accept": "application/json"},
            )
        resp.raise_for_status()
        return resp.json()

    def _error_message(self, kind: str, action: str) -> str:
        if kind == "timeout":
            return f"Request timed out after {self.cfg.timeout_seconds:g} seconds"
        if kind == "connection":
            return "Unable to connect to email lookup service"
        if kind == "rate_limit":
            return "Rate limit exceeded - too many requests"
        return f"Failed to {action} email due to API error"

    def find(self, full_name: str, domain: str, role: str | None = None) -> FindResult:
        payload: dict[str, Any] = {"names": [full_name], "domain": domain}
        if role:
            payload["role"] = role
        try:
            data = self._retrying()(self._post, "/find", payload)
        except _RETRYABLE as exc:
            kind = classify_error(exc)
            log.warning(
                "find lookup failed",
                extra={"full_name": full_name, "domain": domain, "error_kind": kind, "exc": str(exc)},
            )
            return FindResult(
                email=None,
                confidence=0,
                status="error",
                message=self._error_message(kind, "find"),
                error_kind=kind,
            )
        return normalize_find_payload(data)

    def verify(self, email: str) -> VerifyResult:
        e = (email or "").strip()
        if not e:
            return VerifyResult(email=email, status="error", confidence=0, reason="Invalid email address")
        try:
            data = self._retrying()(self._post, "/verify", {"email": e})
        except _RETRYABLE as exc:
            kind = classify_error(exc)
            log.warning(
                "verify lookup failed",
                extra={"email": e, "error_kind": kind, "exc": str(exc)},
            )
            return VerifyResult(
                email=e,
                status="error",
                confidence=0,
                reason=self._error_message(kind, "verify"),
                error_kind=kind,
            )
        return normalize_verify_payload(e, data)

    def run_item(self, kind: JobKind, item_input: dict[str, Any]) -> ItemOutcome:
        if kind == JobKind.FIND:
            res = self.find(
                item_input.get("full_name", ""),
                item_input.get("domain", ""),
                item_input.get("role"),
            )
            return find_outcome(res)
        res = self.verify(item_input.get("email", ""))
        return verify_outcome(res)


def find_outcome(res: FindResult) -> ItemOutcome:
    if res.status == "error":
        return ItemOutcome(ITEM_ERROR, res.to_dict(), res.message or "Lookup failed")
    status = "found" if res.status == "valid" and res.email else "not_found"
    return ItemOutcome(status, res.to_dict())


def verify_outcome(res: VerifyResult) -> ItemOutcome:
    if res.status == ITEM_ERROR:
        return ItemOutcome(ITEM_ERROR, res.to_dict(), res.reason or "Verification failed")
    status = (res.status or "").strip()
    # The item row uses pending/processing for its own lifecycle.
    if not status or status in RESERVED_ITEM_STATES:
        status = "unknown"
    return ItemOutcome(status, res.to_dict())


__all__ = [
    "ItemOutcome",
    "LookupClient",
    "classify_error",
    "find_outcome",
    "verify_outcome",
]
