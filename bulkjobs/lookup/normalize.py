"""
Map raw lookup-service payloads onto FindResult / VerifyResult.

The service is loose about where it puts fields: the interesting part may sit
at the top level or be nested under `result`, `valid` or `details`. These
helpers pick the first typed value found, in the same precedence the service
documents.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Literal

FindStatus = Literal["valid", "invalid", "error"]

_FOUND = {"valid", "found", "success"}
_NOT_FOUND = {"invalid", "not_found", "failed"}
_SMTP_ALL_MX_FAILED = "smtp failed for all mx records"


@dataclass
class FindResult:
    email: str | None
    confidence: float
    status: FindStatus
    message: str | None = None
    catch_all: bool | None = None
    domain: str | None = None
    mx: str | None = None
    user_name: str | None = None
    connections: int | None = None
    time_exec: float | None = None
    ver_ops: int | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class VerifyResult:
    email: str
    status: str
    confidence: float
    deliverable: bool = False
    disposable: bool = False
    role_account: bool = False
    reason: str | None = None
    catch_all: bool = False
    domain: str | None = None
    mx: str | None = None
    user_name: str | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _first(sources: list[dict[str, Any]], key: str, typ: type | tuple[type, ...]) -> Any:
    for src in sources:
        value = src.get(key)
        # bool is an int subclass; numeric fields must not pick up flags
        if isinstance(value, typ) and (typ is bool or not isinstance(value, bool)):
            return value
    return None


def _as_dict(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def normalize_find_payload(data: Any) -> FindResult:
    if not isinstance(data, dict):
        data = {}
    nested = _as_dict(data.get("result"))
    payload = nested if nested is not None else data
    sources = [payload, data]

    raw_status = _first(sources, "status", str)
    email = payload.get("email") if isinstance(payload.get("email"), str) else None
    email = (email or "").strip() or None

    status: FindStatus
    if email:
        status = "valid"
    elif raw_status:
        s = raw_status.strip().lower()
        if s in _FOUND:
            status = "valid"
        elif s in _NOT_FOUND:
            status = "invalid"
        else:
            status = "error"
    else:
        status = "invalid"

    confidence = _first([payload], "confidence", (int, float))
    if confidence is None:
        confidence = 95 if status == "valid" else 0

    message = _first([payload], "message", str)
    if message is None:
        message = {
            "valid": "Email found",
            "invalid": "No email found",
        }.get(status, "Email search completed")

    return FindResult(
        email=email,
        confidence=confidence,
        status=status,
        message=message,
        catch_all=_first(sources, "catch_all", bool),
        domain=_first(sources, "domain", str),
        mx=_first(sources, "mx", str),
        user_name=_first(sources, "user_name", str),
        connections=_first(sources, "connections", int),
        time_exec=_first(sources, "time_exec", (int, float)),
        ver_ops=_first(sources, "ver_ops", int),
    )


def normalize_verify_payload(email: str, data: Any) -> VerifyResult:
    if not isinstance(data, dict):
        data = {}
    valid = _as_dict(data.get("valid"))
    details = _as_dict(data.get("details"))
    result = _as_dict(data.get("result"))
    sources = [s for s in (valid, details) if s is not None] + [data]

    raw_status = None
    for candidate in (
        valid.get("status") if valid else None,
        details.get("status") if details else None,
        result.get("status") if result else None,
        data.get("email_status"),
        data.get("status"),
    ):
        if isinstance(candidate, str) and candidate.strip():
            raw_status = candidate
            break
    status = raw_status.strip().lower() if raw_status else "unknown"

    connections = _first(sources, "connections", int)
    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        if connections is not None:
            confidence = max(0, min(100, connections * 20))
        else:
            confidence = 0

    reason = _first(sources, "message", str)
    if reason is None and isinstance(data.get("error"), str):
        reason = data["error"]

    if status == "unknown" and reason and _SMTP_ALL_MX_FAILED in reason.lower():
        status = "risky"
        if confidence == 0:
            confidence = 50

    return VerifyResult(
        email=email,
        status=status,
        confidence=confidence,
        deliverable=status == "valid",
        disposable=bool(_first(sources, "disposable", bool)),
        role_account=bool(_first(sources, "role_account", bool)),
        reason=reason,
        catch_all=bool(_first(sources, "catch_all", bool)),
        domain=_first(sources, "domain", str),
        mx=_first(sources, "mx", str),
        user_name=_first(sources, "user_name", str),
    )


__all__ = [
    "FindStatus",
    "FindResult",
    "VerifyResult",
    "normalize_find_payload",
    "normalize_verify_payload",
]
