# bulkjobs/api/deps.py
from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import APIKeyHeader

from bulkjobs.config import AppConfig, load_settings
from bulkjobs.exceptions import OwnerRejected
from bulkjobs.queueing.dispatch import Dispatcher
from bulkjobs.quota import QuotaProvider, default_quota_provider
from bulkjobs.recovery import RecoverySweep
from bulkjobs.store import JobStore
from bulkjobs.submission import SubmissionService

# Header used for admin/API-key auth on the recovery endpoint.
# Example:  x-admin-api-key: supersecret
api_key_header = APIKeyHeader(name="x-admin-api-key", auto_error=False)


@lru_cache(maxsize=1)
def get_settings() -> AppConfig:
    return load_settings()


@lru_cache(maxsize=1)
def get_store() -> JobStore:
    return JobStore()


@lru_cache(maxsize=1)
def get_dispatcher() -> Dispatcher:
    return Dispatcher(get_settings().queue, store=get_store())


@lru_cache(maxsize=1)
def get_quota() -> QuotaProvider:
    return default_quota_provider(get_settings().quota)


def get_submission(
    store: JobStore = Depends(get_store),
    quota: QuotaProvider = Depends(get_quota),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    settings: AppConfig = Depends(get_settings),
) -> SubmissionService:
    return SubmissionService(store, quota, dispatcher, max_items=settings.max_items)


def get_recovery(
    store: JobStore = Depends(get_store),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    settings: AppConfig = Depends(get_settings),
) -> RecoverySweep:
    return RecoverySweep(store, dispatcher, settings.recovery)


def get_owner(
    x_user_id: str | None = Header(default=None),
    settings: AppConfig = Depends(get_settings),
) -> str:
    """
    Resolve the calling owner from the x-user-id header.

    In dev mode a missing header falls back to DEV_USER_ID; in any other
    mode it is rejected with 401.
    """
    owner = (x_user_id or "").strip()
    if owner:
        return owner
    if settings.auth.mode in {"dev", "none"} and settings.auth.dev_user_id:
        return settings.auth.dev_user_id
    raise OwnerRejected("Unauthorized")


def require_admin(
    api_key: str | None = Depends(api_key_header),
    settings: AppConfig = Depends(get_settings),
) -> None:
    """
    API key check for admin routes.

    If ADMIN_API_KEY is unset/empty, auth is effectively disabled (useful for
    local dev). Otherwise the caller must supply a matching x-admin-api-key
    header or receive 401.
    """
    configured_key = settings.auth.admin_api_key
    if configured_key and api_key != configured_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin API key",
        )
