from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _getenv_int(name: str, default: int) -> int:
    v = os.getenv(name, str(default)).strip()
    try:
        return int(v)
    except ValueError as err:
        raise ValueError(f"Environment variable {name} must be an integer; got {v!r}") from err


def _getenv_float(name: str, default: float) -> float:
    v = os.getenv(name, str(default)).strip()
    try:
        return float(v)
    except ValueError as err:
        raise ValueError(f"Environment variable {name} must be a number; got {v!r}") from err


def _getenv_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip()


def _getenv_bool(name: str, default: bool) -> bool:
    """
    Read a loosely-typed boolean from the environment.

    Treats "1", "true", "yes", "on" (case-insensitive) as True;
    "0", "false", "no", "off", "" as False. If unset, returns default.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off", ""}:
        return False
    return True


# Load .env from project root if present
ROOT = Path(__file__).resolve().parents[1]
load_dotenv(ROOT / ".env", override=False)

DEFAULT_LOOKUP_API_URL = "http://server.mailsfinder.com:8081"


@dataclass(frozen=True)
class QueueConfig:
    queue_name: str
    rq_redis_url: str
    enabled: bool
    # -1 disables rq's horse timeout; the job lease and recovery sweep supervise runs.
    job_timeout_seconds: int


@dataclass(frozen=True)
class WorkerConfig:
    item_delay_seconds: float
    lease_seconds: int


@dataclass(frozen=True)
class RecoveryConfig:
    stale_after_seconds: int
    max_attempts: int
    on_list: bool


@dataclass(frozen=True)
class LookupConfig:
    api_url: str
    timeout_seconds: float
    max_attempts: int
    backoff_base_seconds: float


@dataclass(frozen=True)
class QuotaConfig:
    api_url: str
    dev_allowance: int


@dataclass(frozen=True)
class PollerConfig:
    base_delay_seconds: float
    max_delay_seconds: float


@dataclass(frozen=True)
class AuthConfig:
    mode: str
    dev_user_id: str
    admin_api_key: str


@dataclass(frozen=True)
class AppConfig:
    queue: QueueConfig
    worker: WorkerConfig
    recovery: RecoveryConfig
    lookup: LookupConfig
    quota: QuotaConfig
    poller: PollerConfig
    auth: AuthConfig
    max_items: int


def load_settings() -> AppConfig:
    queue = QueueConfig(
        queue_name=_getenv_str("BULK_QUEUE_NAME", "bulk"),
        rq_redis_url=_getenv_str("RQ_REDIS_URL", "redis://127.0.0.1:6379/0"),
        enabled=_getenv_bool("BULK_QUEUE_ENABLED", True),
        job_timeout_seconds=_getenv_int("BULK_JOB_TIMEOUT_SECONDS", -1),
    )
    worker = WorkerConfig(
        item_delay_seconds=_getenv_int("BULK_ITEM_DELAY_MS", 500) / 1000.0,
        lease_seconds=_getenv_int("BULK_LEASE_SECONDS", 300),
    )
    recovery = RecoveryConfig(
        stale_after_seconds=_getenv_int("BULK_STALE_AFTER_SECONDS", 600),
        max_attempts=_getenv_int("BULK_MAX_RECOVERY_ATTEMPTS", 3),
        on_list=_getenv_bool("BULK_RECOVER_ON_LIST", True),
    )
    lookup = LookupConfig(
        api_url=_getenv_str("LOOKUP_API_URL", DEFAULT_LOOKUP_API_URL).rstrip("/"),
        timeout_seconds=_getenv_float("LOOKUP_TIMEOUT_SECONDS", 30.0),
        max_attempts=_getenv_int("LOOKUP_MAX_ATTEMPTS", 3),
        backoff_base_seconds=_getenv_float("LOOKUP_BACKOFF_BASE_SECONDS", 2.0),
    )
    quota = QuotaConfig(
        api_url=_getenv_str("QUOTA_API_URL", ""),
        dev_allowance=_getenv_int("BULK_DEV_QUOTA", 1000),
    )
    poller = PollerConfig(
        base_delay_seconds=_getenv_float("POLL_BASE_SECONDS", 2.0),
        max_delay_seconds=_getenv_float("POLL_MAX_SECONDS", 30.0),
    )
    auth = AuthConfig(
        mode=_getenv_str("AUTH_MODE", "dev").lower(),
        dev_user_id=_getenv_str("DEV_USER_ID", "user_dev"),
        admin_api_key=_getenv_str("ADMIN_API_KEY", ""),
    )
    return AppConfig(
        queue=queue,
        worker=worker,
        recovery=recovery,
        lookup=lookup,
        quota=quota,
        poller=poller,
        auth=auth,
        max_items=_getenv_int("BULK_MAX_ITEMS", 10_000),
    )


__all__ = [
    "QueueConfig",
    "WorkerConfig",
    "RecoveryConfig",
    "LookupConfig",
    "QuotaConfig",
    "PollerConfig",
    "AuthConfig",
    "AppConfig",
    "load_settings",
    "DEFAULT_LOOKUP_API_URL",
]
