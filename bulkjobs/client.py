"""
Thin HTTP client for the bulk jobs API, used by the status poller and the CLI.
"""

from __future__ import annotations

from typing import Any

import httpx

API_PREFIX = "/api/v1/bulk"


class JobsClient:
    def __init__(
        self,
        base_url: str,
        owner: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.owner = owner
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"x-user-id": owner},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> JobsClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = self._http.request(method, f"{API_PREFIX}{path}", **kwargs)
        resp.raise_for_status()
        return resp.json()

    def submit(self, kind: str, items: list[Any], label: str | None = None) -> str:
        body: dict[str, Any] = {"kind": kind, "items": items}
        if label:
            body["label"] = label
        return self._request("POST", "/jobs", json=body)["job_id"]

    def get_job(self, job_id: str) -> dict[str, Any]:
        return self._request("GET", f"/jobs/{job_id}")

    def list_jobs(self, limit: int = 10, kind: str | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": limit}
        if kind:
            params["kind"] = kind
        return self._request("GET", "/jobs", params=params)["jobs"]

    def stop_job(self, job_id: str) -> dict[str, Any]:
        return self._request("POST", f"/jobs/{job_id}/stop")

    def stop_all(self) -> int:
        return int(self._request("POST", "/jobs/stop")["stopped"])


__all__ = ["JobsClient", "API_PREFIX"]
