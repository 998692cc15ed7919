import hashlib
import hmac
import json
import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

import httpx

logger = logging.getLogger(__name__)

API_PREFIX = "/api/workers"

# Server answers with these when the lease is gone (expired, cancelled, taken over)
LEASE_LOST_STATUSES = (404, 409)

class WorkerClient:
    """
    Thin async client for the worker protocol.
    Transport and HTTP errors are logged and reported as None/False, never raised.
    """

    def __init__(
        self,
        base_url: str,
        worker_id: str,
        shared_secret: Optional[str] = None,
        hostname: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.worker_id = worker_id
        self.shared_secret = shared_secret
        self.hostname = hostname
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    @staticmethod
    def _serialize_body(json_body: Dict[str, Any]) -> bytes:
        # Stable encoding keeps signatures deterministic and payloads compact.
        return json.dumps(json_body, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")

    def _build_headers(self, body: bytes) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.shared_secret:
            headers["X-Worker-Signature"] = hmac.new(
                self.shared_secret.encode("utf-8"),
                body,
                hashlib.sha256,
            ).hexdigest()
        return headers

    async def _post(self, path: str, json_body: Dict[str, Any]) -> httpx.Response:
        content = self._serialize_body(json_body)
        return await self.client.post(f"{API_PREFIX}{path}", content=content, headers=self._build_headers(content))

    async def _call(self, action: str, path: str, json_body: Dict[str, Any]) -> Optional[httpx.Response]:
        try:
            resp = await self._post(path, json_body)
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as e:
            logger.warning(
                "%s rejected for worker=%s status=%s body=%s",
                action, self.worker_id, e.response.status_code, e.response.text[:200],
            )
            raise
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("%s failed for worker=%s: %s", action, self.worker_id, e)
            return None

    async def _ok(self, action: str, path: str, json_body: Dict[str, Any]) -> bool:
        try:
            return await self._call(action, path, json_body) is not None
        except httpx.HTTPStatusError:
            return False

    # ---- Worker lifecycle ----

    async def register(
        self,
        queues: List[str],
        max_concurrent_jobs: int = 5,
        process_id: Optional[int] = None,
        version: Optional[str] = None,
        environment: str = "development",
    ) -> bool:
        return await self._ok("Register", "/register", {
            "worker_id": self.worker_id,
            "hostname": self.hostname or "unknown",
            "queues": list(queues),
            "max_concurrent_jobs": max_concurrent_jobs,
            "process_id": process_id,
            "version": version,
            "environment": environment,
        })

    async def worker_heartbeat(self, active_jobs: int = 0) -> bool:
        return await self._ok("Worker heartbeat", f"/{self.worker_id}/heartbeat", {"active_jobs": active_jobs})

    async def stop(self, graceful: bool = False) -> bool:
        return await self._ok("Stop", f"/{self.worker_id}/stop", {"graceful": graceful})

    # ---- Jobs ----

    async def poll(self, queues: Optional[List[str]] = None, lease_duration: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """
        Polls for a job. Returns {"job", "lease_token", "expires_at"} or None.
        """
        payload: Dict[str, Any] = {"worker_id": self.worker_id, "hostname": self.hostname}
        if queues:
            payload["queues"] = list(queues)
        if lease_duration:
            payload["lease_duration_seconds"] = lease_duration

        try:
            resp = await self._call("Poll", "/poll", payload)
        except httpx.HTTPStatusError:
            return None
        if resp is None:
            return None

        try:
            return resp.json().get("data") or None
        except ValueError as e:
            logger.error("Poll returned malformed JSON for worker=%s: %s", self.worker_id, e)
            return None

    async def heartbeat(
        self,
        job_id: UUID,
        lease_token: UUID,
        extend_seconds: int = 60,
        progress: Optional[Dict[str, Any]] = None,
    ) -> Optional[bool]:
        """
        Renews a job lease.
        True when renewed, False when the server rejected the lease (lost),
        None when the request itself failed and may be retried.
        """
        body: Dict[str, Any] = {"lease_token": str(lease_token), "extend_seconds": extend_seconds}
        if progress:
            body.update({k: v for k, v in progress.items() if v is not None})

        try:
            resp = await self._call("Heartbeat", f"/jobs/{job_id}/heartbeat", body)
        except httpx.HTTPStatusError as e:
            return False if e.response.status_code in LEASE_LOST_STATUSES else None
        return True if resp is not None else None

    async def complete(self, job_id: UUID, lease_token: UUID, result: Any = None) -> bool:
        return await self._ok("Complete", f"/jobs/{job_id}/complete", {
            "lease_token": str(lease_token),
            "result": result,
        })

    async def fail(
        self,
        job_id: UUID,
        lease_token: UUID,
        error: str,
        error_details: Optional[Dict[str, Any]] = None,
        retryable: bool = True,
    ) -> bool:
        return await self._ok("Fail", f"/jobs/{job_id}/fail", {
            "lease_token": str(lease_token),
            "error": error,
            "error_details": error_details,
            "retryable": retryable,
        })

    async def close(self):
        await self.client.aclose()
