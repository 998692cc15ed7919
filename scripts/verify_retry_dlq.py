#!/usr/bin/env python3
"""
Drives a job through two failed attempts against a running API and checks
that it lands in the dead-letter queue.

    AGENCY_JOBS_ADMIN_API_KEY=... python scripts/verify_retry_dlq.py
"""
import asyncio
import os
import uuid

import httpx

from jobworker.client import WorkerClient

API_URL = os.environ.get("API_URL", "http://localhost:8000")
ADMIN_KEY = os.environ.get("AGENCY_JOBS_ADMIN_API_KEY", "")
SHARED_SECRET = os.environ.get("AGENCY_JOBS_WORKER_SHARED_SECRET")

async def poll_for(worker: WorkerClient, queue: str, job_id: str, attempts: int = 10):
    for _ in range(attempts):
        leased = await worker.poll([queue])
        if leased and leased["job"]["id"] == job_id:
            return leased
        await asyncio.sleep(1)
    return None

async def verify_retry_dlq():
    suffix = uuid.uuid4().hex[:8]
    queue = f"retry-demo-{suffix}"
    dlq = f"{queue}-dlq"
    admin = {"X-Admin-Key": ADMIN_KEY}

    async with httpx.AsyncClient(base_url=API_URL) as client:
        # 0. Queue with a fast backoff and a dead-letter target
        print(f"0. Creating queue {queue} -> {dlq}...")
        for name, extra in ((dlq, {}), (queue, {"dead_letter_queue_name": dlq})):
            resp = await client.post("/api/jobs/queues", headers=admin, json={
                "name": name,
                "default_max_attempts": 2,
                "retry_delay_base_seconds": 1,
                "retry_delay_max_seconds": 2,
                **extra,
            })
            resp.raise_for_status()

        # 1. Job with two attempts
        print("1. Creating job...")
        resp = await client.post("/api/jobs", headers=admin, json={
            "job_type": "fail_test",
            "queue": queue,
            "payload": {"task": "fail_test"},
        })
        resp.raise_for_status()
        job_id = resp.json()["data"]["id"]
        print(f"   Job created: {job_id}")

        worker = WorkerClient(API_URL, worker_id=f"worker-dlq-{suffix}", shared_secret=SHARED_SECRET)
        try:
            for attempt in (1, 2):
                print(f"2.{attempt} Leasing attempt {attempt}...")
                leased = await poll_for(worker, queue, job_id)
                if not leased:
                    print(f"   FAILURE: could not lease job for attempt {attempt}")
                    return
                await worker.fail(job_id, leased["lease_token"], f"Simulated failure {attempt}")

                job = (await client.get(f"/api/jobs/{job_id}", headers=admin)).json()["data"]
                print(f"   status={job['status']} attempts={job['attempt_count']} queue={job['queue_name']}")
        finally:
            await worker.close()

        if job["status"] == "failed" and job["queue_name"] == dlq:
            print("SUCCESS: job dead-lettered after exhausting retries")
        else:
            print(f"FAILURE: expected failed in {dlq}, got {job['status']} in {job['queue_name']}")

if __name__ == "__main__":
    asyncio.run(verify_retry_dlq())
