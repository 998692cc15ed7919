#!/usr/bin/env python3
"""
Example worker process.

    API_URL=http://localhost:8000 QUEUES=default,emails python scripts/run_worker.py
"""
import asyncio
import logging
import os
import random

from jobworker import JobContext, PermanentJobError, Worker

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger("run_worker")

worker = Worker(
    os.environ.get("API_URL", "http://localhost:8000"),
    os.environ.get("WORKER_ID", f"example-worker-{os.getpid()}"),
    queues=os.environ.get("QUEUES", "default").split(","),
    shared_secret=os.environ.get("AGENCY_JOBS_WORKER_SHARED_SECRET"),
    max_concurrent_jobs=int(os.environ.get("MAX_CONCURRENT_JOBS", "5")),
)

async def timing(ctx: JobContext, next_call):
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        return await next_call(ctx)
    finally:
        logger.info(f"{ctx.job_type} {ctx.job_id} took {loop.time() - started:.2f}s")

worker.add_middleware(timing)

@worker.handler("send_email")
async def send_email(ctx: JobContext):
    if "to" not in ctx.payload:
        raise PermanentJobError("payload.to is required")
    await asyncio.sleep(0.2)
    return {"sent_to": ctx.payload["to"]}

@worker.handler("generate_report")
async def generate_report(ctx: JobContext):
    pages = int(ctx.payload.get("pages", 5))
    for page in range(1, pages + 1):
        await asyncio.sleep(0.5)
        ctx.report_progress(page, pages, f"Rendered page {page}")
    if random.random() < 0.1:
        raise RuntimeError("Renderer crashed")
    return {"pages": pages}

worker.on("job_failed", lambda ctx, outcome: logger.warning(f"{ctx.job_id} ended as {outcome}"))

if __name__ == "__main__":
    asyncio.run(worker.run())
