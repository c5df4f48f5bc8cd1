"""
Stale job recovery.

The backlog and in-flight set live in memory, so a restart strands jobs:
  - `processing` rows whose orchestrator died with the process
  - `pending` rows that were waiting in the lost backlog

Run at startup and every RECOVERY_INTERVAL_SECONDS. A processing job is
failed (and refunded) once its row has not been touched for
STALE_JOB_TIMEOUT_SECONDS and this process is not running it. A pending job
that old which the queue does not know about is re-enqueued.
"""

import os
import asyncio
import logging
from datetime import timedelta

from .models import JobStatus, utcnow

logger = logging.getLogger(__name__)

STALE_JOB_TIMEOUT_SECONDS = int(os.getenv("STALE_JOB_TIMEOUT_SECONDS", "600"))
RECOVERY_INTERVAL_SECONDS = int(os.getenv("RECOVERY_INTERVAL_SECONDS", "300"))

INTERRUPTED_MESSAGE = "Job interrupted by a worker restart"


async def recover_stale_jobs(
    job_store,
    queue,
    orchestrator,
    stale_after_seconds: float = STALE_JOB_TIMEOUT_SECONDS,
) -> dict:
    """
    One reconciliation pass. Returns {'failed': [...], 'completed': [...], 'requeued': [...]}.

    A stale processing job whose stages all completed only missed its final
    save; it is finalized as completed rather than failed.
    """
    cutoff = utcnow() - timedelta(seconds=stale_after_seconds)
    stale = await job_store.list_by_status(
        [JobStatus.PROCESSING, JobStatus.PENDING], updated_before=cutoff
    )

    failed, completed, requeued = [], [], []
    in_flight = queue.in_flight_ids()

    for job in stale:
        if job.id in in_flight:
            continue

        if job.status == JobStatus.PROCESSING:
            logger.warning(f"[{job.id}] Stale processing job (last update {job.updated_at}), finalizing it")
            settled = await orchestrator.fail_job(job, RuntimeError(INTERRUPTED_MESSAGE))
            if settled.status == JobStatus.COMPLETED:
                completed.append(job.id)
            else:
                failed.append(job.id)
        elif job.status == JobStatus.PENDING and not queue.contains(job.id):
            logger.warning(f"[{job.id}] Pending job missing from the queue, re-enqueuing")
            queue.enqueue(job.id)
            requeued.append(job.id)

    if failed or completed or requeued:
        logger.info(
            f"Recovery: failed {len(failed)} stale job(s), completed {len(completed)}, "
            f"re-enqueued {len(requeued)}"
        )
    return {"failed": failed, "completed": completed, "requeued": requeued}


async def run_periodic_recovery(
    job_store,
    queue,
    orchestrator,
    interval_seconds: float = RECOVERY_INTERVAL_SECONDS,
    stale_after_seconds: float = STALE_JOB_TIMEOUT_SECONDS,
):
    """Background loop for the app lifespan. Cancel the task to stop it."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await recover_stale_jobs(job_store, queue, orchestrator, stale_after_seconds)
        except Exception as e:
            logger.error(f"Recovery sweep failed: {e}", exc_info=True)
