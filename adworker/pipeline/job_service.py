"""
Job admission and the user-facing job surface.

Creation flow:
  1. Check the user has CREDITS_PER_JOB credits
  2. Insert the job row (pending, credits_used set)
  3. Deduct credits; if that fails the row is deleted again
  4. Enqueue; the response returns before any stage runs

Everything else here is read/cancel/delete scoped by the owning user.
"""

import os
import logging
import uuid
from typing import Optional

from adworker import metrics

from .errors import InsufficientCreditsError, JobNotFoundError, JobStateError
from .models import (
    MAX_UPLOAD_BYTES,
    CreateJobResponse,
    Job,
    JobStatus,
    JobStatusResponse,
    JobUpdate,
    PipelineVersion,
    UploadResponse,
    Vibe,
)
from .storage import PRESIGN_TTL, upload_key

logger = logging.getLogger(__name__)

CREDITS_PER_JOB = int(os.getenv("CREDITS_PER_JOB", "1"))
DEFAULT_PIPELINE_VERSION = os.getenv("DEFAULT_PIPELINE_VERSION", PipelineVersion.CLASSIC.value)
ESTIMATED_DURATION_SECONDS = 60

ALLOWED_UPLOAD_TYPES = {"image/jpeg", "image/png", "image/webp"}


class JobService:
    def __init__(
        self,
        job_store,
        ledger,
        queue,
        content_store,
        credits_per_job: int = CREDITS_PER_JOB,
        default_pipeline: str = DEFAULT_PIPELINE_VERSION,
    ):
        self.job_store = job_store
        self.ledger = ledger
        self.queue = queue
        self.content_store = content_store
        self.credits_per_job = credits_per_job
        self.default_pipeline = PipelineVersion(default_pipeline)

    # ── Create ────────────────────────────────────────────────────────────

    async def create_job(
        self,
        user_id: str,
        input_image_key: str,
        vibe,
        pipeline_version: Optional[PipelineVersion] = None,
    ) -> CreateJobResponse:
        credits = self.credits_per_job

        balance = await self.ledger.get_balance(user_id)
        if balance < credits:
            raise InsufficientCreditsError(user_id, credits, balance)

        job = await self.job_store.create(Job(
            id=str(uuid.uuid4()),
            user_id=user_id,
            input_image_url=self.content_store.public_url(input_image_key),
            vibe=Vibe(vibe),
            pipeline_version=PipelineVersion(pipeline_version or self.default_pipeline),
            credits_used=credits,
        ))

        try:
            await self.ledger.deduct(user_id, credits, job.id)
        except Exception as e:
            logger.error(f"[{job.id}] Credit deduction failed, rolling back job row: {e}")
            try:
                await self.job_store.delete(job.id)
            except Exception as cleanup_error:
                logger.error(f"[{job.id}] Rollback delete failed: {cleanup_error}", exc_info=True)
            raise

        position = self.queue.enqueue(job.id)
        logger.info(
            f"[{job.id}] Created for user {user_id} "
            f"(vibe={job.vibe.value}, pipeline={job.pipeline_version.value}, queue pos={position})"
        )
        return CreateJobResponse(job_id=job.id, estimated_duration_seconds=ESTIMATED_DURATION_SECONDS)

    # ── Read ──────────────────────────────────────────────────────────────

    async def _owned(self, job_id: str, user_id: str) -> Job:
        job = await self.job_store.get(job_id)
        if job is None or job.user_id != user_id:
            raise JobNotFoundError(job_id)
        return job

    async def get_job_status(self, job_id: str, user_id: str) -> JobStatusResponse:
        return JobStatusResponse.from_job(await self._owned(job_id, user_id))

    async def list_jobs(self, user_id: str, limit: int = 50) -> list[Job]:
        return await self.job_store.list_for_user(user_id, limit=limit)

    # ── Cancel / delete ───────────────────────────────────────────────────

    async def cancel_job(self, job_id: str, user_id: str) -> Job:
        """Cancel a job that has not started yet and refund its credits."""
        job = await self._owned(job_id, user_id)
        if job.status != JobStatus.PENDING or job_id in self.queue.in_flight_ids():
            raise JobStateError(f"Job {job_id} has already started and cannot be cancelled")

        self.queue.discard(job_id)
        await self.job_store.update(
            job_id, JobUpdate(status=JobStatus.CANCELLED, error_message="Cancelled by user")
        )
        job = job.model_copy(update={"status": JobStatus.CANCELLED, "error_message": "Cancelled by user"})
        logger.info(f"[{job_id}] Cancelled by user {user_id}")

        if job.credits_used > 0:
            try:
                await self.ledger.refund(user_id, job.credits_used, job_id)
            except Exception as e:
                metrics.inc_counter("jobs.refund_failed")
                logger.error(f"[{job_id}] Refund after cancellation failed: {e}", exc_info=True)
        return job

    async def delete_job(self, job_id: str, user_id: str) -> dict:
        """
        Delete a job, its stored files and its row.

        Processing jobs are refused; pending ones are cancelled (and refunded)
        first. Storage errors are reported but do not keep the row alive;
        the orphan cleanup catches whatever is left.
        """
        job = await self._owned(job_id, user_id)
        if job.status == JobStatus.PROCESSING or job_id in self.queue.in_flight_ids():
            raise JobStateError(f"Job {job_id} is processing and cannot be deleted")
        if job.status == JobStatus.PENDING:
            job = await self.cancel_job(job_id, user_id)

        urls = [job.input_image_url] + [record.output_url for record in job.stages.values()]
        keys = list(dict.fromkeys(
            key for key in (self.content_store.key_from_url(url) for url in urls) if key
        ))

        result = {"deleted": [], "errors": []}
        if keys:
            result = await self.content_store.delete_objects(keys)
            if result["errors"]:
                logger.warning(f"[{job_id}] {len(result['errors'])} file(s) could not be deleted")

        await self.job_store.delete(job_id)
        logger.info(f"[{job_id}] Deleted ({len(result['deleted'])} file(s) removed)")
        return {
            "job_id": job_id,
            "deleted_files": len(result["deleted"]),
            "errors": result["errors"],
        }

    # ── Uploads ───────────────────────────────────────────────────────────

    async def create_upload_url(
        self, user_id: str, filename: str, content_type: str, file_size: int
    ) -> UploadResponse:
        if content_type not in ALLOWED_UPLOAD_TYPES:
            raise ValueError("Invalid file type. Only JPEG, PNG, and WebP images are allowed.")
        if file_size <= 0 or file_size > MAX_UPLOAD_BYTES:
            raise ValueError(f"File size must be between 1 byte and {MAX_UPLOAD_BYTES // (1024 * 1024)}MB.")

        key = upload_key(user_id, filename)
        upload_url = await self.content_store.presigned_upload_url(key, content_type, PRESIGN_TTL)
        logger.info(f"Presigned upload for user {user_id}: {key}")
        return UploadResponse(
            upload_url=upload_url,
            key=key,
            public_url=self.content_store.public_url(key),
        )
