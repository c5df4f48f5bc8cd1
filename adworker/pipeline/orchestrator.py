"""
JobOrchestrator: drives one job through its stage sequence.

  classic:        extractor → set_designer → cinematographer
  product_aware:  analyzer → extractor → cinematographer

For each stage: resolve the active model, build prompts, persist the stage
as processing, run it through the executor, persist the permanent output.
The job row is written after every transition so the status surface always
reflects real progress.

A failed stage fails the job and refunds its credits. `run` never raises;
the queue only sees it return.
"""

import os
import logging
from datetime import timezone
from typing import Optional

from adworker import metrics
from adworker.prompts import prompts_for_stage

from .errors import InvalidStageTransition, StageInputMissingError
from .models import (
    Job,
    JobStatus,
    JobUpdate,
    Stage,
    StageInput,
    StageRecord,
    StageStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

COMPLETION_SAVE_ATTEMPTS = int(os.getenv("COMPLETION_SAVE_ATTEMPTS", "2"))


class JobOrchestrator:
    def __init__(self, job_store, switchboard, executor, ledger):
        self.job_store = job_store
        self.switchboard = switchboard
        self.executor = executor
        self.ledger = ledger

    # ── Entry point (queue runner) ────────────────────────────────────────

    async def run(self, job_id: str) -> None:
        try:
            await self._process(job_id)
        except Exception as e:
            logger.error(f"[{job_id}] Unhandled orchestrator error: {e}", exc_info=True)
            metrics.record_error("orchestrator", type(e).__name__, str(e), job_id=job_id)

    async def _process(self, job_id: str):
        job = await self.job_store.get(job_id)
        if job is None:
            logger.warning(f"[{job_id}] Job not found, skipping")
            return
        if job.status != JobStatus.PENDING:
            logger.info(f"[{job_id}] Job is {job.status.value}, not pending; skipping")
            return

        job = await self._start(job)

        stage: Optional[Stage] = None
        try:
            for stage in job.pipeline:
                job = await self._run_stage(job, stage)
        except Exception as e:
            logger.error(f"[{job_id}] Stage {stage.value if stage else '?'} failed: {e}")
            await self.fail_job(await self._reload(job), e, stage=stage)
            return

        await self._complete(job)

    async def _reload(self, job: Job) -> Job:
        # The stage record persisted as processing carries model_id and started_at.
        try:
            return await self.job_store.get(job.id) or job
        except Exception as e:
            logger.warning(f"[{job.id}] Could not reload job before failing it: {e}")
            return job

    # ── Transitions ───────────────────────────────────────────────────────

    async def _start(self, job: Job) -> Job:
        stages = {}
        for stage in Stage:
            if stage not in job.pipeline and job.stage(stage).status == StageStatus.PENDING:
                job = job.with_stage(stage, StageRecord(status=StageStatus.SKIPPED))
                stages[stage] = job.stage(stage)

        job = job.model_copy(update={"status": JobStatus.PROCESSING})
        await self.job_store.update(job.id, JobUpdate(status=JobStatus.PROCESSING, stages=stages))
        logger.info(
            f"[{job.id}] Processing ({job.pipeline_version.value}: "
            f"{' → '.join(s.value for s in job.pipeline)})"
        )
        return job

    def _stage_input_url(self, job: Job, stage: Stage) -> Optional[str]:
        previous = job.previous_stage(stage)
        if previous is None:
            return job.input_image_url
        return job.stage(previous).output_url

    async def _run_stage(self, job: Job, stage: Stage) -> Job:
        input_url = self._stage_input_url(job, stage)
        if not input_url:
            raise StageInputMissingError(stage)

        resolved = await self.switchboard.resolve(stage)
        prompts = prompts_for_stage(stage, job.vibe, job.product_description, job_id=job.id)

        running = StageRecord(
            status=StageStatus.PROCESSING,
            model_id=resolved.config.id,
            started_at=utcnow(),
        )
        job = job.with_stage(stage, running)
        await self.job_store.update(job.id, JobUpdate(stages={stage: running}))
        logger.info(f"[{job.id}] ▶ {stage.value} ({resolved.config.model_name})")

        result = await self.executor.execute(
            StageInput(
                job_id=job.id,
                stage=stage,
                input_url=input_url,
                config=resolved.config.config,
                prompt=prompts.prompt,
                negative_prompt=prompts.negative_prompt,
            ),
            resolved.adapter,
        )

        done = running.model_copy(update={
            "status": StageStatus.COMPLETED,
            "output_url": result.output_url,
            "completed_at": utcnow(),
        })
        job = job.with_stage(stage, done)
        changes = {"stages": {stage: done}}

        description = result.metadata.get("product_description") if stage == Stage.ANALYZER else None
        if description:
            job = job.model_copy(update={"product_description": description})
            changes["product_description"] = description

        await self.job_store.update(job.id, JobUpdate(**changes))
        logger.info(f"[{job.id}] ✓ {stage.value} → {result.output_url} ({result.attempts} attempt(s))")
        return job

    async def _complete(self, job: Job) -> Job:
        created_at = job.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        duration_ms = int((utcnow() - created_at).total_seconds() * 1000)
        update = JobUpdate(status=JobStatus.COMPLETED, total_duration_ms=duration_ms)

        for attempt in range(1, COMPLETION_SAVE_ATTEMPTS + 1):
            try:
                await self.job_store.update(job.id, update)
                break
            except Exception as e:
                logger.error(
                    f"[{job.id}] Failed to persist completion "
                    f"(attempt {attempt}/{COMPLETION_SAVE_ATTEMPTS}): {e}",
                    exc_info=True,
                )
        else:
            # Left processing; the recovery sweep finalizes it as completed later.
            return job

        metrics.inc_counter("jobs.completed")
        metrics.record_latency("job.total", duration_ms)
        logger.info(f"[{job.id}] ✅ Completed in {duration_ms / 1000:.1f}s")
        return job.model_copy(update={"status": JobStatus.COMPLETED, "total_duration_ms": duration_ms})

    def _all_stages_completed(self, job: Job) -> bool:
        return all(job.stage(s).status == StageStatus.COMPLETED for s in job.pipeline)

    async def fail_job(self, job: Job, error, stage: Optional[Stage] = None) -> Job:
        """
        Finalize `job` as failed and refund its credits.

        `stage` (default: the job's current stage) is marked failed with the
        error message. Never raises; persistence and refund errors are logged.

        A job whose every stage already completed delivered its video; it is
        finalized as completed instead, without a refund.
        """
        if job.is_terminal:
            logger.warning(f"[{job.id}] Already {job.status.value}, not failing it")
            return job
        if self._all_stages_completed(job):
            logger.warning(f"[{job.id}] Every stage completed, finalizing as completed instead of failing")
            return await self._complete(job)

        message = str(error) or type(error).__name__
        if stage is None:
            stage = job.current_stage

        stages = {}
        if stage is not None and job.stage(stage).status in (StageStatus.PENDING, StageStatus.PROCESSING):
            failed = job.stage(stage).model_copy(update={"status": StageStatus.FAILED, "error": message})
            try:
                job = job.with_stage(stage, failed)
                stages[stage] = failed
            except InvalidStageTransition as e:
                logger.warning(f"[{job.id}] Could not mark {stage.value} failed: {e}")

        job = job.model_copy(update={"status": JobStatus.FAILED, "error_message": message})
        try:
            await self.job_store.update(
                job.id, JobUpdate(status=JobStatus.FAILED, error_message=message, stages=stages)
            )
        except Exception as e:
            logger.error(f"[{job.id}] Failed to persist job failure: {e}", exc_info=True)

        metrics.inc_counter("jobs.failed")
        metrics.record_error("pipeline", type(error).__name__, message, job_id=job.id)
        logger.error(f"[{job.id}] ❌ Job failed: {message}")

        await self._refund(job)
        return job

    async def _refund(self, job: Job):
        if job.credits_used <= 0:
            return
        try:
            await self.ledger.refund(job.user_id, job.credits_used, job.id)
        except Exception as e:
            metrics.inc_counter("jobs.refund_failed")
            logger.error(
                f"[{job.id}] Refund of {job.credits_used} credit(s) to user {job.user_id} failed: {e}",
                exc_info=True,
            )
