"""
Stage executor: runs one stage with bounded retry.

An attempt is the model call plus the copy of its output into permanent
storage; either half failing (or the attempt timing out) costs one attempt.
Backoff between attempts is exponential with jitter:

    delay = STAGE_RETRY_BASE_DELAY * 2^(attempt-1) + uniform(0, 1)
"""

import os
import time
import random
import asyncio
import logging

from adworker import metrics

from .adapters import ModelAdapter
from .errors import StageExecutionError, StageInputMissingError
from .models import Stage, StageInput, StageResult
from .storage import job_output_key

logger = logging.getLogger(__name__)

STAGE_MAX_RETRIES = int(os.getenv("STAGE_MAX_RETRIES", "2"))
STAGE_RETRY_BASE_DELAY = float(os.getenv("STAGE_RETRY_BASE_DELAY", "2"))
STAGE_ATTEMPT_TIMEOUT_SECONDS = float(os.getenv("STAGE_ATTEMPT_TIMEOUT_SECONDS", "600"))
JITTER_MAX = 1.0

STAGE_EXTENSIONS = {
    Stage.ANALYZER: "jpg",         # passthrough of the original image
    Stage.EXTRACTOR: "png",        # transparent PNG
    Stage.SET_DESIGNER: "png",
    Stage.CINEMATOGRAPHER: "mp4",
}


class StageExecutor:
    def __init__(
        self,
        content_store,
        max_retries: int = STAGE_MAX_RETRIES,
        base_delay: float = STAGE_RETRY_BASE_DELAY,
        attempt_timeout: float = STAGE_ATTEMPT_TIMEOUT_SECONDS,
    ):
        self.content_store = content_store
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.attempt_timeout = attempt_timeout

    def _backoff(self, attempt: int) -> float:
        delay = self.base_delay * (2 ** (attempt - 1))
        if delay:
            delay += random.uniform(0, JITTER_MAX)
        return delay

    async def _attempt(self, stage_input: StageInput, adapter: ModelAdapter) -> StageResult:
        output = await adapter.execute(stage_input.to_adapter_input())
        key = job_output_key(stage_input.job_id, stage_input.stage, STAGE_EXTENSIONS[stage_input.stage])
        permanent_url = await self.content_store.copy_from_url(output.output_url, key)
        return StageResult(
            output_url=permanent_url,
            source_url=output.output_url,
            metadata=output.metadata,
        )

    async def execute(self, stage_input: StageInput, adapter: ModelAdapter) -> StageResult:
        """
        Invoke `adapter` for `stage_input`, retrying up to max_retries times.

        Returns the StageResult with the permanent output URL. Raises
        StageExecutionError once every attempt has failed.
        """
        job_id = stage_input.job_id
        stage = stage_input.stage
        if not stage_input.input_url:
            raise StageInputMissingError(stage)

        total = self.max_retries + 1
        last_error = None

        for attempt in range(1, total + 1):
            started = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    self._attempt(stage_input, adapter), timeout=self.attempt_timeout
                )
            except asyncio.TimeoutError:
                last_error = TimeoutError(f"attempt timed out after {self.attempt_timeout}s")
            except Exception as e:
                last_error = e
            else:
                elapsed_ms = (time.monotonic() - started) * 1000
                metrics.record_latency(f"stage.{stage.value}", elapsed_ms)
                logger.info(
                    f"[{job_id}] {stage.value} done with {adapter.model_name} "
                    f"on attempt {attempt}/{total} ({elapsed_ms:.0f}ms)"
                )
                return result.model_copy(update={"attempts": attempt})

            metrics.inc_counter("stages.attempt_failed")
            retries_left = total - attempt
            logger.warning(
                f"[{job_id}] {stage.value} attempt {attempt}/{total} failed: {last_error} "
                f"({retries_left} retries left)"
            )
            if retries_left:
                await asyncio.sleep(self._backoff(attempt))

        metrics.record_error("executor", type(last_error).__name__, str(last_error), job_id=job_id)
        raise StageExecutionError(stage, total, last_error)
