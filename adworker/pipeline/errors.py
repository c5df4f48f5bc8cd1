"""
Exception hierarchy for the ad generation pipeline.

Everything raised by the pipeline derives from PipelineError so the
orchestrator boundary and the HTTP routers can tell domain failures apart
from programming errors.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for pipeline errors."""


# ── Stage failures ───────────────────────────────────────────────────────────

class StageError(PipelineError):
    """A single pipeline stage could not produce its output."""

    def __init__(self, stage, message: str):
        super().__init__(message)
        self.stage = stage


class StageInputMissingError(StageError):
    def __init__(self, stage):
        super().__init__(stage, f"No input URL for stage: {getattr(stage, 'value', stage)}")


class StageExecutionError(StageError):
    """Raised by the executor once every attempt has failed."""

    def __init__(self, stage, attempts: int, last_error: Optional[BaseException]):
        detail = str(last_error) if last_error else "unknown error"
        name = getattr(stage, "value", stage)
        super().__init__(stage, f"Stage {name} failed after {attempts} attempt(s): {detail}")
        self.attempts = attempts
        self.last_error = last_error


# ── Switchboard ──────────────────────────────────────────────────────────────

class SwitchboardError(PipelineError):
    """The switchboard could not map a stage to a runnable model."""


class ModelNotConfiguredError(SwitchboardError):
    def __init__(self, stage):
        super().__init__(f"No active model found for stage: {getattr(stage, 'value', stage)}")
        self.stage = stage


class UnregisteredModelError(SwitchboardError):
    def __init__(self, model_name: str):
        super().__init__(f"No adapter registered for model: {model_name}")
        self.model_name = model_name


class ModelStageMismatchError(SwitchboardError):
    def __init__(self, model_name: str, configured_stage, adapter_stage):
        super().__init__(
            f"Model {model_name} is configured for {getattr(configured_stage, 'value', configured_stage)} "
            f"but its adapter serves {getattr(adapter_stage, 'value', adapter_stage)}"
        )
        self.model_name = model_name


# ── Credits ──────────────────────────────────────────────────────────────────

class LedgerError(PipelineError):
    """A credit balance mutation was rejected or could not be performed."""


class InsufficientCreditsError(LedgerError):
    def __init__(self, user_id: str, required: int, available: Optional[int] = None):
        msg = f"Insufficient credits for user {user_id}: {required} required"
        if available is not None:
            msg += f", {available} available"
        super().__init__(msg)
        self.user_id = user_id
        self.required = required
        self.available = available


# ── Jobs ─────────────────────────────────────────────────────────────────────

class JobNotFoundError(PipelineError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobStateError(PipelineError):
    """The requested operation is not allowed in the job's current status."""


class InvalidStageTransition(PipelineError):
    """A stage record update would break the pipeline's ordering rules."""
