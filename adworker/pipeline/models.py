"""
Pydantic models and enums for the ad generation pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .errors import InvalidStageTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Statuses ─────────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class StageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Forward-only moves; completed/failed/skipped are final.
_STAGE_TRANSITIONS = {
    StageStatus.PENDING: {StageStatus.PROCESSING, StageStatus.FAILED, StageStatus.SKIPPED},
    StageStatus.PROCESSING: {StageStatus.COMPLETED, StageStatus.FAILED},
    StageStatus.COMPLETED: set(),
    StageStatus.FAILED: set(),
    StageStatus.SKIPPED: set(),
}


# ── Stages & pipelines ───────────────────────────────────────────────────────

class Stage(str, Enum):
    ANALYZER = "analyzer"                # product captioning (Florence-2)
    EXTRACTOR = "extractor"              # background removal (BiRefNet)
    SET_DESIGNER = "set_designer"        # scene composition (Flux Fill)
    CINEMATOGRAPHER = "cinematographer"  # image-to-video (Kling / Wan)


class PipelineVersion(str, Enum):
    CLASSIC = "classic"
    PRODUCT_AWARE = "product_aware"


PIPELINES: dict[PipelineVersion, tuple[Stage, ...]] = {
    PipelineVersion.CLASSIC: (Stage.EXTRACTOR, Stage.SET_DESIGNER, Stage.CINEMATOGRAPHER),
    PipelineVersion.PRODUCT_AWARE: (Stage.ANALYZER, Stage.EXTRACTOR, Stage.CINEMATOGRAPHER),
}


class Vibe(str, Enum):
    MINIMALIST = "minimalist"
    ECO_FRIENDLY = "eco_friendly"
    HIGH_ENERGY = "high_energy"
    LUXURY_NOIR = "luxury_noir"


class TransactionType(str, Enum):
    USAGE = "usage"
    REFUND = "refund"
    PURCHASE = "purchase"


# ── Job ──────────────────────────────────────────────────────────────────────

class StageRecord(BaseModel):
    status: StageStatus = StageStatus.PENDING
    output_url: Optional[str] = None
    error: Optional[str] = None
    model_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


def _blank_stages() -> dict:
    return {stage: StageRecord() for stage in Stage}


class Job(BaseModel):
    id: str
    user_id: str
    input_image_url: str
    vibe: Vibe
    status: JobStatus = JobStatus.PENDING
    pipeline_version: PipelineVersion = PipelineVersion.CLASSIC
    credits_used: int = Field(default=0, ge=0)
    product_description: Optional[str] = None
    error_message: Optional[str] = None
    total_duration_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    stages: dict[Stage, StageRecord] = Field(default_factory=_blank_stages)

    @property
    def pipeline(self) -> tuple[Stage, ...]:
        return PIPELINES[self.pipeline_version]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def stage(self, stage: Stage) -> StageRecord:
        return self.stages.get(stage) or StageRecord()

    def previous_stage(self, stage: Stage) -> Optional[Stage]:
        idx = self.pipeline.index(stage)
        return self.pipeline[idx - 1] if idx > 0 else None

    def with_stage(self, stage: Stage, record: StageRecord) -> "Job":
        """
        Return a copy of the job with `stage` replaced by `record`.

        Raises InvalidStageTransition if the move would regress a stage,
        start a stage before its predecessors completed, or run two stages
        at once.
        """
        current = self.stage(stage)
        if record.status != current.status:
            if record.status not in _STAGE_TRANSITIONS[current.status]:
                raise InvalidStageTransition(
                    f"{stage.value}: cannot move {current.status.value} -> {record.status.value}"
                )
        elif not _STAGE_TRANSITIONS[current.status] and record != current:
            raise InvalidStageTransition(f"{stage.value}: {current.status.value} record is final")

        if stage not in self.pipeline:
            if record.status not in (StageStatus.PENDING, StageStatus.SKIPPED):
                raise InvalidStageTransition(
                    f"{stage.value} is not part of the {self.pipeline_version.value} pipeline"
                )
        else:
            if record.status == StageStatus.SKIPPED:
                raise InvalidStageTransition(f"{stage.value} cannot be skipped in its own pipeline")
            if record.status in (StageStatus.PROCESSING, StageStatus.COMPLETED, StageStatus.FAILED):
                idx = self.pipeline.index(stage)
                for earlier in self.pipeline[:idx]:
                    if self.stage(earlier).status != StageStatus.COMPLETED:
                        raise InvalidStageTransition(
                            f"{stage.value} cannot start before {earlier.value} is completed"
                        )
            if record.status == StageStatus.PROCESSING:
                for other in self.pipeline:
                    if other != stage and self.stage(other).status == StageStatus.PROCESSING:
                        raise InvalidStageTransition(f"{other.value} is already processing")
            if record.status == StageStatus.COMPLETED and not record.output_url:
                raise InvalidStageTransition(f"{stage.value} cannot complete without an output URL")

        stages = dict(self.stages)
        stages[stage] = record
        return self.model_copy(update={"stages": stages})

    @property
    def progress_percentage(self) -> int:
        completed = sum(1 for s in self.pipeline if self.stage(s).status == StageStatus.COMPLETED)
        return round(100 * completed / len(self.pipeline))

    @property
    def current_stage(self) -> Optional[Stage]:
        if self.is_terminal:
            return None
        for s in self.pipeline:
            if self.stage(s).status == StageStatus.PROCESSING:
                return s
        if self.status == JobStatus.PROCESSING:
            for s in self.pipeline:
                if self.stage(s).status == StageStatus.PENDING:
                    return s
        return None


class JobUpdate(BaseModel):
    """Partial update for a job row. Only explicitly set fields are written."""

    status: Optional[JobStatus] = None
    error_message: Optional[str] = None
    total_duration_ms: Optional[int] = None
    product_description: Optional[str] = None
    stages: dict[Stage, StageRecord] = Field(default_factory=dict)


# ── Models & adapters ────────────────────────────────────────────────────────

class ModelConfig(BaseModel):
    id: str
    stage: Stage
    model_name: str
    is_active: bool = True
    priority: int = 0
    config: dict[str, Any] = Field(default_factory=dict)
    fallback_model_id: Optional[str] = None


class AdapterInput(BaseModel):
    job_id: str
    input_url: str
    config: dict[str, Any] = Field(default_factory=dict)
    prompt: Optional[str] = None
    negative_prompt: Optional[str] = None


class AdapterOutput(BaseModel):
    output_url: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class StageInput(BaseModel):
    job_id: str
    stage: Stage
    input_url: str
    config: dict[str, Any] = Field(default_factory=dict)
    prompt: Optional[str] = None
    negative_prompt: Optional[str] = None

    def to_adapter_input(self) -> AdapterInput:
        return AdapterInput(
            job_id=self.job_id,
            input_url=self.input_url,
            config=self.config,
            prompt=self.prompt,
            negative_prompt=self.negative_prompt,
        )


class StageResult(BaseModel):
    output_url: str       # permanent storage URL
    source_url: str       # transient provider URL
    metadata: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 1


# ── Credits ──────────────────────────────────────────────────────────────────

class CreditTransaction(BaseModel):
    user_id: str
    amount: int
    transaction_type: TransactionType
    related_job_id: Optional[str] = None
    external_payment_id: Optional[str] = None
    created_at: Optional[datetime] = None


# ── API Request / Response Models ────────────────────────────────────────────

class CreateJobRequest(BaseModel):
    user_id: str
    input_image_key: str = Field(..., min_length=1)
    vibe: Vibe
    pipeline_version: Optional[PipelineVersion] = None


class CreateJobResponse(BaseModel):
    job_id: str
    estimated_duration_seconds: int = 60


class JobStatusResponse(BaseModel):
    job: Job
    progress_percentage: int = 0
    current_stage: Optional[Stage] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusResponse":
        return cls(
            job=job,
            progress_percentage=job.progress_percentage,
            current_stage=job.current_stage,
        )


class UserRequest(BaseModel):
    user_id: str


MAX_UPLOAD_BYTES = 20 * 1024 * 1024


class UploadRequest(BaseModel):
    user_id: str
    filename: str = Field(..., min_length=1, max_length=255)
    content_type: str = Field(..., pattern=r"^image/(jpeg|png|webp)$")
    file_size: int = Field(..., ge=1, le=MAX_UPLOAD_BYTES)


class UploadResponse(BaseModel):
    upload_url: str
    key: str
    public_url: str


class QueueStats(BaseModel):
    backlog: int = 0
    in_flight: int = 0
    paused: bool = False
