"""
Job persistence.

The `jobs` table keeps one column group per stage
({stage}_status, {stage}_output_url, ...). Those column names are built once
from the Stage enum here; the rest of the pipeline only sees
Job.stages[Stage] → StageRecord.

Any object with the same async methods as SupabaseJobStore can stand in
for it (tests use an in-memory store).
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from .models import (
    Job,
    JobStatus,
    JobUpdate,
    PipelineVersion,
    Stage,
    StageRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

JOBS_TABLE = "jobs"

STAGE_FIELDS = ("status", "output_url", "error", "model_id", "started_at", "completed_at")

STAGE_COLUMNS: dict[Stage, dict[str, str]] = {
    stage: {field: f"{stage.value}_{field}" for field in STAGE_FIELDS}
    for stage in Stage
}

JOB_FIELDS = ("status", "error_message", "total_duration_ms", "product_description")

FILE_REFERENCE_COLUMNS = ["input_image_url"] + [
    cols["output_url"] for cols in STAGE_COLUMNS.values()
]


# ── Row mapping ──────────────────────────────────────────────────────────────

def _to_db(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def stage_to_columns(stage: Stage, record: StageRecord) -> dict:
    cols = STAGE_COLUMNS[stage]
    return {cols[field]: _to_db(getattr(record, field)) for field in STAGE_FIELDS}


def job_from_row(row: dict) -> Job:
    stages = {}
    for stage, cols in STAGE_COLUMNS.items():
        stages[stage] = StageRecord(
            status=row.get(cols["status"]) or "pending",
            output_url=row.get(cols["output_url"]),
            error=row.get(cols["error"]),
            model_id=row.get(cols["model_id"]),
            started_at=row.get(cols["started_at"]),
            completed_at=row.get(cols["completed_at"]),
        )

    return Job(
        id=row["id"],
        user_id=row["user_id"],
        input_image_url=row["input_image_url"],
        vibe=row["vibe"],
        status=row.get("status") or JobStatus.PENDING,
        pipeline_version=row.get("pipeline_version") or PipelineVersion.CLASSIC,
        credits_used=row.get("credits_used") or 0,
        product_description=row.get("product_description"),
        error_message=row.get("error_message"),
        total_duration_ms=row.get("total_duration_ms"),
        created_at=row["created_at"],
        updated_at=row.get("updated_at"),
        stages=stages,
    )


def job_to_row(job: Job) -> dict:
    row = {
        "id": job.id,
        "user_id": job.user_id,
        "input_image_url": job.input_image_url,
        "vibe": job.vibe.value,
        "status": job.status.value,
        "pipeline_version": job.pipeline_version.value,
        "credits_used": job.credits_used,
        "product_description": job.product_description,
        "error_message": job.error_message,
        "total_duration_ms": job.total_duration_ms,
        "created_at": _to_db(job.created_at),
        # The stale-job sweep filters on updated_at, so it is set from the start
        "updated_at": _to_db(job.updated_at or job.created_at),
    }
    for stage, record in job.stages.items():
        row.update(stage_to_columns(stage, record))
    return row


def update_to_row(update: JobUpdate) -> dict:
    row = {}
    for field in JOB_FIELDS:
        if field in update.model_fields_set:
            row[field] = _to_db(getattr(update, field))
    for stage, record in update.stages.items():
        row.update(stage_to_columns(stage, record))
    return row


# ── Supabase store ───────────────────────────────────────────────────────────

class SupabaseJobStore:
    """All queries are scoped by job id (and user id where the caller is a user)."""

    def __init__(self, client_factory=None):
        if client_factory is None:
            from adworker.supabase_client import get_service_client
            client_factory = get_service_client
        self._client_factory = client_factory

    def _table(self):
        return self._client_factory().table(JOBS_TABLE)

    async def get(self, job_id: str) -> Optional[Job]:
        def _query():
            return self._table().select("*").eq("id", job_id).limit(1).execute()

        result = await asyncio.to_thread(_query)
        return job_from_row(result.data[0]) if result.data else None

    async def create(self, job: Job) -> Job:
        row = job_to_row(job)
        result = await asyncio.to_thread(lambda: self._table().insert(row).execute())
        if not result.data:
            raise RuntimeError(f"Failed to create job {job.id}")
        logger.info(f"[{job.id}] Job row created for user {job.user_id}")
        return job_from_row(result.data[0])

    async def update(self, job_id: str, update: JobUpdate) -> None:
        row = update_to_row(update)
        row["updated_at"] = utcnow().isoformat()
        await asyncio.to_thread(lambda: self._table().update(row).eq("id", job_id).execute())

    async def delete(self, job_id: str) -> None:
        await asyncio.to_thread(lambda: self._table().delete().eq("id", job_id).execute())
        logger.info(f"[{job_id}] Job row deleted")

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[Job]:
        def _query():
            return (
                self._table()
                .select("*")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )

        result = await asyncio.to_thread(_query)
        return [job_from_row(row) for row in result.data]

    async def list_by_status(
        self, statuses: Iterable[JobStatus], updated_before: Optional[datetime] = None
    ) -> list[Job]:
        values = [s.value for s in statuses]

        def _query():
            q = self._table().select("*").in_("status", values)
            if updated_before is not None:
                q = q.lt("updated_at", updated_before.isoformat())
            return q.order("created_at").execute()

        result = await asyncio.to_thread(_query)
        return [job_from_row(row) for row in result.data]

    async def list_file_references(self) -> list[str]:
        columns = ", ".join(FILE_REFERENCE_COLUMNS)
        result = await asyncio.to_thread(lambda: self._table().select(columns).execute())
        urls = []
        for row in result.data:
            urls.extend(row[c] for c in FILE_REFERENCE_COLUMNS if row.get(c))
        return urls

    async def count(self) -> int:
        result = await asyncio.to_thread(
            lambda: self._table().select("id", count="exact").limit(1).execute()
        )
        return result.count or 0
