"""
FastAPI routes for the ad pipeline.

Job Endpoints:
  POST   /jobs                 Create job (costs CREDITS_PER_JOB credits)
  GET    /jobs?user_id=        List user's jobs, newest first
  GET    /jobs/{id}?user_id=   Job status with progress and current stage
  POST   /jobs/{id}/cancel     Cancel a job that has not started (refunds)
  DELETE /jobs/{id}?user_id=   Delete job, its files and its row
  GET    /vibes                Vibe ids and names for the style picker

Upload / Credits:
  POST   /upload               Presigned PUT URL for the product photo
  GET    /credits/balance      Current balance
  GET    /credits/transactions

Admin Endpoints (X-Worker-Secret):
  GET    /admin/queue                 POST /admin/queue/pause|resume|clear
  POST   /admin/recover               GET  /admin/models
  GET    /admin/storage/stats         POST /admin/storage/cleanup

Components are built once in the app lifespan and read from app.state.
"""

import logging

from fastapi import APIRouter, HTTPException, Query, Request

from adworker.presets import list_presets

from .cleanup import cleanup_orphaned_files, get_storage_stats
from .errors import (
    InsufficientCreditsError,
    JobNotFoundError,
    JobStateError,
    LedgerError,
)
from .models import (
    CreateJobRequest,
    CreateJobResponse,
    JobStatusResponse,
    UploadRequest,
    UploadResponse,
    UserRequest,
)
from .recovery import recover_stale_jobs

logger = logging.getLogger(__name__)


def _services(request: Request):
    return request.app.state.services


# ═════════════════════════════════════════════════════════════════════════════
# Jobs Router
# ═════════════════════════════════════════════════════════════════════════════

jobs_router = APIRouter(prefix="/jobs", tags=["jobs"])


@jobs_router.post("", response_model=CreateJobResponse, status_code=201)
async def create_job(body: CreateJobRequest, request: Request):
    """
    Check credits → create job row → deduct → enqueue.

    Errors:
      - 402: Insufficient credits
      - 500: Credit deduction or job creation failed
    """
    services = _services(request)
    try:
        return await services.job_service.create_job(
            user_id=body.user_id,
            input_image_key=body.input_image_key,
            vibe=body.vibe,
            pipeline_version=body.pipeline_version,
        )
    except InsufficientCreditsError as e:
        raise HTTPException(status_code=402, detail={
            "error": "Insufficient credits",
            "credits_required": e.required,
            "credits_available": e.available,
        })
    except LedgerError as e:
        logger.error(f"Credit deduction failed for user {body.user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to process credit deduction")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Job creation failed for user {body.user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create job")


@jobs_router.get("")
async def list_jobs(request: Request, user_id: str = Query(...), limit: int = Query(50, ge=1, le=100)):
    services = _services(request)
    try:
        jobs = await services.job_service.list_jobs(user_id, limit=limit)
    except Exception as e:
        logger.error(f"Failed to list jobs for {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    return {"jobs": [JobStatusResponse.from_job(job) for job in jobs]}


@jobs_router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str, request: Request, user_id: str = Query(...)):
    services = _services(request)
    try:
        return await services.job_service.get_job_status(job_id, user_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@jobs_router.post("/{job_id}/cancel", response_model=JobStatusResponse)
async def cancel_job(job_id: str, body: UserRequest, request: Request):
    services = _services(request)
    try:
        job = await services.job_service.cancel_job(job_id, body.user_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return JobStatusResponse.from_job(job)


@jobs_router.delete("/{job_id}")
async def delete_job(job_id: str, request: Request, user_id: str = Query(...)):
    services = _services(request)
    try:
        return await services.job_service.delete_job(job_id, user_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"[{job_id}] Delete failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


vibes_router = APIRouter(tags=["vibes"])


@vibes_router.get("/vibes")
async def get_vibes():
    return {"vibes": list_presets()}


# ═════════════════════════════════════════════════════════════════════════════
# Upload & Credits
# ═════════════════════════════════════════════════════════════════════════════

upload_router = APIRouter(tags=["upload"])


@upload_router.post("/upload", response_model=UploadResponse)
async def create_upload(body: UploadRequest, request: Request):
    services = _services(request)
    try:
        return await services.job_service.create_upload_url(
            user_id=body.user_id,
            filename=body.filename,
            content_type=body.content_type,
            file_size=body.file_size,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Presigned upload failed for {body.user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to generate upload URL")


credits_router = APIRouter(prefix="/credits", tags=["credits"])


@credits_router.get("/balance")
async def get_balance(request: Request, user_id: str = Query(...)):
    services = _services(request)
    try:
        credits = await services.ledger.get_balance(user_id)
    except LedgerError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"user_id": user_id, "credits": credits}


@credits_router.get("/transactions")
async def get_transactions(request: Request, user_id: str = Query(...), limit: int = Query(50, ge=1, le=200)):
    services = _services(request)
    history = await services.ledger.transaction_history(user_id, limit=limit)
    return {"transactions": history}


# ═════════════════════════════════════════════════════════════════════════════
# Admin Router: operator controls, behind WorkerAuthMiddleware
# ═════════════════════════════════════════════════════════════════════════════

admin_router = APIRouter(prefix="/admin", tags=["admin"])


@admin_router.get("/queue")
async def queue_status(request: Request):
    queue = _services(request).queue
    used, remaining = queue.limiter.status()
    return {
        **queue.stats().model_dump(),
        "in_flight_ids": sorted(queue.in_flight_ids()),
        "concurrency": queue.concurrency,
        "starts_in_window": used,
        "starts_remaining": remaining,
    }


@admin_router.post("/queue/pause")
async def pause_queue(request: Request):
    queue = _services(request).queue
    queue.pause()
    return queue.stats()


@admin_router.post("/queue/resume")
async def resume_queue(request: Request):
    queue = _services(request).queue
    queue.resume()
    return queue.stats()


@admin_router.post("/queue/clear")
async def clear_queue(request: Request):
    """Drop the backlog. Dropped jobs stay pending and are re-enqueued by recovery."""
    queue = _services(request).queue
    dropped = queue.clear()
    return {"dropped": dropped, **queue.stats().model_dump()}


@admin_router.post("/recover")
async def recover(request: Request):
    services = _services(request)
    return await recover_stale_jobs(
        services.job_store, services.queue, services.orchestrator,
        stale_after_seconds=services.stale_after_seconds,
    )


@admin_router.get("/storage/stats")
async def storage_stats(request: Request):
    services = _services(request)
    try:
        return await get_storage_stats(services.job_store)
    except Exception as e:
        logger.error(f"Storage stats failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@admin_router.post("/storage/cleanup")
async def storage_cleanup(request: Request):
    services = _services(request)
    try:
        return await cleanup_orphaned_files(services.job_store, services.content_store)
    except Exception as e:
        logger.error(f"Storage cleanup failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@admin_router.get("/models")
async def list_models(request: Request):
    return {"models": _services(request).switchboard.available_models()}
