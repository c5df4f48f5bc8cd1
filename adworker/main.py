"""
Worker entry point.

Builds every pipeline component once in the lifespan, shares them through
app.state.services, runs the startup recovery sweep and keeps a periodic
one going until shutdown.

    python -m adworker.main
"""

import os
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

from . import metrics
from .auth_middleware import WORKER_SECRET, WorkerAuthMiddleware
from .credits import CreditLedger, SupabaseCreditStore
from .queue import AdmissionQueue
from .pipeline.executor import StageExecutor
from .pipeline.job_service import JobService
from .pipeline.job_store import SupabaseJobStore
from .pipeline.orchestrator import JobOrchestrator
from .pipeline.recovery import (
    RECOVERY_INTERVAL_SECONDS,
    STALE_JOB_TIMEOUT_SECONDS,
    recover_stale_jobs,
    run_periodic_recovery,
)
from .pipeline.routes import admin_router, credits_router, jobs_router, upload_router, vibes_router
from .pipeline.storage import ContentStore
from .pipeline.switchboard import ModelSwitchboard, SupabaseModelConfigStore

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SHUTDOWN_TIMEOUT_SECONDS = float(os.getenv("SHUTDOWN_TIMEOUT_SECONDS", "30"))

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class Services:
    job_store: object
    ledger: CreditLedger
    content_store: object
    switchboard: ModelSwitchboard
    executor: StageExecutor
    orchestrator: JobOrchestrator
    queue: AdmissionQueue
    job_service: JobService
    stale_after_seconds: float = STALE_JOB_TIMEOUT_SECONDS
    recovery_interval: float = RECOVERY_INTERVAL_SECONDS


def build_services(
    job_store=None,
    credit_store=None,
    model_config_store=None,
    content_store=None,
    adapters=None,
    executor: Optional[StageExecutor] = None,
    queue_options: Optional[dict] = None,
    **job_service_options,
) -> Services:
    """Wire the pipeline. Anything not passed in gets its production implementation."""
    if job_store is None:
        job_store = SupabaseJobStore()
    ledger = CreditLedger(credit_store if credit_store is not None else SupabaseCreditStore())
    if content_store is None:
        content_store = ContentStore()
    if model_config_store is None:
        model_config_store = SupabaseModelConfigStore()
    switchboard = ModelSwitchboard(model_config_store, adapters)
    executor = executor or StageExecutor(content_store)
    orchestrator = JobOrchestrator(job_store, switchboard, executor, ledger)
    queue = AdmissionQueue(orchestrator.run, **(queue_options or {}))
    job_service = JobService(job_store, ledger, queue, content_store, **job_service_options)
    return Services(
        job_store=job_store,
        ledger=ledger,
        content_store=content_store,
        switchboard=switchboard,
        executor=executor,
        orchestrator=orchestrator,
        queue=queue,
        job_service=job_service,
    )


def create_app(
    services_factory: Callable[[], Services] = build_services,
    admin_secret: str = WORKER_SECRET,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Worker starting up...")
        metrics.set_gauge("start_time", time.time())

        services = services_factory()
        app.state.services = services

        # Pick up jobs stranded by a previous process
        try:
            await recover_stale_jobs(
                services.job_store, services.queue, services.orchestrator,
                stale_after_seconds=services.stale_after_seconds,
            )
        except Exception as e:
            logger.error(f"Startup recovery failed: {e}", exc_info=True)

        recovery_task = asyncio.create_task(run_periodic_recovery(
            services.job_store, services.queue, services.orchestrator,
            interval_seconds=services.recovery_interval,
            stale_after_seconds=services.stale_after_seconds,
        ))
        yield

        logger.info("Worker shutting down...")
        recovery_task.cancel()
        try:
            await recovery_task
        except asyncio.CancelledError:
            pass
        await services.queue.shutdown(timeout=SHUTDOWN_TIMEOUT_SECONDS)

    app = FastAPI(title="Product Ad Worker", lifespan=lifespan)
    app.add_middleware(WorkerAuthMiddleware, secret=admin_secret)
    app.include_router(jobs_router)
    app.include_router(vibes_router)
    app.include_router(upload_router)
    app.include_router(credits_router)
    app.include_router(admin_router)

    @app.get("/health")
    def health_check():
        """Liveness plus which integrations are configured."""
        stats = app.state.services.queue.stats() if hasattr(app.state, "services") else None
        return {
            "status": "ok",
            "supabase_url_set": bool(os.environ.get("SUPABASE_URL")),
            "r2_configured": bool(os.environ.get("R2_ENDPOINT") or os.environ.get("R2_ACCOUNT_ID")),
            "fal_key_set": bool(os.environ.get("FAL_KEY")),
            "queue": stats.model_dump() if stats else None,
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Snapshot of all worker metrics."""
        if hasattr(app.state, "services"):
            stats = app.state.services.queue.stats()
            metrics.set_gauge("queue.backlog", stats.backlog)
            metrics.set_gauge("queue.in_flight", stats.in_flight)
        return metrics.get_snapshot()

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("adworker.main:app", host="0.0.0.0", port=port)
