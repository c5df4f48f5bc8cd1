"""
Product Ad Pipeline

Turns a product photo into a short video ad:
  classic        Extractor (BiRefNet) → Set Designer (Flux Fill) → Cinematographer (Kling / Wan)
  product_aware  Analyzer (Florence-2) → Extractor → Cinematographer with a product-aware prompt
Jobs are admitted through the queue, paid for with credits and refunded on failure.
"""

from .models import JobStatus, PipelineVersion, Stage, StageStatus
from .orchestrator import JobOrchestrator
from .routes import admin_router, credits_router, jobs_router, upload_router, vibes_router

__all__ = [
    "JobOrchestrator",
    "jobs_router",
    "vibes_router",
    "upload_router",
    "credits_router",
    "admin_router",
    "JobStatus",
    "PipelineVersion",
    "Stage",
    "StageStatus",
]
