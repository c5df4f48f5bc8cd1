"""In-memory fakes for the stores, storage and model adapters."""

from typing import Optional

import pytest

from adworker import metrics
from adworker.credits import CreditLedger
from adworker.pipeline.adapters import ModelAdapter
from adworker.pipeline.errors import InsufficientCreditsError, LedgerError
from adworker.pipeline.executor import StageExecutor
from adworker.pipeline.job_store import JOB_FIELDS
from adworker.pipeline.models import (
    AdapterInput,
    AdapterOutput,
    Job,
    ModelConfig,
    Stage,
    Vibe,
    utcnow,
)
from adworker.pipeline.orchestrator import JobOrchestrator
from adworker.pipeline.switchboard import ModelSwitchboard


# ── Job store ────────────────────────────────────────────────────────────────

class FakeJobStore:
    def __init__(self):
        self.jobs: dict[str, Job] = {}
        self.snapshots: list[Job] = []
        self.deleted: list[str] = []
        self.fail_updates = False
        # status -> number of updates to that status that still raise
        self.failures_by_status: dict = {}

    async def get(self, job_id: str) -> Optional[Job]:
        job = self.jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def create(self, job: Job) -> Job:
        job = job.model_copy(update={"updated_at": job.created_at})
        self.jobs[job.id] = job
        return job.model_copy(deep=True)

    async def update(self, job_id, update):
        if self.fail_updates:
            raise RuntimeError("database unavailable")
        if self.failures_by_status.get(update.status):
            self.failures_by_status[update.status] -= 1
            raise RuntimeError("database unavailable")
        job = self.jobs[job_id]
        changes = {f: getattr(update, f) for f in JOB_FIELDS if f in update.model_fields_set}
        stages = dict(job.stages)
        stages.update(update.stages)
        job = job.model_copy(update={**changes, "stages": stages, "updated_at": utcnow()})
        self.jobs[job_id] = job
        self.snapshots.append(job)

    async def delete(self, job_id: str):
        self.jobs.pop(job_id, None)
        self.deleted.append(job_id)

    async def list_for_user(self, user_id: str, limit: int = 50):
        jobs = [j for j in self.jobs.values() if j.user_id == user_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    async def list_by_status(self, statuses, updated_before=None):
        wanted = set(statuses)
        return [
            j for j in self.jobs.values()
            if j.status in wanted and (updated_before is None or j.updated_at < updated_before)
        ]

    async def list_file_references(self):
        urls = []
        for job in self.jobs.values():
            urls.append(job.input_image_url)
            urls.extend(r.output_url for r in job.stages.values() if r.output_url)
        return urls

    async def count(self) -> int:
        return len(self.jobs)


# ── Credits ──────────────────────────────────────────────────────────────────

class FakeCreditStore:
    """Atomic by construction: no await between reading and writing a balance."""

    def __init__(self, balances: Optional[dict] = None):
        self.balances = dict(balances or {})
        self.transactions = []
        self.adjustments = []
        self.fail_refunds = False
        self.fail_deductions = False
        self.fail_audit = False

    async def adjust_balance(self, user_id: str, delta: int):
        if delta > 0 and self.fail_refunds:
            raise LedgerError("add_credits failed: connection reset")
        if delta < 0 and self.fail_deductions:
            raise LedgerError("deduct_credits failed: connection reset")
        current = self.balances.get(user_id, 0)
        if current + delta < 0:
            raise InsufficientCreditsError(user_id, -delta, current)
        self.balances[user_id] = current + delta
        self.adjustments.append((user_id, delta))

    async def get_balance(self, user_id: str) -> int:
        if user_id not in self.balances:
            raise LedgerError(f"User not found: {user_id}")
        return self.balances[user_id]

    async def insert_transaction(self, tx):
        if self.fail_audit:
            raise RuntimeError("insert failed")
        self.transactions.append(tx)

    async def list_transactions(self, user_id: str, limit: int = 50):
        return [tx for tx in reversed(self.transactions) if tx.user_id == user_id][:limit]

    def refunds(self, job_id: Optional[str] = None):
        return [
            tx for tx in self.transactions
            if tx.transaction_type.value == "refund" and (job_id is None or tx.related_job_id == job_id)
        ]


# ── Model configs ────────────────────────────────────────────────────────────

def default_model_configs() -> list[ModelConfig]:
    return [
        ModelConfig(id=f"cfg-{stage.value}", stage=stage, model_name=f"test/{stage.value}", priority=10)
        for stage in Stage
    ]


class FakeModelConfigStore:
    def __init__(self, configs: Optional[list] = None):
        self.configs = list(configs if configs is not None else default_model_configs())
        self.calls = 0

    async def list_active(self, stage: Stage):
        self.calls += 1
        return [c for c in self.configs if c.stage == stage and c.is_active]


# ── Content store ────────────────────────────────────────────────────────────

class FakeContentStore:
    base_url = "https://cdn.test"

    def __init__(self):
        self.objects: set[str] = set()
        self.copies: list[tuple[str, str]] = []
        self.fail_copies = 0
        self.delete_errors: set[str] = set()

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    def key_from_url(self, url):
        prefix = f"{self.base_url}/"
        if not url or not url.startswith(prefix):
            return None
        return url[len(prefix):]

    async def copy_from_url(self, source_url: str, dest_key: str) -> str:
        if self.fail_copies:
            self.fail_copies -= 1
            raise RuntimeError(f"download failed: {source_url}")
        self.copies.append((source_url, dest_key))
        self.objects.add(dest_key)
        return self.public_url(dest_key)

    async def delete_objects(self, keys):
        deleted = [k for k in keys if k not in self.delete_errors]
        errors = [f"{k}: AccessDenied" for k in keys if k in self.delete_errors]
        self.objects.difference_update(deleted)
        return {"deleted": deleted, "errors": errors}

    async def list_keys(self, prefix: str = ""):
        return sorted(k for k in self.objects if k.startswith(prefix))

    async def presigned_upload_url(self, key: str, content_type: str, expires_in: int = 3600) -> str:
        return f"https://r2.test/{key}?X-Amz-Expires={expires_in}"


# ── Adapters ─────────────────────────────────────────────────────────────────

class ScriptedAdapter(ModelAdapter):
    """
    Plays back a script of outcomes, one per call: a URL string to succeed,
    an exception to raise. The last entry repeats once the script runs out.
    """

    def __init__(self, stage: Stage, script, model_name: Optional[str] = None, metadata=None):
        self.stage = stage
        self.model_name = model_name or f"test/{stage.value}"
        self.script = list(script)
        self.metadata = metadata or {}
        self.calls: list[AdapterInput] = []
        self.client = None

    async def execute(self, input: AdapterInput) -> AdapterOutput:
        self.calls.append(input)
        outcome = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return AdapterOutput(output_url=outcome, metadata=dict(self.metadata))


def classic_adapters(set_designer_script=None):
    return [
        ScriptedAdapter(Stage.EXTRACTOR, ["https://fal.test/out-1.png"]),
        ScriptedAdapter(Stage.SET_DESIGNER, set_designer_script or ["https://fal.test/out-2.png"]),
        ScriptedAdapter(Stage.CINEMATOGRAPHER, ["https://fal.test/out-3.mp4"]),
    ]


def make_job(job_id: str = "job-1", user_id: str = "user-1", **overrides) -> Job:
    fields = {
        "id": job_id,
        "user_id": user_id,
        "input_image_url": "https://cdn.test/uploads/user-1/img-1.png",
        "vibe": Vibe.MINIMALIST,
        "credits_used": 1,
    }
    fields.update(overrides)
    return Job(**fields)


class Pipeline:
    """Orchestrator wired to fakes, with every piece reachable from tests."""

    def __init__(self, adapters, balances=None, configs=None):
        self.job_store = FakeJobStore()
        self.credit_store = FakeCreditStore(balances or {"user-1": 5})
        self.ledger = CreditLedger(self.credit_store)
        self.content_store = FakeContentStore()
        self.config_store = FakeModelConfigStore(configs)
        self.switchboard = ModelSwitchboard(self.config_store, adapters)
        self.executor = StageExecutor(self.content_store, max_retries=2, base_delay=0, attempt_timeout=5)
        self.orchestrator = JobOrchestrator(self.job_store, self.switchboard, self.executor, self.ledger)

    async def add_job(self, job: Job) -> Job:
        return await self.job_store.create(job)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()
