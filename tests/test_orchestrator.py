import asyncio

from adworker import metrics
from adworker.pipeline.job_service import JobService
from adworker.pipeline.models import (
    JobStatus,
    PipelineVersion,
    Stage,
    StageRecord,
    StageStatus,
    Vibe,
)
from adworker.presets import PRESETS
from adworker.prompts import DEFAULT_NEGATIVE_PROMPT
from adworker.queue import AdmissionQueue

from conftest import Pipeline, ScriptedAdapter, classic_adapters, make_job

_ORDER = {
    StageStatus.PENDING: 0,
    StageStatus.PROCESSING: 1,
    StageStatus.COMPLETED: 2,
    StageStatus.FAILED: 2,
    StageStatus.SKIPPED: 2,
}


def assert_stage_history_is_monotonic(snapshots):
    """Stage statuses never regress, and stage k never runs before k-1 completed."""
    previous = {}
    for job in snapshots:
        processing = [s for s in job.pipeline if job.stage(s).status == StageStatus.PROCESSING]
        assert len(processing) <= 1
        for stage in Stage:
            status = job.stage(stage).status
            if stage in previous:
                assert _ORDER[status] >= _ORDER[previous[stage]]
                if previous[stage] in (StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED):
                    assert status == previous[stage]
            previous[stage] = status
        for i, stage in enumerate(job.pipeline):
            if job.stage(stage).status in (StageStatus.PROCESSING, StageStatus.COMPLETED):
                assert all(job.stage(s).status == StageStatus.COMPLETED for s in job.pipeline[:i])


def assert_stage_times_are_ordered(job):
    """Each stage starts and finishes no earlier than its predecessor finished."""
    previous_completed = None
    for stage in job.pipeline:
        record = job.stage(stage)
        assert record.started_at <= record.completed_at
        if previous_completed is not None:
            assert record.started_at >= previous_completed
            assert record.completed_at >= previous_completed
        previous_completed = record.completed_at


# ── Classic pipeline ─────────────────────────────────────────────────────────

def test_classic_job_runs_to_completion():
    adapters = classic_adapters()
    p = Pipeline(adapters)

    async def scenario():
        await p.add_job(make_job(input_image_url="https://cdn.test/uploads/user-1/img-1.png"))
        await p.orchestrator.run("job-1")
        return await p.job_store.get("job-1")

    job = asyncio.run(scenario())

    assert job.status == JobStatus.COMPLETED
    assert job.total_duration_ms is not None and job.total_duration_ms >= 0
    assert job.error_message is None
    assert job.stage(Stage.EXTRACTOR).output_url == "https://cdn.test/jobs/job-1/extractor.png"
    assert job.stage(Stage.SET_DESIGNER).output_url == "https://cdn.test/jobs/job-1/set_designer.png"
    assert job.stage(Stage.CINEMATOGRAPHER).output_url == "https://cdn.test/jobs/job-1/cinematographer.mp4"
    assert job.stage(Stage.ANALYZER).status == StageStatus.SKIPPED
    for stage in job.pipeline:
        record = job.stage(stage)
        assert record.status == StageStatus.COMPLETED
        assert record.model_id == f"cfg-{stage.value}"
        assert record.started_at <= record.completed_at

    # Transient provider URLs were relocated, never stored
    assert p.content_store.copies == [
        ("https://fal.test/out-1.png", "jobs/job-1/extractor.png"),
        ("https://fal.test/out-2.png", "jobs/job-1/set_designer.png"),
        ("https://fal.test/out-3.mp4", "jobs/job-1/cinematographer.mp4"),
    ]
    assert p.credit_store.refunds() == []
    assert p.credit_store.balances["user-1"] == 5
    assert metrics.get_counter("jobs.completed") == 1
    assert_stage_history_is_monotonic(p.job_store.snapshots)
    assert_stage_times_are_ordered(job)


def test_stage_inputs_chain_and_prompts_follow_the_vibe():
    extractor, set_designer, cinematographer = classic_adapters()
    p = Pipeline([extractor, set_designer, cinematographer])

    async def scenario():
        await p.add_job(make_job())
        await p.orchestrator.run("job-1")

    asyncio.run(scenario())

    preset = PRESETS[Vibe.MINIMALIST]
    assert extractor.calls[0].input_url == "https://cdn.test/uploads/user-1/img-1.png"
    assert extractor.calls[0].prompt is None
    assert set_designer.calls[0].input_url == "https://cdn.test/jobs/job-1/extractor.png"
    assert set_designer.calls[0].prompt == preset["scene_prompt"]
    assert set_designer.calls[0].negative_prompt == preset["negative_prompt"]
    assert cinematographer.calls[0].input_url == "https://cdn.test/jobs/job-1/set_designer.png"
    assert cinematographer.calls[0].prompt == preset["video_prompt"]
    assert cinematographer.calls[0].negative_prompt == DEFAULT_NEGATIVE_PROMPT


def test_failing_stage_fails_job_and_refunds_once():
    adapters = classic_adapters(set_designer_script=[RuntimeError("flux fill unavailable")])
    p = Pipeline(adapters)

    async def scenario():
        await p.add_job(make_job(credits_used=1))
        await p.orchestrator.run("job-1")
        return await p.job_store.get("job-1")

    job = asyncio.run(scenario())

    assert job.status == JobStatus.FAILED
    assert job.stage(Stage.EXTRACTOR).status == StageStatus.COMPLETED
    failed = job.stage(Stage.SET_DESIGNER)
    assert failed.status == StageStatus.FAILED
    assert "after 3 attempt(s)" in failed.error
    assert "flux fill unavailable" in failed.error
    assert failed.started_at is not None
    assert job.stage(Stage.CINEMATOGRAPHER).status == StageStatus.PENDING
    assert job.error_message == failed.error
    assert len(adapters[1].calls) == 3
    assert adapters[2].calls == []

    refunds = p.credit_store.refunds("job-1")
    assert len(refunds) == 1
    assert refunds[0].amount == 1
    assert p.credit_store.balances["user-1"] == 6
    assert metrics.get_counter("jobs.failed") == 1
    assert_stage_history_is_monotonic(p.job_store.snapshots)


def test_unconfigured_stage_fails_before_invoking_any_model():
    adapters = classic_adapters()
    p = Pipeline(adapters)
    p.config_store.configs = [c for c in p.config_store.configs if c.stage != Stage.SET_DESIGNER]

    async def scenario():
        await p.add_job(make_job())
        await p.orchestrator.run("job-1")
        return await p.job_store.get("job-1")

    job = asyncio.run(scenario())

    assert job.status == JobStatus.FAILED
    assert job.stage(Stage.SET_DESIGNER).status == StageStatus.FAILED
    assert "No active model" in job.stage(Stage.SET_DESIGNER).error
    assert job.stage(Stage.SET_DESIGNER).model_id is None
    assert adapters[1].calls == []
    assert len(p.credit_store.refunds("job-1")) == 1


def test_refund_failure_is_logged_not_raised():
    adapters = classic_adapters(set_designer_script=[RuntimeError("down")])
    p = Pipeline(adapters)
    p.credit_store.fail_refunds = True

    async def scenario():
        await p.add_job(make_job())
        await p.orchestrator.run("job-1")
        return await p.job_store.get("job-1")

    job = asyncio.run(scenario())

    assert job.status == JobStatus.FAILED
    assert p.credit_store.refunds() == []
    assert metrics.get_counter("jobs.refund_failed") == 1


def test_zero_credit_job_is_not_refunded():
    adapters = classic_adapters(set_designer_script=[RuntimeError("down")])
    p = Pipeline(adapters)

    async def scenario():
        await p.add_job(make_job(credits_used=0))
        await p.orchestrator.run("job-1")

    asyncio.run(scenario())

    assert p.credit_store.adjustments == []


def test_non_pending_and_missing_jobs_are_skipped():
    adapters = classic_adapters()
    p = Pipeline(adapters)

    async def scenario():
        await p.add_job(make_job("done", status=JobStatus.COMPLETED))
        await p.add_job(make_job("cancelled", status=JobStatus.CANCELLED))
        await p.orchestrator.run("done")
        await p.orchestrator.run("cancelled")
        await p.orchestrator.run("does-not-exist")

    asyncio.run(scenario())

    assert all(a.calls == [] for a in adapters)
    assert p.job_store.snapshots == []


def test_fail_job_never_refunds_a_completed_job():
    p = Pipeline(classic_adapters())

    async def scenario():
        job = await p.add_job(make_job(status=JobStatus.COMPLETED))
        return await p.orchestrator.fail_job(job, RuntimeError("late failure"))

    job = asyncio.run(scenario())

    assert job.status == JobStatus.COMPLETED
    assert p.credit_store.adjustments == []


def test_completion_save_is_retried_once():
    p = Pipeline(classic_adapters())
    p.job_store.failures_by_status[JobStatus.COMPLETED] = 1

    async def scenario():
        await p.add_job(make_job())
        await p.orchestrator.run("job-1")
        return await p.job_store.get("job-1")

    job = asyncio.run(scenario())

    assert job.status == JobStatus.COMPLETED
    assert metrics.get_counter("jobs.completed") == 1
    assert p.credit_store.adjustments == []


def test_fail_job_completes_a_job_whose_stages_all_completed():
    p = Pipeline(classic_adapters())
    job = make_job(status=JobStatus.PROCESSING)
    for stage in job.pipeline:
        job = job.with_stage(stage, StageRecord(status=StageStatus.PROCESSING))
        job = job.with_stage(stage, StageRecord(status=StageStatus.COMPLETED, output_url=f"https://cdn.test/{stage.value}"))

    async def scenario():
        await p.add_job(job)
        settled = await p.orchestrator.fail_job(job, RuntimeError("interrupted"))
        return settled, await p.job_store.get("job-1")

    settled, stored = asyncio.run(scenario())

    assert settled.status == JobStatus.COMPLETED
    assert stored.status == JobStatus.COMPLETED
    assert stored.total_duration_ms is not None
    assert stored.error_message is None
    assert p.credit_store.adjustments == []
    assert metrics.get_counter("jobs.failed") == 0


# ── Product-aware pipeline ───────────────────────────────────────────────────

def test_product_aware_job_uses_the_analyzer_caption():
    analyzer = ScriptedAdapter(
        Stage.ANALYZER,
        ["https://cdn.test/uploads/user-1/img-1.png"],
        metadata={"product_description": "a red soda can on a wooden table"},
    )
    extractor = ScriptedAdapter(Stage.EXTRACTOR, ["https://fal.test/cutout.png"])
    cinematographer = ScriptedAdapter(Stage.CINEMATOGRAPHER, ["https://fal.test/ad.mp4"])
    p = Pipeline([analyzer, extractor, cinematographer])

    async def scenario():
        await p.add_job(make_job(pipeline_version=PipelineVersion.PRODUCT_AWARE))
        await p.orchestrator.run("job-1")
        return await p.job_store.get("job-1")

    job = asyncio.run(scenario())

    assert job.status == JobStatus.COMPLETED
    assert job.product_description == "a red soda can on a wooden table"
    assert job.stage(Stage.SET_DESIGNER).status == StageStatus.SKIPPED
    assert job.stage(Stage.ANALYZER).output_url == "https://cdn.test/jobs/job-1/analyzer.jpg"
    assert extractor.calls[0].input_url == "https://cdn.test/jobs/job-1/analyzer.jpg"
    assert cinematographer.calls[0].input_url == "https://cdn.test/jobs/job-1/extractor.png"
    prompt = cinematographer.calls[0].prompt
    assert prompt.startswith("A red soda can on a slowly rotating")
    assert "condensation droplets" in prompt
    assert job.progress_percentage == 100
    assert_stage_history_is_monotonic(p.job_store.snapshots)
    assert_stage_times_are_ordered(job)


# ── Through the queue ────────────────────────────────────────────────────────

def test_two_concurrent_jobs_for_one_user_settle_the_balance():
    class PickyExtractor(ScriptedAdapter):
        async def execute(self, input):
            if "bad" in input.input_url:
                self.calls.append(input)
                raise RuntimeError("no product found")
            return await super().execute(input)

    adapters = classic_adapters()
    adapters[0] = PickyExtractor(Stage.EXTRACTOR, ["https://fal.test/out-1.png"])
    p = Pipeline(adapters, balances={"user-1": 5})

    async def scenario():
        queue = AdmissionQueue(p.orchestrator.run, concurrency=3)
        service = JobService(p.job_store, p.ledger, queue, p.content_store)
        good = await service.create_job("user-1", "uploads/user-1/good.png", "minimalist")
        bad = await service.create_job("user-1", "uploads/user-1/bad.png", "luxury_noir")
        await queue.wait_for_idle()
        return (await p.job_store.get(good.job_id), await p.job_store.get(bad.job_id))

    good, bad = asyncio.run(scenario())

    assert good.status == JobStatus.COMPLETED
    assert bad.status == JobStatus.FAILED
    assert p.credit_store.balances["user-1"] == 5 - 2 + 1
    assert len(p.credit_store.refunds(bad.id)) == 1
    assert p.credit_store.refunds(good.id) == []
