import asyncio
import time

import pytest

from adworker.queue import AdmissionQueue
from adworker.rate_limiter import SlidingWindowLimiter


class RecordingRunner:
    def __init__(self, duration: float = 0.0, fail_on=()):
        self.duration = duration
        self.fail_on = set(fail_on)
        self.started: list[tuple[str, float]] = []
        self.finished: list[str] = []
        self.running = 0
        self.max_running = 0

    async def __call__(self, job_id: str):
        self.started.append((job_id, time.monotonic()))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.duration)
            if job_id in self.fail_on:
                raise RuntimeError(f"boom {job_id}")
            self.finished.append(job_id)
        finally:
            self.running -= 1


# ── Limiter ──────────────────────────────────────────────────────────────────

def test_limiter_grants_up_to_max_then_reports_wait():
    now = [100.0]
    limiter = SlidingWindowLimiter(max_starts=2, window_seconds=1.0, clock=lambda: now[0])

    assert limiter.try_acquire() == 0
    now[0] = 100.4
    assert limiter.try_acquire() == 0
    now[0] = 100.5
    assert limiter.try_acquire() == pytest.approx(0.5)
    assert limiter.status() == (2, 0)

    # Oldest start ages out of the window
    now[0] = 101.01
    assert limiter.try_acquire() == 0
    assert limiter.status() == (2, 0)


def test_limiter_rejects_bad_configuration():
    with pytest.raises(ValueError):
        SlidingWindowLimiter(max_starts=0)
    with pytest.raises(ValueError):
        SlidingWindowLimiter(window_seconds=0)


# ── Queue ────────────────────────────────────────────────────────────────────

def test_concurrency_ceiling_holds_under_burst():
    runner = RecordingRunner(duration=0.05)

    async def scenario():
        queue = AdmissionQueue(runner, concurrency=3, max_starts=1000, window_seconds=1.0)
        for i in range(30):
            queue.enqueue(f"job-{i}")
        await queue.wait_for_idle()
        await queue.shutdown()

    asyncio.run(scenario())

    assert len(runner.finished) == 30
    assert runner.max_running == 3


def test_start_rate_ceiling_holds_over_any_rolling_window():
    runner = RecordingRunner()
    window = 0.2

    async def scenario():
        queue = AdmissionQueue(runner, concurrency=10, max_starts=5, window_seconds=window)
        for i in range(20):
            queue.enqueue(f"job-{i}")
        await queue.wait_for_idle()
        await queue.shutdown()

    asyncio.run(scenario())

    starts = [t for _, t in runner.started]
    assert len(starts) == 20
    # Any 6 consecutive starts must span at least one window
    for i in range(len(starts) - 5):
        assert starts[i + 5] - starts[i] >= window * 0.9


def test_jobs_start_in_fifo_order():
    runner = RecordingRunner()

    async def scenario():
        queue = AdmissionQueue(runner, concurrency=1, max_starts=100, window_seconds=1.0)
        for job_id in ["a", "b", "c", "d"]:
            queue.enqueue(job_id)
        await queue.wait_for_idle()

    asyncio.run(scenario())

    assert [job_id for job_id, _ in runner.started] == ["a", "b", "c", "d"]


def test_enqueue_returns_position_and_ignores_duplicates():
    runner = RecordingRunner()

    async def scenario():
        queue = AdmissionQueue(runner, concurrency=1)
        queue.pause()
        positions = [queue.enqueue("a"), queue.enqueue("b"), queue.enqueue("a")]
        stats = queue.stats()
        queue.resume()
        await queue.wait_for_idle()
        return positions, stats

    positions, stats = asyncio.run(scenario())

    assert positions == [1, 2, 1]
    assert stats.backlog == 2
    assert [job_id for job_id, _ in runner.started] == ["a", "b"]


def test_runner_exception_is_contained():
    runner = RecordingRunner(fail_on={"bad"})

    async def scenario():
        queue = AdmissionQueue(runner, concurrency=1, max_starts=100)
        for job_id in ["ok-1", "bad", "ok-2"]:
            queue.enqueue(job_id)
        await queue.wait_for_idle()
        return queue.stats()

    stats = asyncio.run(scenario())

    assert runner.finished == ["ok-1", "ok-2"]
    assert stats.in_flight == 0
    assert stats.backlog == 0


def test_pause_holds_backlog_until_resume():
    runner = RecordingRunner()

    async def scenario():
        queue = AdmissionQueue(runner, concurrency=2)
        queue.pause()
        queue.enqueue("a")
        queue.enqueue("b")
        await asyncio.sleep(0.05)
        paused_stats = queue.stats()
        started_while_paused = list(runner.started)

        queue.resume()
        await queue.wait_for_idle()
        return paused_stats, started_while_paused

    paused_stats, started_while_paused = asyncio.run(scenario())

    assert started_while_paused == []
    assert paused_stats.paused is True
    assert paused_stats.backlog == 2
    assert runner.finished == ["a", "b"]


def test_clear_and_discard_leave_in_flight_jobs_alone():
    runner = RecordingRunner(duration=0.1)

    async def scenario():
        queue = AdmissionQueue(runner, concurrency=1)
        queue.enqueue("running")
        await asyncio.sleep(0.02)
        for job_id in ["a", "b", "c"]:
            queue.enqueue(job_id)

        assert queue.in_flight_ids() == {"running"}
        assert queue.contains("b")
        assert queue.discard("b") is True
        assert queue.discard("missing") is False
        assert not queue.contains("b")

        dropped = queue.clear()
        await queue.wait_for_idle()
        return dropped

    dropped = asyncio.run(scenario())

    assert dropped == 2
    assert runner.finished == ["running"]


def test_shutdown_waits_for_in_flight_jobs():
    runner = RecordingRunner(duration=0.1)

    async def scenario():
        queue = AdmissionQueue(runner, concurrency=2)
        queue.enqueue("a")
        queue.enqueue("b")
        await asyncio.sleep(0.02)
        await queue.shutdown(timeout=5)
        return queue.stats()

    stats = asyncio.run(scenario())

    assert sorted(runner.finished) == ["a", "b"]
    assert stats.in_flight == 0


def test_shutdown_cancels_jobs_past_the_timeout():
    runner = RecordingRunner(duration=5)

    async def scenario():
        queue = AdmissionQueue(runner, concurrency=1)
        queue.enqueue("slow")
        await asyncio.sleep(0.02)
        await queue.shutdown(timeout=0.05)
        return queue.stats()

    stats = asyncio.run(scenario())

    assert runner.finished == []
    assert stats.in_flight == 0
