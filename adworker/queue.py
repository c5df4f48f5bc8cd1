"""
In-process admission queue for generation jobs.

Jobs are admitted in FIFO order by a single dispatcher task, subject to:
  1. at most QUEUE_CONCURRENCY jobs in flight
  2. at most QUEUE_MAX_STARTS starts per rolling QUEUE_RATE_WINDOW_SECONDS
  3. the queue not being paused by an operator

The backlog is memory only. Jobs lost on restart are still `pending` in the
jobs table and get re-enqueued by the recovery sweep.
"""

import os
import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Optional

from . import metrics
from .pipeline.models import QueueStats
from .rate_limiter import SlidingWindowLimiter

logger = logging.getLogger(__name__)

QUEUE_CONCURRENCY = int(os.getenv("QUEUE_CONCURRENCY", "3"))
QUEUE_MAX_STARTS = int(os.getenv("QUEUE_MAX_STARTS", "5"))
QUEUE_RATE_WINDOW_SECONDS = float(os.getenv("QUEUE_RATE_WINDOW_SECONDS", "1.0"))

Runner = Callable[[str], Awaitable[None]]


class AdmissionQueue:
    def __init__(
        self,
        runner: Runner,
        concurrency: int = QUEUE_CONCURRENCY,
        max_starts: int = QUEUE_MAX_STARTS,
        window_seconds: float = QUEUE_RATE_WINDOW_SECONDS,
        limiter: Optional[SlidingWindowLimiter] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.runner = runner
        self.concurrency = concurrency
        self.limiter = limiter or SlidingWindowLimiter(max_starts, window_seconds)

        self._backlog: deque[str] = deque()
        self._in_flight: dict[str, asyncio.Task] = {}
        self._paused = False
        self._closed = False

        # Created together with the dispatcher so they bind to the running loop.
        self._dispatcher: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._idle: Optional[asyncio.Event] = None

    # ── Enqueue ───────────────────────────────────────────────────────────

    def enqueue(self, job_id: str) -> int:
        """
        Add a job to the back of the backlog and return immediately.

        Returns the 1-based backlog position. A job already waiting keeps its
        place; a job already running returns 0.
        """
        self._ensure_started()

        if job_id in self._in_flight:
            logger.info(f"[{job_id}] Already in flight, not re-enqueued")
            return 0
        if job_id in self._backlog:
            position = list(self._backlog).index(job_id) + 1
            logger.info(f"[{job_id}] Already queued at position {position}")
            return position

        self._backlog.append(job_id)
        position = len(self._backlog)
        logger.info(f"[{job_id}] Enqueued (pos={position}, in_flight={len(self._in_flight)})")
        self._update_idle()
        self._wake()
        return position

    # ── Dispatch ──────────────────────────────────────────────────────────

    def _ensure_started(self):
        if self._dispatcher is not None and not self._dispatcher.done():
            return
        self._closed = False
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._update_idle()
        self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch_loop())

    def _wake(self):
        if self._wakeup is not None:
            self._wakeup.set()

    def _update_idle(self):
        if self._idle is None:
            return
        if self._backlog or self._in_flight:
            self._idle.clear()
        else:
            self._idle.set()

    def _publish_gauges(self):
        metrics.set_gauge("queue.backlog", len(self._backlog))
        metrics.set_gauge("queue.in_flight", len(self._in_flight))

    async def _dispatch_loop(self):
        while not self._closed:
            self._wakeup.clear()

            while self._backlog and not self._paused and len(self._in_flight) < self.concurrency:
                delay = self.limiter.try_acquire()
                if delay > 0:
                    logger.debug(f"Start rate reached, next start in {delay:.3f}s")
                    await asyncio.sleep(delay)
                    continue

                job_id = self._backlog.popleft()
                self._in_flight[job_id] = asyncio.create_task(self._run(job_id))
                logger.info(f"[{job_id}] Dispatched ({len(self._in_flight)}/{self.concurrency} in flight)")

            self._publish_gauges()
            await self._wakeup.wait()

    async def _run(self, job_id: str):
        try:
            await self.runner(job_id)
        except Exception as e:
            logger.error(f"[{job_id}] Job runner raised: {e}", exc_info=True)
            metrics.record_error("queue", type(e).__name__, str(e), job_id=job_id)
        finally:
            self._in_flight.pop(job_id, None)
            self._update_idle()
            self._publish_gauges()
            self._wake()

    # ── Observability ─────────────────────────────────────────────────────

    def stats(self) -> QueueStats:
        return QueueStats(
            backlog=len(self._backlog),
            in_flight=len(self._in_flight),
            paused=self._paused,
        )

    def contains(self, job_id: str) -> bool:
        return job_id in self._in_flight or job_id in self._backlog

    def in_flight_ids(self) -> set[str]:
        return set(self._in_flight)

    # ── Operator controls ─────────────────────────────────────────────────

    def pause(self):
        self._paused = True
        logger.warning("Admission queue paused")

    def resume(self):
        self._paused = False
        logger.info("Admission queue resumed")
        self._wake()

    def clear(self) -> int:
        """Drop every waiting job. In-flight jobs are unaffected."""
        dropped = len(self._backlog)
        self._backlog.clear()
        self._update_idle()
        self._publish_gauges()
        if dropped:
            logger.warning(f"Cleared {dropped} job(s) from the backlog")
        return dropped

    def discard(self, job_id: str) -> bool:
        """Remove one waiting job. False if it was not in the backlog."""
        try:
            self._backlog.remove(job_id)
        except ValueError:
            return False
        self._update_idle()
        self._publish_gauges()
        logger.info(f"[{job_id}] Removed from backlog")
        return True

    async def wait_for_idle(self):
        """Block until the backlog is empty and nothing is in flight."""
        self._ensure_started()
        while self._backlog or self._in_flight:
            await self._idle.wait()

    async def shutdown(self, timeout: float = 30.0):
        """Stop admitting, give in-flight jobs `timeout` seconds, then stop."""
        self._paused = True
        tasks = list(self._in_flight.values())
        if tasks:
            logger.info(f"Waiting up to {timeout}s for {len(tasks)} in-flight job(s)")
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"{len(pending)} job(s) still running at shutdown; recovery will pick them up")
                await asyncio.gather(*pending, return_exceptions=True)

        self._closed = True
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        logger.info(f"Admission queue stopped ({len(self._backlog)} job(s) left in backlog)")
