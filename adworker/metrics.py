"""
Thread-safe in-memory metrics for the worker.

  - Counters:  jobs.completed, jobs.failed, jobs.refund_failed,
               stages.attempt_failed, ...
  - Latency:   per-stage durations (stage.extractor, stage.cinematographer, ...)
  - Gauges:    queue.backlog, queue.in_flight, start_time
  - Errors:    last 50 failures, for root-cause analysis

Everything resets on restart; the jobs table is the durable record.
"""

import time
import threading
from typing import Dict, List
from collections import defaultdict

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)

# ── Latency samples (last 100 per name) ──────────────────────────────────────
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

_gauges: Dict[str, float] = defaultdict(float)

# ── Error log ────────────────────────────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    with _lock:
        _counters[name] += amount


def record_latency(name: str, duration_ms: float):
    """Record a latency sample in milliseconds."""
    with _lock:
        samples = _latency_samples[name]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[name] = samples[-MAX_SAMPLES:]


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(source: str, error_type: str, message: str, job_id: str = ""):
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "source": source,
            "error_type": error_type,
            "message": message[:300],
            "job_id": job_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def reset():
    """Drop all collected data (tests, or an operator reset)."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _gauges.clear()
        _recent_errors.clear()


def get_snapshot() -> dict:
    """Complete metrics snapshot for the /metrics endpoint."""
    now = time.time()

    with _lock:
        latency_stats = {}
        for name, samples in _latency_samples.items():
            if not samples:
                continue
            sorted_s = sorted(samples)
            n = len(sorted_s)
            latency_stats[name] = {
                "p50": sorted_s[n // 2],
                "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                "avg": sum(sorted_s) / n,
                "count": n,
            }

        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_patterns[f"{err['source']}:{err['error_type']}"] += 1

        finished = _counters.get("jobs.completed", 0) + _counters.get("jobs.failed", 0)
        failure_rate = (_counters.get("jobs.failed", 0) / finished * 100) if finished else 0

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "job_failure_rate": round(failure_rate, 2),
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(error_patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }
