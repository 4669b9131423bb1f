"""
Thread-safe in-memory metrics for the training video worker.

Tracks:
  - Runs: started / completed / failed by error kind
  - Degradation: how often each optional stage fell back to its baseline
  - Polling: status-check attempts
  - Latency: per-stage duration samples

All data is ephemeral (resets on restart).
"""

import time
import threading
from collections import defaultdict, deque
from typing import Deque, Dict

_lock = threading.Lock()

MAX_SAMPLES = 100   # latency samples kept per stage
MAX_ERRORS = 50     # terminal errors kept for RCA

_counters: Dict[str, int] = defaultdict(int)
_latency: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=MAX_SAMPLES))
_errors: Deque[dict] = deque(maxlen=MAX_ERRORS)
_started_at = time.time()


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'runs.started', 'fallback.lipsync')."""
    with _lock:
        _counters[name] += amount


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def record_latency(stage: str, duration_ms: float):
    with _lock:
        _latency[stage].append(duration_ms)


def record_error(stage: str, error_type: str, message: str, job_id: str = ""):
    """Keep a terminal run error for root-cause analysis."""
    entry = {
        "at": time.time(),
        "stage": stage,
        "error_type": error_type,
        "message": message[:300],
        "job_id": job_id,
    }
    with _lock:
        _errors.append(entry)


def reset():
    """Clear everything. Used by tests."""
    global _started_at
    with _lock:
        _counters.clear()
        _latency.clear()
        _errors.clear()
        _started_at = time.time()


def _percentile(ordered: list, fraction: float) -> float:
    # Small sample sets report their max instead of a noisy tail
    if fraction > 0.5 and len(ordered) < 20:
        return ordered[-1]
    return ordered[min(int(len(ordered) * fraction), len(ordered) - 1)]


def _latency_summary(samples) -> dict:
    ordered = sorted(samples)
    return {
        "p50": _percentile(ordered, 0.5),
        "p95": _percentile(ordered, 0.95),
        "avg": sum(ordered) / len(ordered),
        "count": len(ordered),
    }


def get_snapshot() -> dict:
    """Everything above, shaped for the /metrics endpoint."""
    with _lock:
        counters = dict(_counters)
        latency = {stage: _latency_summary(s) for stage, s in _latency.items() if s}
        errors = list(_errors)[-10:]
        started_at = _started_at

    runs = counters.get("runs.started", 0)
    now = time.time()
    return {
        "timestamp": now,
        "uptime_seconds": now - started_at,
        "counters": counters,
        "latency": latency,
        "success_rate": round(counters.get("runs.completed", 0) / runs * 100, 2) if runs else 0,
        "recent_errors": errors,
    }
