"""
Thread-safe in-memory metrics for the orchestrator.

  - counters: submits, polls, per-kind backend errors, job outcomes
  - latency:  backend call duration samples (last 200 per backend/op)
  - gauges:   active batches, in-flight jobs
  - errors:   last 50 job errors for diagnosis

Everything resets on restart; batch history lives in the repository.
"""

import threading
import time
from collections import defaultdict, deque
from typing import Deque, Dict

MAX_SAMPLES = 200
MAX_ERRORS = 50

_lock = threading.Lock()
_counters: Dict[str, int] = defaultdict(int)
_latency: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=MAX_SAMPLES))
_gauges: Dict[str, float] = {}
_recent_errors: Deque[dict] = deque(maxlen=MAX_ERRORS)


def inc_counter(name: str, amount: int = 1):
    """e.g. 'submits.kie', 'errors.transient', 'jobs.completed'"""
    with _lock:
        _counters[name] += amount


def record_latency(key: str, duration_ms: float):
    with _lock:
        _latency[key].append(duration_ms)


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(kind: str, batch_id: str, job_id: str, message: str):
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "kind": kind,
            "batch_id": batch_id,
            "job_id": job_id,
            "message": message[:300],
        })


def _percentile(sorted_samples: list, pct: float) -> float:
    idx = min(len(sorted_samples) - 1, int(len(sorted_samples) * pct))
    return sorted_samples[idx]


def get_snapshot() -> dict:
    with _lock:
        latency = {}
        for key, samples in _latency.items():
            if not samples:
                continue
            ordered = sorted(samples)
            latency[key] = {
                "p50": _percentile(ordered, 0.50),
                "p95": _percentile(ordered, 0.95),
                "avg": sum(ordered) / len(ordered),
                "count": len(ordered),
            }

        return {
            "timestamp": time.time(),
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency,
            "recent_errors": list(_recent_errors)[-10:],
        }


def reset():
    """Clear everything. Used by tests."""
    with _lock:
        _counters.clear()
        _latency.clear()
        _gauges.clear()
        _recent_errors.clear()
