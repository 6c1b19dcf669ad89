"""
Thread-safe in-memory metrics for the studio.

Tracks:
  - Traffic: batch / derive / slideshow requests
  - Outcomes: completed vs failed assets, caption burns, sync writes
  - Latency: generation duration per asset kind
  - Saturation: generation jobs in flight

Everything resets on restart; the session store is the durable record.
"""

import time
import threading
from collections import defaultdict, deque
from typing import Deque, Dict

MAX_SAMPLES = 100  # per latency series
MAX_ERRORS = 50

_lock = threading.Lock()
_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = defaultdict(float)
_latencies: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=MAX_SAMPLES))
_errors: Deque[dict] = deque(maxlen=MAX_ERRORS)


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'assets.completed', 'captions.exhausted')."""
    with _lock:
        _counters[name] += amount


def add_gauge(name: str, delta: float):
    with _lock:
        _gauges[name] += delta


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_latency(series: str, duration_ms: float):
    with _lock:
        _latencies[series].append(duration_ms)


def record_error(source: str, error_type: str, message: str, asset_id: str = ""):
    with _lock:
        _errors.append({
            "at": time.time(),
            "source": source,
            "type": error_type,
            "asset_id": asset_id,
            "message": message[:300],
        })


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def reset():
    with _lock:
        _counters.clear()
        _gauges.clear()
        _latencies.clear()
        _errors.clear()


def _summarize(samples) -> dict:
    ordered = sorted(samples)
    count = len(ordered)
    return {
        "count": count,
        "mean_ms": round(sum(ordered) / count, 1),
        "p50_ms": ordered[count // 2],
        # p95 is meaningless on a handful of samples; report the max instead
        "p95_ms": ordered[int(count * 0.95)] if count >= 20 else ordered[-1],
    }


def get_snapshot() -> dict:
    """Everything above as one JSON-able dict, served at GET /metrics."""
    with _lock:
        now = time.time()
        completed = _counters.get("assets.completed", 0)
        failed = _counters.get("assets.failed", 0)
        settled = completed + failed
        return {
            "uptime_seconds": now - _gauges.get("start_time", now),
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": {series: _summarize(s) for series, s in _latencies.items() if s},
            "failure_rate": round(failed / settled * 100, 2) if settled else 0,
            "recent_errors": list(_errors)[-10:],
        }
