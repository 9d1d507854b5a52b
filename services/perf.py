import logging
import threading
from collections import deque
from contextlib import contextmanager
from time import perf_counter
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

_recent_timings: deque[Dict[str, Any]] = deque(maxlen=50)
_label_stats: Dict[str, Dict[str, float]] = {}
_lock = threading.Lock()


def record_timing(label: str, duration_ms: float, *, ok: bool = True) -> None:
    duration_ms = round(duration_ms, 2)
    with _lock:
        _recent_timings.append({"label": label, "duration_ms": duration_ms, "ok": ok})
        stats = _label_stats.setdefault(label, {"count": 0, "errors": 0, "total_ms": 0.0, "max_ms": 0.0})
        stats["count"] += 1
        stats["total_ms"] += duration_ms
        stats["max_ms"] = max(stats["max_ms"], duration_ms)
        if not ok:
            stats["errors"] += 1


def get_recent_timings() -> List[Dict[str, Any]]:
    with _lock:
        return list(_recent_timings)


def get_timing_summary() -> Dict[str, Dict[str, float]]:
    with _lock:
        summary = {}
        for label, stats in _label_stats.items():
            count = stats["count"] or 1
            summary[label] = {
                "count": stats["count"],
                "errors": stats["errors"],
                "avg_ms": round(stats["total_ms"] / count, 2),
                "max_ms": stats["max_ms"],
            }
        return summary


def reset_timings() -> None:
    with _lock:
        _recent_timings.clear()
        _label_stats.clear()


@contextmanager
def time_block(label: str):
    start = perf_counter()
    ok = True
    try:
        yield
    except BaseException:
        ok = False
        raise
    finally:
        duration_ms = (perf_counter() - start) * 1000.0
        record_timing(label, duration_ms, ok=ok)
        logger.debug(f"[perf] {label} took {duration_ms:.2f}ms ok={ok}")
