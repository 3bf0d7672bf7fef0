import threading
import time
from collections import defaultdict
from typing import Any


class MetricsCollector:
    """
    In-process counters and latency timings.

    One instance is created per app (see ServiceContainer) and passed by
    reference to the services that record into it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = defaultdict(int)
        self._timings: dict[str, list[float]] = defaultdict(list)
        self._started_at = time.time()

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] += int(value)

    def observe(self, name: str, ms: float) -> None:
        with self._lock:
            samples = self._timings[name]
            samples.append(float(ms))
            # Keep memory bounded; recent samples are what matter for the dashboard.
            if len(samples) > 1000:
                del samples[: len(samples) - 1000]

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._timings.clear()
            self._started_at = time.time()

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            timings: dict[str, dict[str, float]] = {}
            for name, samples in self._timings.items():
                if not samples:
                    continue
                ordered = sorted(samples)
                timings[name] = {
                    "count": len(ordered),
                    "avgMs": round(sum(ordered) / len(ordered), 2),
                    "p95Ms": round(ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))], 2),
                    "maxMs": round(ordered[-1], 2),
                }
            uptime = time.time() - self._started_at

        hits = counters.get("search.cache_hit", 0)
        misses = counters.get("search.cache_miss", 0)
        return {
            "counters": counters,
            "timings": timings,
            "cacheHitRate": round(hits / (hits + misses), 4) if (hits + misses) else 0.0,
            "uptimeSeconds": int(uptime),
        }
