"""Production monitoring for apprep.

Request metrics are collected by the FastAPI middleware in index.py and
question cache counters by QuestionCache. Both are exported in Prometheus
text format at /api/metrics.
"""

import re
from collections import defaultdict
from threading import Lock

# Question and user IDs are UUID4s
_UUID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
)

CACHE_EVENTS = (
    "hit",
    "miss",
    "force_fresh",
    "refresh_started",
    "refresh_succeeded",
    "refresh_failed",
    "generation_failed",
    "storage_failed",
)


def normalize_path(path: str) -> str:
    """Collapse IDs so /api/question/<uuid> is one metric series."""
    return _UUID_PATTERN.sub(":id", path)


def _labels(**labels) -> str:
    return "{" + ",".join(f'{name}="{value}"' for name, value in labels.items()) + "}"


class MetricsCollector:
    """Thread-safe counters for HTTP traffic and the question cache.

    Sync endpoints run in the threadpool while the cache runs on the event
    loop, so every update goes through one lock.
    """

    def __init__(self):
        # Keyed by (method, path)
        self.requests: dict[tuple[str, str], int] = defaultdict(int)
        self.latency_total: dict[tuple[str, str], float] = defaultdict(float)
        # Keyed by (method, path, status)
        self.errors: dict[tuple[str, str, int], int] = defaultdict(int)
        self.cache_events: dict[str, int] = dict.fromkeys(CACHE_EVENTS, 0)
        self.active_requests = 0
        self._lock = Lock()

    def record_request(self, method: str, path: str, status: int, duration: float):
        with self._lock:
            self.requests[(method, path)] += 1
            self.latency_total[(method, path)] += duration
            if status >= 400:
                self.errors[(method, path, status)] += 1

    def record_cache_event(self, event: str):
        with self._lock:
            self.cache_events[event] = self.cache_events.get(event, 0) + 1

    def increment_active(self):
        with self._lock:
            self.active_requests += 1

    def decrement_active(self):
        with self._lock:
            self.active_requests -= 1

    def to_prometheus(self, cache_entries: int = 0) -> str:
        """Render every metric in Prometheus text exposition format.

        Args:
            cache_entries: Current number of cached questions, reported as
                a gauge. The collector doesn't own the cache, so the caller
                passes it in.
        """
        sections = []

        def metric(name: str, kind: str, help_text: str, samples: list[tuple[str, object]]):
            lines = [f"# HELP apprep_{name} {help_text}", f"# TYPE apprep_{name} {kind}"]
            lines.extend(f"apprep_{name}{labels} {value}" for labels, value in samples)
            sections.append("\n".join(lines))

        with self._lock:
            request_keys = sorted(self.requests)
            metric("requests_total", "counter", "Total HTTP requests", [
                (_labels(method=m, path=p), self.requests[(m, p)]) for m, p in request_keys
            ])
            metric("request_duration_avg_seconds", "gauge", "Average request latency", [
                (_labels(method=m, path=p), f"{self.latency_total[(m, p)] / self.requests[(m, p)]:.4f}")
                for m, p in request_keys
            ])
            metric("errors_total", "counter", "HTTP responses with status 400 or above", [
                (_labels(method=m, path=p, status=s), count)
                for (m, p, s), count in sorted(self.errors.items())
            ])
            metric("active_requests", "gauge", "Requests in progress", [
                ("", self.active_requests),
            ])
            metric("cache_events_total", "counter", "Question cache events", [
                (_labels(event=event), count) for event, count in sorted(self.cache_events.items())
            ])

        metric("cache_entries", "gauge", "Cached questions", [("", cache_entries)])

        return "\n\n".join(sections) + "\n"


metrics = MetricsCollector()
