from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Iterator

PREFIX = "rentbilling_"


def _metric_name(name: str) -> str:
    return PREFIX + name.replace(".", "_").replace("-", "_")


class BillingMetrics:
    """
    Process-local counters and timings for the billing jobs.

    Counters are dotted names ("invoices.created"); timings keep a running
    sum and count so a scraper can derive averages.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._timings: dict[str, tuple[float, int]] = {}

    def inc(self, name: str, n: int = 1) -> None:
        with self._lock:
            self._counters[name] = int(self._counters.get(name, 0)) + int(n)

    def get(self, name: str) -> int:
        with self._lock:
            return int(self._counters.get(name, 0))

    def observe(self, name: str, seconds: float) -> None:
        with self._lock:
            total, count = self._timings.get(name, (0.0, 0))
            self._timings[name] = (total + float(seconds), count + 1)

    @contextmanager
    def timed(self, name: str) -> Iterator[None]:
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, time.perf_counter() - t0)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def render_text(self) -> str:
        """Prometheus exposition format (counters as *_total, timings as *_seconds_sum/_count)."""
        with self._lock:
            counters = sorted(self._counters.items())
            timings = sorted(self._timings.items())

        lines: list[str] = []
        for name, value in counters:
            metric = _metric_name(name) + "_total"
            lines.append(f"# TYPE {metric} counter")
            lines.append(f"{metric} {value}")
        for name, (total, count) in timings:
            metric = _metric_name(name) + "_seconds"
            lines.append(f"# TYPE {metric} summary")
            lines.append(f"{metric}_sum {total:.6f}")
            lines.append(f"{metric}_count {count}")
        return "\n".join(lines) + "\n"


METRICS = BillingMetrics()
