from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from time import perf_counter
from typing import Iterable


_LATENCY_BUCKETS_MS = (1, 5, 10, 25, 50, 100, 250, 1000)


@dataclass(frozen=True)
class RequestTimer:
    started_at: float

    @staticmethod
    def start() -> "RequestTimer":
        return RequestTimer(started_at=perf_counter())

    def elapsed_ms(self) -> float:
        return max(0.0, (perf_counter() - self.started_at) * 1000.0)


class MetricsCollector:
    def __init__(self) -> None:
        self._lock = Lock()
        self._increments_total: dict[tuple[str, str], int] = {}
        self._evictions_total: dict[str, int] = {}
        self._backend_latency_sum_ms: dict[str, float] = {}
        self._backend_latency_count: dict[str, int] = {}
        self._backend_latency_bucket_count: dict[tuple[str, str], int] = {}

    def record_increment(self, *, backend: str, success: bool) -> None:
        key = (backend, "success" if success else "failed")
        with self._lock:
            self._increments_total[key] = self._increments_total.get(key, 0) + 1

    def record_evictions(self, *, backend: str, count: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self._evictions_total[backend] = self._evictions_total.get(backend, 0) + count

    def record_backend_call(self, *, operation: str, duration_ms: float) -> None:
        with self._lock:
            self._backend_latency_sum_ms[operation] = (
                self._backend_latency_sum_ms.get(operation, 0.0) + duration_ms
            )
            self._backend_latency_count[operation] = self._backend_latency_count.get(operation, 0) + 1
            for bucket_label in self._bucket_labels(duration_ms):
                bucket_key = (operation, bucket_label)
                self._backend_latency_bucket_count[bucket_key] = (
                    self._backend_latency_bucket_count.get(bucket_key, 0) + 1
                )

    def increments(self, *, backend: str, success: bool = True) -> int:
        with self._lock:
            return self._increments_total.get((backend, "success" if success else "failed"), 0)

    def evictions(self, *, backend: str) -> int:
        with self._lock:
            return self._evictions_total.get(backend, 0)

    def render_prometheus(self) -> str:
        with self._lock:
            lines: list[str] = []
            lines.append("# HELP limit_counter_increments_total Counter increments by backend and outcome.")
            lines.append("# TYPE limit_counter_increments_total counter")
            for (backend, outcome), count in sorted(self._increments_total.items()):
                lines.append(
                    f'limit_counter_increments_total{{backend="{backend}",outcome="{outcome}"}} {count}'
                )

            lines.append("# HELP limit_counter_evictions_total Expired buckets removed by backend.")
            lines.append("# TYPE limit_counter_evictions_total counter")
            for backend, count in sorted(self._evictions_total.items()):
                lines.append(f'limit_counter_evictions_total{{backend="{backend}"}} {count}')

            lines.append("# HELP limit_counter_backend_duration_ms Remote backend latency histogram in milliseconds.")
            lines.append("# TYPE limit_counter_backend_duration_ms histogram")
            for operation in sorted(self._backend_latency_count.keys()):
                for bucket in list(_LATENCY_BUCKETS_MS) + ["+Inf"]:
                    bucket_label = str(bucket)
                    bucket_count = self._backend_latency_bucket_count.get((operation, bucket_label), 0)
                    lines.append(
                        f'limit_counter_backend_duration_ms_bucket{{operation="{operation}",le="{bucket_label}"}} {bucket_count}'
                    )
                sum_value = self._backend_latency_sum_ms.get(operation, 0.0)
                count_value = self._backend_latency_count.get(operation, 0)
                lines.append(
                    f'limit_counter_backend_duration_ms_sum{{operation="{operation}"}} {sum_value:.4f}'
                )
                lines.append(
                    f'limit_counter_backend_duration_ms_count{{operation="{operation}"}} {count_value}'
                )

            return "\n".join(lines) + "\n"

    def _bucket_labels(self, duration_ms: float) -> Iterable[str]:
        labels: list[str] = []
        for bucket in _LATENCY_BUCKETS_MS:
            if duration_ms <= bucket:
                labels.append(str(bucket))
        labels.append("+Inf")
        return labels
