"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Dict, Mapping, Tuple


class MetricsCollector:
    """Thread-safe metrics collector for consolidation sweeps and model calls."""

    SWEEP_DURATION_BUCKETS = (
        0.1,
        0.5,
        1.0,
        5.0,
        15.0,
        30.0,
        60.0,
        300.0,
        900.0,
    )

    def __init__(self) -> None:
        self._lock = threading.Lock()

        # Counters
        self._sweeps_total: Dict[str, int] = defaultdict(int)
        self._sweep_items_total: Dict[str, int] = defaultdict(int)
        self._model_calls_total: Dict[Tuple[str, str], int] = defaultdict(int)

        # Histogram (cumulative bucket counts)
        self._sweep_duration_buckets: list[int] = [0 for _ in self.SWEEP_DURATION_BUCKETS]
        self._sweep_duration_sum: float = 0.0
        self._sweep_duration_count: int = 0

        # Gauges
        self._graph_size: Dict[str, int] = {}

    def reset(self) -> None:
        """Reset all metrics (used by tests)."""
        with self._lock:
            self._sweeps_total.clear()
            self._sweep_items_total.clear()
            self._model_calls_total.clear()
            self._sweep_duration_buckets = [0 for _ in self.SWEEP_DURATION_BUCKETS]
            self._sweep_duration_sum = 0.0
            self._sweep_duration_count = 0
            self._graph_size = {}

    def record_sweep(
        self, status: str, duration_seconds: float, counts: Mapping[str, int]
    ) -> None:
        """Record one finished sweep: status counter, duration, per-kind item counts."""
        duration = max(0.0, float(duration_seconds))
        with self._lock:
            self._sweeps_total[status or "unknown"] += 1
            for idx, upper_bound in enumerate(self.SWEEP_DURATION_BUCKETS):
                if duration <= upper_bound:
                    self._sweep_duration_buckets[idx] += 1
            self._sweep_duration_sum += duration
            self._sweep_duration_count += 1
            for kind, value in counts.items():
                self._sweep_items_total[kind] += max(0, int(value))

    def record_model_call(self, purpose: str, outcome: str) -> None:
        with self._lock:
            self._model_calls_total[(purpose, outcome)] += 1

    def set_graph_size(self, sizes: Mapping[str, int]) -> None:
        cleaned = {str(k): max(0, int(v)) for k, v in sizes.items()}
        with self._lock:
            self._graph_size = cleaned

    def snapshot(self) -> Dict[str, Any]:
        """Take an immutable snapshot for exposition."""
        with self._lock:
            return {
                "sweeps_total": dict(self._sweeps_total),
                "sweep_items_total": dict(self._sweep_items_total),
                "model_calls_total": dict(self._model_calls_total),
                "sweep_duration_buckets": list(self._sweep_duration_buckets),
                "sweep_duration_sum": self._sweep_duration_sum,
                "sweep_duration_count": self._sweep_duration_count,
                "graph_size": dict(self._graph_size),
            }

    def render_prometheus(self) -> str:
        """Render snapshot in Prometheus exposition format (text/plain)."""
        snap = self.snapshot()
        lines: list[str] = []

        lines.append("# HELP memory_graph_sweeps_total Consolidation sweeps by final status.")
        lines.append("# TYPE memory_graph_sweeps_total counter")
        for status, count in sorted(snap["sweeps_total"].items()):
            lines.append(f'memory_graph_sweeps_total{{status="{_label_escape(status)}"}} {int(count)}')

        lines.append("# HELP memory_graph_sweep_duration_seconds Consolidation sweep duration.")
        lines.append("# TYPE memory_graph_sweep_duration_seconds histogram")
        for upper_bound, value in zip(self.SWEEP_DURATION_BUCKETS, snap["sweep_duration_buckets"]):
            lines.append(
                f'memory_graph_sweep_duration_seconds_bucket{{le="{_format_bucket(upper_bound)}"}} '
                f"{int(value)}"
            )
        lines.append(
            f'memory_graph_sweep_duration_seconds_bucket{{le="+Inf"}} {int(snap["sweep_duration_count"])}'
        )
        lines.append(
            f"memory_graph_sweep_duration_seconds_sum {_format_float(snap['sweep_duration_sum'])}"
        )
        lines.append(f"memory_graph_sweep_duration_seconds_count {int(snap['sweep_duration_count'])}")

        lines.append("# HELP memory_graph_sweep_items_total Items changed by sweeps, by kind.")
        lines.append("# TYPE memory_graph_sweep_items_total counter")
        for kind, count in sorted(snap["sweep_items_total"].items()):
            lines.append(f'memory_graph_sweep_items_total{{kind="{_label_escape(kind)}"}} {int(count)}')

        lines.append("# HELP memory_graph_model_calls_total Completion model calls by purpose and outcome.")
        lines.append("# TYPE memory_graph_model_calls_total counter")
        for (purpose, outcome), count in sorted(snap["model_calls_total"].items()):
            lines.append(
                "memory_graph_model_calls_total"
                f'{{purpose="{_label_escape(purpose)}",outcome="{_label_escape(outcome)}"}} '
                f"{int(count)}"
            )

        lines.append("# HELP memory_graph_size Current graph size, by object kind.")
        lines.append("# TYPE memory_graph_size gauge")
        for kind, total in sorted(snap["graph_size"].items()):
            lines.append(f'memory_graph_size{{kind="{_label_escape(kind)}"}} {int(total)}')

        return "\n".join(lines) + "\n"


collector = MetricsCollector()


def record_sweep(status: str, duration_seconds: float, counts: Mapping[str, int]) -> None:
    collector.record_sweep(status, duration_seconds, counts)


def record_model_call(purpose: str, outcome: str) -> None:
    collector.record_model_call(purpose, outcome)


def set_graph_size(sizes: Mapping[str, int]) -> None:
    collector.set_graph_size(sizes)


def render_prometheus_metrics() -> str:
    return collector.render_prometheus()


def reset_metrics() -> None:
    collector.reset()


def _label_escape(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_bucket(value: float) -> str:
    return f"{float(value):g}"


def _format_float(value: float) -> str:
    text = f"{float(value):.9f}".rstrip("0").rstrip(".")
    return text if text else "0"
