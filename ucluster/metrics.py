"""
ClusterMetrics: counters for cache effectiveness, scatter outcomes and placement.

Thread-safe, in-memory collection with Prometheus-compatible export.
One instance per ClusterDirectory; pass the same instance to several
directories to aggregate them.

Usage:
    metrics = ClusterMetrics()
    directory = ClusterDirectory(fleet, cache, metrics=metrics)
    ...
    print(metrics.snapshot()["scatter"])
    print(metrics.prometheus_format())
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Dict, List


class _CounterValue:
    """Thread-safe counter."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._value += amount

    def get(self) -> int:
        with self._lock:
            return self._value


class _LabelledCounter:
    """Counter keyed by node identifier."""

    def __init__(self) -> None:
        self._values: Dict[str, _CounterValue] = defaultdict(_CounterValue)
        self._lock = threading.Lock()

    def inc(self, label: str, amount: int = 1) -> None:
        with self._lock:
            counter = self._values[label]
        counter.inc(amount)

    def get(self) -> Dict[str, int]:
        with self._lock:
            return {k: v.get() for k, v in self._values.items()}

    def total(self) -> int:
        return sum(self.get().values())


class ClusterMetrics:
    """
    Counters for the location and placement engine.

    Scatter outcomes are split three ways so "nobody has it" can be told
    apart from "nothing was reachable", although both return no owner.
    """

    def __init__(self) -> None:
        self.cache_hits = _CounterValue()
        self.cache_misses = _CounterValue()
        self.cache_stale = _CounterValue()
        self.cache_corrupt = _CounterValue()
        self.cache_write_failures = _CounterValue()

        self.scatter_found = _CounterValue()
        self.scatter_not_found = _CounterValue()
        self.scatter_unreachable = _CounterValue()

        self.node_errors = _LabelledCounter()
        self.placements = _LabelledCounter()
        self.resumes = _CounterValue()

    def snapshot(self) -> Dict[str, Any]:
        """
        Get a point-in-time copy of every counter.

        Returns:
            Dict with "cache", "scatter", "placement" sections plus
            per-node error counts.
        """
        hits = self.cache_hits.get()
        lookups = hits + self.cache_misses.get() + self.cache_stale.get()
        return {
            "cache": {
                "hits": hits,
                "misses": self.cache_misses.get(),
                "stale": self.cache_stale.get(),
                "corrupt": self.cache_corrupt.get(),
                "write_failures": self.cache_write_failures.get(),
                "hit_ratio": hits / lookups if lookups else 0.0,
            },
            "scatter": {
                "found": self.scatter_found.get(),
                "not_found": self.scatter_not_found.get(),
                "unreachable": self.scatter_unreachable.get(),
            },
            "placement": {
                "by_node": self.placements.get(),
                "total": self.placements.total(),
                "resumes": self.resumes.get(),
            },
            "node_errors": self.node_errors.get(),
        }

    def prometheus_format(self) -> str:
        """
        Export metrics in Prometheus text exposition format.

        Returns:
            String suitable for a /metrics endpoint.
        """
        lines: List[str] = []

        lines.append("# HELP ucluster_cache_lookups_total Location cache lookups by result")
        lines.append("# TYPE ucluster_cache_lookups_total counter")
        for result, counter in (
            ("hit", self.cache_hits),
            ("miss", self.cache_misses),
            ("stale", self.cache_stale),
            ("corrupt", self.cache_corrupt),
        ):
            lines.append(f'ucluster_cache_lookups_total{{result="{result}"}} {counter.get()}')

        lines.append("")
        lines.append("# HELP ucluster_cache_write_failures_total Failed background cache writes")
        lines.append("# TYPE ucluster_cache_write_failures_total counter")
        lines.append(f"ucluster_cache_write_failures_total {self.cache_write_failures.get()}")

        lines.append("")
        lines.append("# HELP ucluster_scatter_total Scatter searches by outcome")
        lines.append("# TYPE ucluster_scatter_total counter")
        for outcome, counter in (
            ("found", self.scatter_found),
            ("not_found", self.scatter_not_found),
            ("unreachable", self.scatter_unreachable),
        ):
            lines.append(f'ucluster_scatter_total{{outcome="{outcome}"}} {counter.get()}')

        lines.append("")
        lines.append("# HELP ucluster_node_errors_total Failed node calls during fan-out")
        lines.append("# TYPE ucluster_node_errors_total counter")
        for node, value in sorted(self.node_errors.get().items()):
            lines.append(f'ucluster_node_errors_total{{node="{node}"}} {value}')

        lines.append("")
        lines.append("# HELP ucluster_placements_total New tasks placed per node")
        lines.append("# TYPE ucluster_placements_total counter")
        for node, value in sorted(self.placements.get().items()):
            lines.append(f'ucluster_placements_total{{node="{node}"}} {value}')

        lines.append("")
        lines.append("# HELP ucluster_resumes_total Re-adds resumed on the existing owner")
        lines.append("# TYPE ucluster_resumes_total counter")
        lines.append(f"ucluster_resumes_total {self.resumes.get()}")

        return "\n".join(lines) + "\n"
