"""
In-process metrics for the storefront, exposed through `/admin/metrics`.

One `MetricsRegistry` per process holds counters (orders created, vendor
calls, rate-limit denials...), gauges, latency summaries and a short ring
of business events for the dashboard. The module-level functions write to
the shared registry so services never pass it around.
"""
from __future__ import annotations

import math
import threading
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

LabelSet = Tuple[Tuple[str, str], ...]

MAX_EVENTS = 100
# Recent samples kept per latency series for percentile estimates
LATENCY_WINDOW = 500


def label_set(labels: Optional[Dict[str, Any]]) -> LabelSet:
    return tuple(sorted((str(key), str(value)) for key, value in (labels or {}).items()))


class LatencySummary:
    """Running count/avg/min/max plus p95 over the most recent samples."""

    __slots__ = ("count", "total", "lowest", "highest", "recent")

    def __init__(self) -> None:
        self.count = 0
        self.total = 0.0
        self.lowest: Optional[float] = None
        self.highest: Optional[float] = None
        self.recent: Deque[float] = deque(maxlen=LATENCY_WINDOW)

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.lowest = value if self.lowest is None else min(self.lowest, value)
        self.highest = value if self.highest is None else max(self.highest, value)
        self.recent.append(value)

    def p95(self) -> Optional[float]:
        if not self.recent:
            return None
        ordered = sorted(self.recent)
        return ordered[max(0, math.ceil(len(ordered) * 95 / 100) - 1)]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "avg": self.total / self.count if self.count else 0.0,
            "min": self.lowest,
            "max": self.highest,
            "p95": self.p95(),
        }


class MetricsRegistry:
    def __init__(self, max_events: int = MAX_EVENTS) -> None:
        self._guard = threading.Lock()
        self._counters: Dict[str, Dict[LabelSet, float]] = {}
        self._gauges: Dict[str, Dict[LabelSet, float]] = {}
        self._latencies: Dict[str, Dict[LabelSet, LatencySummary]] = {}
        self._events: Deque[Dict[str, Any]] = deque(maxlen=max_events)

    def incr(self, name: str, amount: float, labels: Optional[Dict[str, Any]]) -> None:
        key = label_set(labels)
        with self._guard:
            series = self._counters.setdefault(name, {})
            series[key] = series.get(key, 0.0) + amount

    def gauge(self, name: str, value: float, labels: Optional[Dict[str, Any]]) -> None:
        with self._guard:
            self._gauges.setdefault(name, {})[label_set(labels)] = value

    def timing(self, name: str, value: float, labels: Optional[Dict[str, Any]]) -> None:
        key = label_set(labels)
        with self._guard:
            series = self._latencies.setdefault(name, {})
            if key not in series:
                series[key] = LatencySummary()
            series[key].add(value)

    def event(self, name: str, payload: Dict[str, Any]) -> None:
        with self._guard:
            self._events.append({"name": name, "timestamp": time.time(), "payload": payload})

    def counter_value(self, name: str, labels: Optional[Dict[str, Any]]) -> float:
        with self._guard:
            series = self._counters.get(name, {})
            if labels is None:
                return sum(series.values())
            return series.get(label_set(labels), 0.0)

    def snapshot(self) -> Dict[str, Any]:
        with self._guard:
            return {
                "counters": _flatten(self._counters, lambda value: {"value": value}),
                "gauges": _flatten(self._gauges, lambda value: {"value": value}),
                "histograms": _flatten(self._latencies, lambda summary: {"stats": summary.as_dict()}),
                "events": list(self._events),
            }

    def clear(self) -> None:
        with self._guard:
            self._counters.clear()
            self._gauges.clear()
            self._latencies.clear()
            self._events.clear()


def _flatten(families: Dict[str, Dict[LabelSet, Any]], render) -> Dict[str, List[Dict[str, Any]]]:
    return {
        name: [{"labels": dict(key), **render(value)} for key, value in series.items()]
        for name, series in families.items()
    }


registry = MetricsRegistry()


def increment_counter(name: str, amount: float = 1.0, labels: Optional[Dict[str, Any]] = None) -> None:
    registry.incr(name, amount, labels)


def set_gauge(name: str, value: float, labels: Optional[Dict[str, Any]] = None) -> None:
    registry.gauge(name, value, labels)


def observe_latency(name: str, value: float, labels: Optional[Dict[str, Any]] = None) -> None:
    registry.timing(name, value, labels)


def record_event(name: str, payload: Dict[str, Any]) -> None:
    """Keep the most recent business events for the admin dashboard."""
    registry.event(name, payload)


def get_counter_value(name: str, labels: Optional[Dict[str, Any]] = None) -> float:
    """Value of one labelled series, or the sum over all series when labels is None."""
    return registry.counter_value(name, labels)


def get_metrics_snapshot() -> Dict[str, Any]:
    return registry.snapshot()


def reset_metrics() -> None:
    """Testing helper."""
    registry.clear()
