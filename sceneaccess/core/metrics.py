"""
Process-local counters rendered in the Prometheus text format.

Each counter declares its label names up front; samples are keyed by the label
values in that order. Nothing is shared between replicas: scrape each one.
"""

import threading
from typing import Dict, Iterable, List, Tuple


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


class Counter:
    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        self.name = name
        self.description = description
        self.label_names: Tuple[str, ...] = tuple(label_names)
        self._samples: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Dict[str, object]) -> Tuple[str, ...]:
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name}: unknown labels {sorted(unknown)}")
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def inc(self, amount: float = 1.0, **labels) -> None:
        key = self._key(labels)
        with self._lock:
            self._samples[key] = self._samples.get(key, 0.0) + amount

    def value(self, **labels) -> float:
        key = self._key(labels)
        with self._lock:
            return self._samples.get(key, 0.0)

    def render(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} counter"]
        with self._lock:
            samples = sorted(self._samples.items())
        for values, total in samples:
            if self.label_names:
                pairs = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, values))
                lines.append(f"{self.name}{{{pairs}}} {total}")
            else:
                lines.append(f"{self.name} {total}")
        return lines

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()


class MetricsRegistry:
    def __init__(self):
        self._counters: Dict[str, Counter] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, description: str, label_names: Iterable[str] = ()) -> Counter:
        with self._lock:
            existing = self._counters.get(name)
            if existing is None:
                existing = self._counters[name] = Counter(name, description, label_names)
            return existing

    def render(self) -> str:
        with self._lock:
            counters = list(self._counters.values())
        lines: List[str] = []
        for counter in counters:
            lines.extend(counter.render())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            counters = list(self._counters.values())
        for counter in counters:
            counter.clear()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", "HTTP requests by method, route and status.", ["method", "route", "status"]
)
perimeter_rejections_total = METRICS.counter(
    "perimeter_rejections_total", "Requests refused by the origin guard or the rate limiter.", ["reason"]
)
access_checks_total = METRICS.counter(
    "access_checks_total", "Entitlement decisions by resulting access type.", ["access_type"]
)
free_slot_grants_total = METRICS.counter(
    "free_slot_grants_total", "Free-slot grant calls by outcome.", ["outcome"]
)
