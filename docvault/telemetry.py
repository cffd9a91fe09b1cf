"""In-process counters and event log for the control plane.

Totals are cumulative per metric name and survive the bounded sample buffer,
so ``/ops/metrics`` keeps reporting lifetime counts for a long-running API
process.  Per-label breakdowns (for example ``org_id``) are answered from the
retained samples only.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable

from .config import ObservabilityConfig
from .models import ObservabilityEvent, utcnow

logger = logging.getLogger("docvault.telemetry")

SNAPSHOT_COUNTERS = ("uploads.initiated", "uploads.completed", "audit.records", "billing.events")


@dataclass
class TelemetryCollector:
    config: ObservabilityConfig
    samples: Deque[Dict[str, object]] = field(init=False)
    events: Deque[ObservabilityEvent] = field(init=False)
    _totals: Dict[str, float] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.samples = deque(maxlen=self.config.metric_history)
        self.events = deque(maxlen=self.config.metric_history)

    def emit_metric(self, name: str, value: float, labels: Dict[str, str] | None = None) -> None:
        sample = {"name": name, "value": float(value), "timestamp": utcnow().isoformat(), **(labels or {})}
        with self._lock:
            self._totals[name] = self._totals.get(name, 0.0) + float(value)
            self.samples.append(sample)

    def emit_event(self, message: str, attributes: Dict[str, str] | None = None, *, source: str = "docvault") -> None:
        with self._lock:
            self.events.append(ObservabilityEvent(event_type=source, message=message, attributes=attributes))
        logger.debug("%s %s %s", source, message, attributes or {})

    def counter(self, name: str, **labels: str) -> float:
        with self._lock:
            if not labels:
                return self._totals.get(name, 0.0)
            return sum(
                float(sample["value"])
                for sample in self.samples
                if sample["name"] == name and all(sample.get(key) == value for key, value in labels.items())
            )

    def snapshot(self, names: Iterable[str] = SNAPSHOT_COUNTERS) -> Dict[str, float]:
        return {name: self.counter(name) for name in names}

    def flush(self) -> None:
        with self._lock:
            self._totals.clear()
            self.samples.clear()
            self.events.clear()
