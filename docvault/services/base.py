"""Shared plumbing for control-plane services."""

from __future__ import annotations

from dataclasses import dataclass

from ..config import DocVaultConfig
from ..telemetry import TelemetryCollector


@dataclass
class BaseService:
    config: DocVaultConfig
    telemetry: TelemetryCollector

    @property
    def service_name(self) -> str:
        return type(self).__name__

    def emit_metric(self, name: str, value: float, **labels: str) -> None:
        self.telemetry.emit_metric(name, value, labels)

    def emit_event(self, message: str, **attrs: str) -> None:
        self.telemetry.emit_event(message, attrs, source=self.service_name)
