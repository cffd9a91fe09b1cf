"""Activity feed fed from the message bus."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

from ..messaging import InMemoryBus, MessageEnvelope
from ..models import User
from ..telemetry import TelemetryCollector
from .authorization import AuthorizationEngine
from .role_model import Action, ResourceClass


@dataclass
class ActivityService:
    bus: InMemoryBus
    telemetry: TelemetryCollector
    authorizer: AuthorizationEngine
    topics: List[str] = field(default_factory=lambda: ["audit.records"])
    buffer_size: int = 200
    events: Deque[MessageEnvelope] = field(init=False)

    def __post_init__(self) -> None:
        self.events = deque(maxlen=self.buffer_size)
        for topic in self.topics:
            self.bus.subscribe(topic, self._handle_event)

    def _handle_event(self, envelope: MessageEnvelope) -> None:
        self.events.append(envelope)
        self.telemetry.emit_event(
            f"activity_{envelope.topic}", {"org_id": str(envelope.payload.get("org_id"))}, source="ActivityService"
        )

    def feed(self, actor: User, *, limit: int = 50, topic: Optional[str] = None) -> List[MessageEnvelope]:
        """Most recent envelopes for the actor's organization, newest first."""
        self.authorizer.require(actor, ResourceClass.FILES, Action.READ)
        matches = [
            envelope
            for envelope in reversed(self.events)
            if envelope.payload.get("org_id") == actor.org_id and (topic is None or envelope.topic == topic)
        ]
        return matches[: max(limit, 0)]
