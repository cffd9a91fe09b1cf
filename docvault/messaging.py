"""In-process pub/sub used to fan audit records out to feed consumers."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, DefaultDict, Dict, List

logger = logging.getLogger(__name__)

Handler = Callable[["MessageEnvelope"], None]


@dataclass
class MessageEnvelope:
    topic: str
    payload: Dict[str, Any]
    retries: int = 0


class InMemoryBus:
    """Synchronous bus; a failing subscriber never blocks the publisher or its peers."""

    def __init__(self) -> None:
        self._subscribers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self.delivery_failures = 0

    def publish(self, envelope: MessageEnvelope) -> int:
        delivered = 0
        for callback in list(self._subscribers[envelope.topic]):
            try:
                callback(envelope)
            except Exception:
                self.delivery_failures += 1
                logger.exception("Subscriber failed for topic %s", envelope.topic)
                continue
            delivered += 1
        return delivered

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._subscribers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)


def build_bus(backend: str = "in-memory") -> InMemoryBus:
    if backend != "in-memory":
        raise NotImplementedError(f"Unsupported message bus backend: {backend}")
    return InMemoryBus()
