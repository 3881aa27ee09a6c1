from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, DefaultDict, List

from ..common.log import get_logger
from .models import EventEnvelope

Subscriber = Callable[[str, EventEnvelope], None]

WILDCARD = "*"

logger = get_logger(__name__)


@dataclass
class InProcessEventBus:
    """In-process publish/subscribe. Subscribers on `*` see every topic."""

    _subs: DefaultDict[str, List[Subscriber]] = field(default_factory=lambda: defaultdict(list))

    def subscribe(self, topic: str, fn: Subscriber) -> None:
        self._subs[topic].append(fn)

    def unsubscribe(self, topic: str, fn: Subscriber) -> None:
        subs = self._subs.get(topic)
        if subs and fn in subs:
            subs.remove(fn)

    def publish(self, topic: str, env: EventEnvelope) -> None:
        targets = list(self._subs.get(topic, [])) + list(self._subs.get(WILDCARD, []))
        if not targets:
            logger.debug("event dropped, no subscriber", extra={"topic": topic, "request_id": env.request_id})
        for fn in targets:
            fn(topic, env)
