from __future__ import annotations

from typing import Any, Optional, Protocol

from ..common.ids import new_event_id, utc_now_iso
from .bus import InProcessEventBus
from .models import EventEnvelope, EventType

TOPIC_PREFIX = "relay."


class EventSink(Protocol):
    """Destination of one request's outbound events (the UI surface)."""

    async def loading_started(self, request_id: str) -> None:
        ...

    async def loading_ended(self, request_id: str) -> None:
        ...

    async def delta(self, request_id: str, text: str) -> None:
        ...

    async def notice(self, request_id: str, text: str) -> None:
        ...

    async def stream_end(self, request_id: str, full_response: str, original_context: Optional[str]) -> None:
        ...

    async def error(self, request_id: str, message: str) -> None:
        ...

    async def input_unlocked(self, request_id: str, placeholder_kind: str) -> None:
        ...


class BusEventSink:
    """EventSink that publishes envelopes on an InProcessEventBus (topic relay.<event>)."""

    def __init__(self, bus: InProcessEventBus) -> None:
        self.bus = bus

    def _publish(self, event_type: EventType, request_id: str, **payload: Any) -> None:
        env = EventEnvelope(
            event_id=new_event_id(),
            request_id=request_id,
            occurred_at_utc=utc_now_iso(),
            type=event_type,
            payload=payload,
        )
        self.bus.publish(TOPIC_PREFIX + event_type, env)

    async def loading_started(self, request_id: str) -> None:
        self._publish("loading_started", request_id)

    async def loading_ended(self, request_id: str) -> None:
        self._publish("loading_ended", request_id)

    async def delta(self, request_id: str, text: str) -> None:
        self._publish("delta", request_id, text=text)

    async def notice(self, request_id: str, text: str) -> None:
        self._publish("notice", request_id, text=text)

    async def stream_end(self, request_id: str, full_response: str, original_context: Optional[str]) -> None:
        self._publish("stream_end", request_id, full_response=full_response, original_context=original_context)

    async def error(self, request_id: str, message: str) -> None:
        self._publish("error", request_id, message=message)

    async def input_unlocked(self, request_id: str, placeholder_kind: str) -> None:
        self._publish("input_unlocked", request_id, placeholder_kind=placeholder_kind)
