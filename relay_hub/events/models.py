from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

EventType = Literal[
    "loading_started",
    "loading_ended",
    "delta",
    "notice",
    "stream_end",
    "error",
    "input_unlocked",
]


@dataclass(frozen=True)
class EventEnvelope:
    """One outbound sink event.

    Note:
    - Topic naming is handled by the sink (e.g. relay.delta).
    - `type` is the bare event name without the `relay.` prefix.
    """

    event_id: str
    request_id: str
    occurred_at_utc: str
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)

    def to_frame(self) -> dict[str, Any]:
        return {"type": self.type, "request_id": self.request_id, **self.payload}
