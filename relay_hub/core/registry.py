from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from ..common.errors import SessionConflictError
from ..common.ids import utc_now_iso
from ..events.sink import EventSink


class StreamState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    STALLED = "stalled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


@dataclass(eq=False)
class RequestSession:
    """Bookkeeping for one in-flight request.

    Compared by identity: a follow-up may reuse the id of a retired session,
    and work left over from the old one must not mistake the new session for
    its own.
    """

    id: str
    destination: EventSink
    cancelled: bool = False
    created_at_utc: str = field(default_factory=utc_now_iso)
    task: Optional[asyncio.Task] = None
    started: bool = False
    state: StreamState = StreamState.IDLE
    _parts: list[str] = field(default_factory=list, repr=False)

    @property
    def accumulated_text(self) -> str:
        return "".join(self._parts)

    def append(self, text: str) -> None:
        self._parts.append(text)


@dataclass(frozen=True)
class SessionInfo:
    request_id: str
    created_at_utc: str
    accumulated_chars: int
    state: str


class RequestRegistry:
    """Keyed store of live RequestSessions.

    All operations take one lock, so they are atomic with respect to each other
    even when sessions are driven from several threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: Dict[str, RequestSession] = {}

    def create(self, request_id: str, destination: EventSink) -> RequestSession:
        with self._lock:
            if request_id in self._items:
                raise SessionConflictError(request_id)
            session = RequestSession(id=request_id, destination=destination)
            self._items[request_id] = session
            return session

    def get(self, request_id: str) -> Optional[RequestSession]:
        with self._lock:
            return self._items.get(request_id)

    def is_live(self, session: RequestSession) -> bool:
        """True while `session` (this exact object) is registered and not cancelled."""
        with self._lock:
            return self._items.get(session.id) is session and not session.cancelled

    def remove(self, request_id: str, session: Optional[RequestSession] = None) -> bool:
        """Retire a session. With `session`, only that exact object is removed."""
        with self._lock:
            current = self._items.get(request_id)
            if current is None or (session is not None and current is not session):
                return False
            del self._items[request_id]
            return True

    def cancel(self, request_id: str) -> Optional[RequestSession]:
        """Mark cancelled and retire in one step. None if nothing was live."""
        with self._lock:
            session = self._items.pop(request_id, None)
            if session is None:
                return None
            session.cancelled = True
            return session

    def snapshot(self) -> list[SessionInfo]:
        with self._lock:
            return [
                SessionInfo(
                    request_id=s.id,
                    created_at_utc=s.created_at_utc,
                    accumulated_chars=len(s.accumulated_text),
                    state=s.state.value,
                )
                for s in self._items.values()
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
