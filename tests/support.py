"""
Shared fakes for the orchestrator tests: a recording sink and SSE helpers.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Iterable, Optional


def sse(*objs: Any) -> bytes:
    """Encode objects (or raw strings) as `data: ...` lines."""
    out = []
    for obj in objs:
        payload = obj if isinstance(obj, str) else json.dumps(obj)
        out.append(f"data: {payload}\n\n")
    return "".join(out).encode("utf-8")


def openai_chunk(text: str) -> dict:
    return {"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}]}


async def body(chunks: Iterable[bytes], *, hang_after: Optional[float] = None) -> AsyncIterator[bytes]:
    """Async body that yields `chunks` one read at a time, then optionally goes silent."""
    for c in chunks:
        await asyncio.sleep(0)
        yield c
    if hang_after is not None:
        await asyncio.sleep(hang_after)


class RecordingSink:
    """EventSink that keeps every event in order."""

    def __init__(self) -> None:
        self.events: list[tuple] = []
        self._delta_count = 0
        self._delta_waiters: list[tuple[int, asyncio.Event]] = []

    def kinds(self) -> list[str]:
        return [e[0] for e in self.events]

    def of(self, kind: str) -> list[tuple]:
        return [e[1:] for e in self.events if e[0] == kind]

    def deltas(self) -> list[str]:
        return [e[2] for e in self.events if e[0] == "delta"]

    async def wait_for_deltas(self, n: int, timeout: float = 2.0) -> None:
        if self._delta_count >= n:
            return
        ev = asyncio.Event()
        self._delta_waiters.append((n, ev))
        await asyncio.wait_for(ev.wait(), timeout)

    async def loading_started(self, request_id):
        self.events.append(("loading_started", request_id))

    async def loading_ended(self, request_id):
        self.events.append(("loading_ended", request_id))

    async def delta(self, request_id, text):
        self.events.append(("delta", request_id, text))
        self._delta_count += 1
        for n, ev in self._delta_waiters:
            if self._delta_count >= n:
                ev.set()

    async def notice(self, request_id, text):
        self.events.append(("notice", request_id, text))

    async def stream_end(self, request_id, full_response, original_context):
        self.events.append(("stream_end", request_id, full_response, original_context))

    async def error(self, request_id, message):
        self.events.append(("error", request_id, message))

    async def input_unlocked(self, request_id, placeholder_kind):
        self.events.append(("input_unlocked", request_id, placeholder_kind))
