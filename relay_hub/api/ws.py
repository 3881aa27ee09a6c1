from __future__ import annotations

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ..common.auth import check_ws_bearer
from ..common.errors import ApiError, SessionConflictError
from ..common.ids import new_request_id
from ..common.log import get_logger
from ..core.orchestrator import StreamOrchestrator
from ..events.bus import WILDCARD, InProcessEventBus
from ..events.models import EventEnvelope
from ..events.sink import BusEventSink
from ..models import WsCancel, WsRejected, WsSubmit

router = APIRouter()
logger = get_logger(__name__)


@router.websocket("/ws/relay")
async def ws_relay(websocket: WebSocket):
    # Auth (reject before accept)
    try:
        check_ws_bearer(websocket.headers.get("authorization"))
    except ApiError:
        await websocket.close(code=4401, reason="UNAUTHORIZED")
        return

    await websocket.accept()

    orch: StreamOrchestrator = websocket.app.state.orchestrator

    # one bus per connection: every event published for this socket's
    # requests ends up in its outbox, in publish order
    bus = InProcessEventBus()
    sink = BusEventSink(bus)
    outbox: asyncio.Queue[dict] = asyncio.Queue()

    def _enqueue(_topic: str, env: EventEnvelope) -> None:
        outbox.put_nowait(env.to_frame())

    bus.subscribe(WILDCARD, _enqueue)

    # live requests started from this socket; cancel is limited to these
    owned: dict[str, asyncio.Task] = {}

    def _release(request_id: str, task: asyncio.Task) -> None:
        # a follow-up may already have reused the id
        if owned.get(request_id) is task:
            del owned[request_id]

    def reject(code: str, message: str, request_id: Optional[str] = None) -> None:
        outbox.put_nowait(WsRejected(request_id=request_id, code=code, message=message).model_dump())

    def start(msg: WsSubmit) -> None:
        request_id = msg.request_id or new_request_id()
        try:
            task = orch.submit(
                msg.canonical_content(),
                request_id,
                sink,
                custom_prompt=msg.custom_prompt,
                command_name=msg.command_name,
            )
        except SessionConflictError as e:
            reject("CONFLICT", e.user_message, request_id)
            return
        owned[request_id] = task
        task.add_done_callback(lambda t, rid=request_id: _release(rid, t))

    def stop(msg: WsCancel) -> None:
        if msg.request_id not in owned:
            reject("NOT_FOUND", "no live request with this id on this connection", msg.request_id)
            return
        orch.cancel(msg.request_id)

    def handle_raw(raw_text: str) -> None:
        # tolerate invalid JSON and keep connection open
        try:
            obj = json.loads(raw_text)
        except ValueError:
            reject("INVALID_ARGUMENT", "invalid JSON")
            return
        if not isinstance(obj, dict):
            reject("INVALID_ARGUMENT", "message must be a JSON object")
            return

        t = obj.get("type")
        request_id = obj.get("request_id") if isinstance(obj.get("request_id"), str) else None
        try:
            if t == "submit":
                start(WsSubmit.model_validate(obj))
            elif t == "cancel":
                stop(WsCancel.model_validate(obj))
            else:
                reject("INVALID_ARGUMENT", f"unknown message type: {t!r}", request_id)
        except ValidationError as e:
            reject("INVALID_ARGUMENT", str(e), request_id)

    async def pump() -> None:
        while True:
            frame = await outbox.get()
            await websocket.send_json(frame)

    pump_task = asyncio.create_task(pump())
    try:
        while True:
            handle_raw(await websocket.receive_text())
    except WebSocketDisconnect:
        logger.info("relay socket closed", extra={"requests": len(owned)})
    finally:
        bus.unsubscribe(WILDCARD, _enqueue)
        for request_id in list(owned):
            orch.cancel(request_id)
        pump_task.cancel()
        # the client is gone; a failed send is expected here
        await asyncio.gather(pump_task, return_exceptions=True)
