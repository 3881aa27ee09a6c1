from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..common.auth import require_bearer
from ..common.ids import utc_now_iso
from ..core.orchestrator import StreamOrchestrator
from ..models import CancelResult, OkEnvelope, SessionItem, SessionListResult

router = APIRouter()


def ok(data: dict):
    return OkEnvelope(data=data)


@router.get("/health")
def health_check(request: Request):
    # Health endpoint must be public (no auth)
    cfg = request.app.state.config
    return ok(
        {
            "service": "relay_hub",
            "time_utc": utc_now_iso(),
            "provider": cfg.llm.provider.value,
            "debug_mode": cfg.llm.debug_mode,
        }
    ).model_dump()


@router.get("/requests")
def list_requests(request: Request, _: None = Depends(require_bearer)):
    orch: StreamOrchestrator = request.app.state.orchestrator
    items = [
        SessionItem(
            request_id=s.request_id,
            created_at_utc=s.created_at_utc,
            accumulated_chars=s.accumulated_chars,
            state=s.state,
        )
        for s in orch.registry.snapshot()
    ]
    return ok(SessionListResult(items=items).model_dump()).model_dump()


@router.delete("/requests/{request_id}")
def cancel_request(request: Request, request_id: str, _: None = Depends(require_bearer)):
    # cancelling an unknown or finished id is a no-op, not an error
    orch: StreamOrchestrator = request.app.state.orchestrator
    cancelled = orch.cancel(request_id)
    return ok(CancelResult(request_id=request_id, cancelled=cancelled).model_dump()).model_dump()
