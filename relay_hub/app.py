from __future__ import annotations

from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from .api.http import router as http_router
from .api.ws import router as ws_router
from .common.errors import ApiError
from .common.log import configure_logging, get_logger
from .core.config import ConfigManager, RelayConfig
from .core.orchestrator import StreamOrchestrator
from .core.registry import RequestRegistry
from .models import ErrorEnvelope

logger = get_logger(__name__)


def create_app(
    config: Optional[RelayConfig] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the service. Run with `uvicorn relay_hub.app:create_app --factory`.

    `transport` replaces the network for outgoing provider calls (tests).
    """
    cfg = config or ConfigManager().load()
    configure_logging(level=cfg.log_level, json_mode=cfg.log_json)

    app = FastAPI(title="Relay Hub")

    # CORS (dev-friendly; tighten in prod)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = cfg
    app.state.registry = RequestRegistry()
    # settings are read per request, so a config swap on app.state takes effect
    # for the next submit without a restart
    app.state.orchestrator = StreamOrchestrator(
        settings=lambda: app.state.config.llm,
        registry=app.state.registry,
        transport=transport,
    )

    logger.info(
        "relay hub configured",
        extra={
            "provider": cfg.llm.provider.value,
            "api_key_set": bool(cfg.llm.api_key),
            "debug_mode": cfg.llm.debug_mode,
        },
    )

    @app.on_event("shutdown")
    def _shutdown() -> None:
        for s in app.state.registry.snapshot():
            app.state.orchestrator.cancel(s.request_id)

    @app.exception_handler(ApiError)
    async def api_error_handler(_, exc: ApiError):
        body = ErrorEnvelope(code=exc.code, message=exc.message, data=exc.data or {})
        return JSONResponse(status_code=exc.http_status, content=body.model_dump())

    app.include_router(http_router, prefix="/v1")
    app.include_router(ws_router, prefix="/v1")
    return app
