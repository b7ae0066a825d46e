"""Optional HTTP status surface for a running agent.

Endpoints:
    GET /v1/health   liveness plus subscription / last cycle state
    GET /v1/stats    AgentStats snapshot
    GET /metrics     Prometheus exposition

The server runs on the agent's event loop (uvicorn.Server.serve), so handlers
only read state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from . import __version__
from .metrics import instrument_fastapi
from .ops_stats import AgentStats

logger = logging.getLogger("sentinel_agent")


class HealthResponse(BaseModel):
    status: str
    version: str
    subscription_alive: Optional[bool] = None
    last_cycle_ok: Optional[bool] = None
    entities: int = 0


def create_app(
    stats: AgentStats,
    *,
    state: Optional[Callable[[], Dict[str, Any]]] = None,
    stats_token: Optional[str] = None,
) -> FastAPI:
    """Build the status app.

    state: callable returning live fields (subscription_alive, entities, ...)
    stats_token: when set, /v1/stats and /metrics require it as a bearer token.
    """
    app = FastAPI(title="Sentinel Agent", version=__version__)

    def _authorize(req: Request) -> bool:
        if not stats_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == stats_token:
            return True
        return False

    def _state() -> Dict[str, Any]:
        if state is None:
            return {}
        try:
            return dict(state())
        except Exception as e:
            logger.debug("Status state callback failed: %s", e)
            return {}

    instrument_fastapi(app, authorize=_authorize)

    @app.get("/v1/health", response_model=HealthResponse)
    async def health_check():
        snap = stats.snapshot()
        live = _state()
        alive = live.get("subscription_alive")
        degraded = alive is False or snap["last_cycle_ok"] is False
        return HealthResponse(
            status="degraded" if degraded else "healthy",
            version=__version__,
            subscription_alive=alive,
            last_cycle_ok=snap["last_cycle_ok"],
            entities=int(live.get("entities", snap["last_cycle_entities"])),
        )

    @app.get("/v1/stats")
    async def stats_endpoint(http_request: Request):
        if not _authorize(http_request):
            raise HTTPException(401, "STATS_UNAUTHORIZED")
        return stats.snapshot(extra=_state())

    return app


def start_status_server(app: FastAPI, host: str, port: int) -> "asyncio.Task":
    """Serve `app` on the running loop. Cancel the task to stop."""
    config = uvicorn.Config(app, host=host, port=port, log_level="warning")
    server = uvicorn.Server(config)
    # Signals belong to the agent.
    server.install_signal_handlers = lambda: None
    logger.info("Status server on http://%s:%d (/v1/health, /v1/stats, /metrics)", host, port)
    return asyncio.get_running_loop().create_task(server.serve())
