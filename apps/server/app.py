"""FastAPI app exposing the chat relay over WebSocket.

The HTTP layer lives under `apps/` and can depend on heavier deps (FastAPI, uvicorn).
Conversation state and backend management are delegated to the core
(`chatrelay/engine`).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, WebSocket

from apps.server.session import ChatSession
from chatrelay import __version__
from chatrelay.engine.state import ServerState

logger = logging.getLogger(__name__)


def create_app(*, state: ServerState, manage_backend: bool = True) -> FastAPI:
    """Build the app around one shared `ServerState`.

    With `manage_backend`, the lifespan spawns the backend for the persisted
    model on startup and stops it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if manage_backend:
            started = await state.start_active_model()
            if started:
                print(f"[server] backend started model={state.snapshot().current_model!r}", flush=True)
            else:
                print("[server] backend not started; waiting for a model switch", flush=True)
        try:
            yield
        finally:
            if manage_backend:
                await state.shutdown()
                print("[server] backend stopped", flush=True)

    app = FastAPI(title="chatrelay", version=__version__, lifespan=lifespan)
    app.state.relay = state

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "model": state.snapshot().current_model,
            "backend": "running" if state.process_manager.running else "stopped",
        }

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        await ChatSession(websocket, state).run()

    return app
