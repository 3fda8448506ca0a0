"""Per-connection protocol handler.

Each WebSocket connection runs one `ChatSession`:

    CONNECTED -> IDLE <-> GENERATING -> (IDLE | CLOSED)

Inbound frames are handled one at a time in arrival order, so every outbound
frame of a session is sent from a single task. Failures local to one request
(unknown model, backend errors) are reported as `Error` frames and the session
continues; a failed send ends the session.
"""

from __future__ import annotations

import contextlib
import logging
import uuid
from enum import Enum

from starlette.websockets import WebSocket, WebSocketDisconnect

from chatrelay.engine.chat_types import (
    AvailableModelsFrame,
    EndOfMessageFrame,
    ErrorFrame,
    HistoryFrame,
    ModelChangedFrame,
    Role,
    ServerMessage,
    SetModelMessage,
    TextMessage,
    TokenFrame,
)
from chatrelay.engine.process import ProcessError
from chatrelay.engine.protocol import encode_server_message, parse_client_frame
from chatrelay.engine.state import ServerState
from chatrelay.engine.streaming import UpstreamError

logger = logging.getLogger(__name__)


class SessionPhase(str, Enum):
    CONNECTED = "connected"
    IDLE = "idle"
    GENERATING = "generating"
    CLOSED = "closed"


class SessionClosed(Exception):
    """The transport failed; the session must stop processing frames."""


class ChatSession:
    def __init__(self, websocket: WebSocket, state: ServerState) -> None:
        self.websocket = websocket
        self.state = state
        self.session_id = uuid.uuid4().hex[:8]
        self.phase = SessionPhase.CONNECTED

    async def run(self) -> None:
        logger.info("session=%s connected", self.session_id)
        try:
            await self._handshake()
            while True:
                raw = await self._receive_text()
                if raw is None:
                    break
                await self.handle_frame(raw)
        except SessionClosed as exc:
            logger.info("session=%s transport failed: %s", self.session_id, exc)
            with contextlib.suppress(Exception):
                await self.websocket.close()
        finally:
            self.phase = SessionPhase.CLOSED
            logger.info("session=%s closed", self.session_id)

    async def handle_frame(self, raw: str) -> None:
        logger.debug("session=%s received: %s", self.session_id, raw)
        match parse_client_frame(raw):
            case SetModelMessage(identifier=identifier):
                await self._set_model(identifier)
            case TextMessage(content=content):
                await self._generate(content)

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _send(self, frame: ServerMessage) -> None:
        try:
            await self.websocket.send_text(encode_server_message(frame))
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            raise SessionClosed(str(exc) or type(exc).__name__) from exc

    async def _receive_text(self) -> str | None:
        while True:
            try:
                message = await self.websocket.receive()
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                raise SessionClosed(str(exc) or type(exc).__name__) from exc
            if message["type"] == "websocket.disconnect":
                return None
            text = message.get("text")
            if text is not None:
                return text
            logger.debug("session=%s ignoring binary frame", self.session_id)

    # -------------------------------------------------------------------------
    # Workflows
    # -------------------------------------------------------------------------

    async def _handshake(self) -> None:
        history = self.state.snapshot()
        await self._send(HistoryFrame(history))
        await self._send(AvailableModelsFrame(self.state.available_models()))
        self.phase = SessionPhase.IDLE

    async def _set_model(self, identifier: str) -> None:
        model = self.state.model_config(identifier)
        if model is None:
            logger.warning("session=%s model %r not found in config", self.session_id, identifier)
            await self._send(ErrorFrame(f"Unknown model: {identifier}"))
            return

        if self.phase is SessionPhase.GENERATING:
            await self._send(
                ErrorFrame("Cannot switch models while a response is being generated; retry when it finishes")
            )
            return

        logger.info("session=%s switching model to %r", self.session_id, identifier)
        try:
            await self.state.process_manager.restart(
                model.path,
                model.args,
                executable=self.state.config.executable_for(model),
            )
        except ProcessError as exc:
            logger.error("session=%s failed to switch model to %r: %s", self.session_id, identifier, exc)
            await self._send(ErrorFrame(f"Failed to switch model to {identifier}: {exc}"))
            return

        self.state.set_current_model(identifier)
        logger.info("session=%s model switched to %r", self.session_id, identifier)
        await self._send(ModelChangedFrame(identifier))

    async def _generate(self, content: str) -> None:
        history = self.state.append_message(Role.USER, content)
        self.phase = SessionPhase.GENERATING

        fragments: list[str] = []
        error: str | None = None
        try:
            try:
                stream = await self.state.stream_client.chat_stream(history.messages)
                async with stream:
                    async for fragment in stream:
                        fragments.append(fragment)
                        await self._send(TokenFrame(fragment))
            except SessionClosed:
                raise
            except UpstreamError as exc:
                error = str(exc)
            except Exception as exc:
                logger.exception("session=%s unexpected generation failure", self.session_id)
                error = f"Generation failed: {exc}"

            if error is not None:
                logger.warning("session=%s generation failed: %s", self.session_id, error)
                await self._send(ErrorFrame(error))
            await self._send(EndOfMessageFrame())
        finally:
            # Keep the User/Assistant pairing even when the client went away mid-stream.
            self.state.append_message(Role.ASSISTANT, "".join(fragments))
            self.phase = SessionPhase.IDLE
