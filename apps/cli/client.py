"""WebSocket client wrapper for talking to the chatrelay server.

Frames are encoded/decoded with `chatrelay.engine.protocol`, so the client and
server share one definition of the wire format.
"""

from __future__ import annotations

import logging
from typing import Iterator

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import ClientConnection, connect

from chatrelay.engine.chat_types import ClientMessage, ServerMessage, SetModelMessage, TextMessage
from chatrelay.engine.protocol import ProtocolError, decode_server_message, encode_client_message

logger = logging.getLogger(__name__)

DEFAULT_URL = "ws://127.0.0.1:3001/ws"


class ClientError(RuntimeError):
    pass


class RelayClient:
    def __init__(self, *, url: str = DEFAULT_URL, open_timeout_s: float = 10.0):
        self.url = url
        self.open_timeout_s = float(open_timeout_s)
        self._conn: ClientConnection | None = None

    def connect(self) -> None:
        try:
            self._conn = connect(self.url, open_timeout=self.open_timeout_s)
        except (OSError, TimeoutError, WebSocketException) as exc:
            raise ClientError(f"Failed to reach server at {self.url}: {exc}") from exc

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _connection(self) -> ClientConnection:
        if self._conn is None:
            raise ClientError("Not connected")
        return self._conn

    def send(self, message: ClientMessage) -> None:
        try:
            self._connection().send(encode_client_message(message))
        except ConnectionClosed as exc:
            raise ClientError(f"Connection closed: {exc}") from exc

    def send_text(self, content: str) -> None:
        self.send(TextMessage(content))

    def set_model(self, identifier: str) -> None:
        self.send(SetModelMessage(identifier))

    def frames(self) -> Iterator[ServerMessage]:
        """Yield decoded server frames until the connection closes.

        Frames that do not decode are logged and skipped.
        """
        conn = self._connection()
        while True:
            try:
                raw = conn.recv()
            except ConnectionClosed:
                return
            try:
                yield decode_server_message(raw)
            except ProtocolError as exc:
                logger.warning("Skipping undecodable frame: %s", exc)

    def __enter__(self) -> RelayClient:
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False
