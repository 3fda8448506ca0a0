"""Core conversation, configuration, and protocol frame types.

These types are shared by the history store, the shared server state, the
session handler, and the terminal client. They are intentionally decoupled from:
- the WebSocket transport (FastAPI / websockets)
- the upstream OpenAI-style JSON envelopes

Wire encoding/decoding lives in `chatrelay.engine.protocol`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    """Author of a chat message. Values match the wire/persisted spelling."""

    USER = "User"
    ASSISTANT = "Assistant"

    @property
    def upstream(self) -> str:
        """Lowercase role name expected by OpenAI-style backends."""
        return self.value.lower()


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str


@dataclass(frozen=True)
class ChatHistory:
    """An immutable snapshot of the conversation and the active model."""

    messages: tuple[ChatMessage, ...] = ()
    current_model: str = ""

    def appended(self, message: ChatMessage) -> ChatHistory:
        return ChatHistory(messages=self.messages + (message,), current_model=self.current_model)

    def with_model(self, identifier: str) -> ChatHistory:
        return ChatHistory(messages=self.messages, current_model=identifier)


@dataclass(frozen=True)
class ModelConfig:
    """How to launch the backend for one configured model."""

    identifier: str
    path: str
    args: tuple[str, ...] = ()
    executable: str | None = None  # Overrides ServerConfig.executable for this model


@dataclass(frozen=True)
class ServerConfig:
    models: dict[str, ModelConfig]
    default_model: str
    executable: str = "llama-server"
    backend_host: str = "127.0.0.1"
    backend_port: int = 8080

    def model_ids(self) -> list[str]:
        return sorted(self.models)

    def executable_for(self, model: ModelConfig) -> str:
        return model.executable or self.executable


# -----------------------------------------------------------------------------
# Client -> Server frames
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class TextMessage:
    content: str


@dataclass(frozen=True)
class SetModelMessage:
    identifier: str


ClientMessage = TextMessage | SetModelMessage


# -----------------------------------------------------------------------------
# Server -> Client frames
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class HistoryFrame:
    history: ChatHistory


@dataclass(frozen=True)
class TokenFrame:
    fragment: str


@dataclass(frozen=True)
class EndOfMessageFrame:
    pass


@dataclass(frozen=True)
class ModelChangedFrame:
    identifier: str


@dataclass(frozen=True)
class AvailableModelsFrame:
    identifiers: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ErrorFrame:
    message: str


ServerMessage = (
    HistoryFrame | TokenFrame | EndOfMessageFrame | ModelChangedFrame | AvailableModelsFrame | ErrorFrame
)
