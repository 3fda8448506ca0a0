"""JSON wire encoding for protocol frames and persisted history.

Frames use an externally tagged layout: a variant with a payload is a
single-key object (`{"Token": "he"}`), a unit variant is a bare string
(`"EndOfMessage"`). The persisted history document uses the same shape as the
`History` payload.
"""

from __future__ import annotations

import json
from typing import Any

from .chat_types import (
    AvailableModelsFrame,
    ChatHistory,
    ChatMessage,
    ClientMessage,
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


class ProtocolError(ValueError):
    """A frame or document does not match the expected wire shape."""


def _dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False)


def _loads(raw: str | bytes) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"Invalid JSON: {exc}") from exc


def _single_entry(obj: Any) -> tuple[str, Any]:
    if not isinstance(obj, dict) or len(obj) != 1:
        raise ProtocolError("Tagged frame must be an object with exactly one key")
    ((tag, payload),) = obj.items()
    return tag, payload


def _require_str(value: Any, what: str) -> str:
    if not isinstance(value, str):
        raise ProtocolError(f"{what} must be a string")
    return value


# -----------------------------------------------------------------------------
# History documents
# -----------------------------------------------------------------------------


def history_to_dict(history: ChatHistory) -> dict[str, Any]:
    return {
        "messages": [{"role": m.role.value, "content": m.content} for m in history.messages],
        "current_model": history.current_model,
    }


def history_from_dict(obj: Any) -> ChatHistory:
    if not isinstance(obj, dict):
        raise ProtocolError("History must be a JSON object")
    raw_messages = obj.get("messages")
    if not isinstance(raw_messages, list):
        raise ProtocolError("'messages' must be a list")

    messages: list[ChatMessage] = []
    for item in raw_messages:
        if not isinstance(item, dict):
            raise ProtocolError("Each message must be an object")
        try:
            role = Role(item.get("role"))
        except ValueError as exc:
            raise ProtocolError(f"Unknown role: {item.get('role')!r}") from exc
        messages.append(ChatMessage(role=role, content=_require_str(item.get("content"), "'content'")))

    current_model = _require_str(obj.get("current_model"), "'current_model'")
    return ChatHistory(messages=tuple(messages), current_model=current_model)


# -----------------------------------------------------------------------------
# Server -> Client
# -----------------------------------------------------------------------------


def encode_server_message(message: ServerMessage) -> str:
    match message:
        case HistoryFrame(history=history):
            return _dumps({"History": history_to_dict(history)})
        case TokenFrame(fragment=fragment):
            return _dumps({"Token": fragment})
        case EndOfMessageFrame():
            return _dumps("EndOfMessage")
        case ModelChangedFrame(identifier=identifier):
            return _dumps({"ModelChanged": identifier})
        case AvailableModelsFrame(identifiers=identifiers):
            return _dumps({"AvailableModels": list(identifiers)})
        case ErrorFrame(message=text):
            return _dumps({"Error": text})
    raise TypeError(f"Not a server message: {message!r}")


def decode_server_message(raw: str | bytes) -> ServerMessage:
    obj = _loads(raw)
    if obj == "EndOfMessage":
        return EndOfMessageFrame()

    tag, payload = _single_entry(obj)
    match tag:
        case "History":
            return HistoryFrame(history_from_dict(payload))
        case "Token":
            return TokenFrame(_require_str(payload, "Token"))
        case "ModelChanged":
            return ModelChangedFrame(_require_str(payload, "ModelChanged"))
        case "AvailableModels":
            if not isinstance(payload, list):
                raise ProtocolError("AvailableModels must be a list")
            return AvailableModelsFrame([_require_str(x, "model identifier") for x in payload])
        case "Error":
            return ErrorFrame(_require_str(payload, "Error"))
    raise ProtocolError(f"Unknown server frame: {tag!r}")


# -----------------------------------------------------------------------------
# Client -> Server
# -----------------------------------------------------------------------------


def encode_client_message(message: ClientMessage) -> str:
    match message:
        case TextMessage(content=content):
            return _dumps({"Text": content})
        case SetModelMessage(identifier=identifier):
            return _dumps({"SetModel": identifier})
    raise TypeError(f"Not a client message: {message!r}")


def decode_client_message(raw: str | bytes) -> ClientMessage:
    tag, payload = _single_entry(_loads(raw))
    match tag:
        case "Text":
            return TextMessage(_require_str(payload, "Text"))
        case "SetModel":
            return SetModelMessage(_require_str(payload, "SetModel"))
    raise ProtocolError(f"Unknown client frame: {tag!r}")


def parse_client_frame(raw: str) -> ClientMessage:
    """Decode an inbound frame, treating anything unrecognized as plain text.

    Older or hand-driven clients send bare strings; those become a `Text`
    message carrying the raw payload.
    """
    try:
        return decode_client_message(raw)
    except ProtocolError:
        return TextMessage(raw)
