import pytest

from apps.cli.chat_repl import ChatView, ReplCommand, parse_repl_line
from apps.cli.client import ClientError, RelayClient
from apps.cli.main import build_parser
from chatrelay.engine.chat_types import (
    AvailableModelsFrame,
    ChatHistory,
    ChatMessage,
    EndOfMessageFrame,
    ErrorFrame,
    HistoryFrame,
    ModelChangedFrame,
    Role,
    SetModelMessage,
    TextMessage,
    TokenFrame,
)


def test_parser_global_url():
    parser = build_parser()
    args = parser.parse_args(["--url", "ws://example.invalid:9000/ws", "chat"])
    assert args.url == "ws://example.invalid:9000/ws"
    assert args.command == "chat"


def test_parser_defaults_to_chat():
    args = build_parser().parse_args([])
    assert args.command is None
    assert args.url == "ws://127.0.0.1:3001/ws"


def test_parse_repl_line():
    assert parse_repl_line("   ") is None
    assert parse_repl_line("hello there") == TextMessage("hello there")
    assert parse_repl_line("/model m2") == SetModelMessage("m2")
    assert parse_repl_line('/model "my model"') == SetModelMessage("my model")
    assert parse_repl_line("/model") == ReplCommand(name="model")
    assert parse_repl_line("/models") == ReplCommand(name="models")
    assert parse_repl_line("/exit") == ReplCommand(name="exit")
    assert parse_repl_line("/") == ReplCommand(name="")


def test_chat_view_tracks_a_conversation():
    view = ChatView()
    history = ChatHistory(messages=(ChatMessage(Role.USER, "hi"), ChatMessage(Role.ASSISTANT, "yo")), current_model="m1")

    out = view.apply(HistoryFrame(history))
    assert out == "you> hi\nassistant> yo\n[system] current model: m1\n"
    assert view.current_model == "m1"

    assert view.apply(AvailableModelsFrame(["m2", "m1"])) == "[system] available models: m1, m2\n"

    assert view.apply(TokenFrame("he")) == "he"
    assert view.apply(TokenFrame("llo")) == "llo"
    assert view.apply(EndOfMessageFrame()) == "\n"
    assert view.messages[-1] == ChatMessage(Role.ASSISTANT, "hello")
    assert view.pending == []

    assert view.apply(ModelChangedFrame("m2")) == "[system] model switched to m2\n"
    assert view.format_models() == "  m1\n* m2"

    assert view.apply(ErrorFrame("Unknown model: x")) == "[error] Unknown model: x\n"


def test_chat_view_without_models():
    assert ChatView().format_models() == "(no models reported yet)"


def test_client_reports_unreachable_server():
    client = RelayClient(url="ws://127.0.0.1:1/ws", open_timeout_s=2)
    with pytest.raises(ClientError, match="Failed to reach server"):
        client.connect()


def test_client_requires_connection():
    with pytest.raises(ClientError):
        RelayClient().send_text("hi")


def test_server_main_rejects_bad_config(tmp_path, capsys):
    from apps.server.main import main

    assert main(["--config", str(tmp_path / "missing.json")]) == 2
    assert "not found" in capsys.readouterr().err
