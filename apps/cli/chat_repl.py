from __future__ import annotations

import atexit
import os
import shlex
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path

# Enable readline for arrow keys, history navigation, and line editing.
try:
    import readline
except ImportError:
    readline = None  # type: ignore[assignment]  # Windows fallback

from apps.cli.client import ClientError, RelayClient
from chatrelay.engine.chat_types import (
    AvailableModelsFrame,
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

_CHAT_COMMANDS = ["/help", "/exit", "/model", "/models"]


def config_dir() -> Path:
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg_config_home) if xdg_config_home else (Path.home() / ".config")
    return base / "chatrelay"


def _setup_readline(models: list[str]) -> None:
    """Persistent input history plus tab completion for commands and model ids."""
    if readline is None:
        return
    history_file = config_dir() / "input_history"
    history_file.parent.mkdir(parents=True, exist_ok=True)
    try:
        readline.read_history_file(history_file)
    except (FileNotFoundError, OSError):
        pass
    readline.set_history_length(1000)
    atexit.register(readline.write_history_file, history_file)

    def completer(text: str, state: int) -> str | None:
        buffer = readline.get_line_buffer()
        if buffer.startswith("/model "):
            matches = [m for m in models if m.startswith(text)]
        elif text.startswith("/"):
            matches = [cmd for cmd in _CHAT_COMMANDS if cmd.startswith(text)]
        else:
            matches = []
        return matches[state] if state < len(matches) else None

    readline.set_completer(completer)
    readline.set_completer_delims(" \t\n")
    readline.parse_and_bind("tab: complete")


@dataclass(frozen=True)
class ReplCommand:
    name: str
    args: list[str] = field(default_factory=list)


def parse_repl_line(line: str) -> ClientMessage | ReplCommand | None:
    """Map one input line onto a protocol message or a local command.

    `/model <id>` is shorthand for a model switch; other `/...` lines are local
    commands; anything else is chat text.
    """
    stripped = line.strip()
    if not stripped:
        return None
    if not stripped.startswith("/"):
        return TextMessage(line)

    try:
        parts = shlex.split(stripped[1:])
    except ValueError:
        parts = stripped[1:].split()
    if not parts:
        return ReplCommand(name="")
    name, args = parts[0], parts[1:]
    if name == "model" and args:
        return SetModelMessage(" ".join(args))
    return ReplCommand(name=name, args=args)


@dataclass
class ChatView:
    """Client-side mirror of the conversation, updated frame by frame."""

    current_model: str = "unknown"
    available_models: list[str] = field(default_factory=list)
    messages: list[ChatMessage] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)

    def apply(self, frame: ServerMessage) -> str:
        """Update the view and return the text to print for this frame."""
        match frame:
            case HistoryFrame(history=history):
                self.messages = list(history.messages)
                self.current_model = history.current_model
                lines = [_format_message(m) for m in self.messages]
                lines.append(f"[system] current model: {self.current_model}")
                return "\n".join(lines) + "\n"
            case TokenFrame(fragment=fragment):
                self.pending.append(fragment)
                return fragment
            case EndOfMessageFrame():
                self.messages.append(ChatMessage(role=Role.ASSISTANT, content="".join(self.pending)))
                self.pending.clear()
                return "\n"
            case ModelChangedFrame(identifier=identifier):
                self.current_model = identifier
                return f"[system] model switched to {identifier}\n"
            case AvailableModelsFrame(identifiers=identifiers):
                self.available_models = sorted(identifiers)
                return f"[system] available models: {', '.join(self.available_models) or '(none)'}\n"
            case ErrorFrame(message=message):
                return f"[error] {message}\n"
        return ""

    def format_models(self) -> str:
        if not self.available_models:
            return "(no models reported yet)"
        rows = []
        for model in self.available_models:
            marker = "*" if model == self.current_model else " "
            rows.append(f"{marker} {model}")
        return "\n".join(rows)


def _format_message(message: ChatMessage) -> str:
    prefix = "you" if message.role is Role.USER else "assistant"
    return f"{prefix}> {message.content}"


def _cmd_help() -> None:
    print(
        "\n".join(
            [
                "commands:",
                "  /model <id>   switch the active model",
                "  /models       list configured models (* = active)",
                "  /help         show this help",
                "  /exit         quit",
            ]
        )
    )


class _FrameReader(threading.Thread):
    """Prints server frames as they arrive and signals when a turn settles."""

    def __init__(self, client: RelayClient, view: ChatView) -> None:
        super().__init__(daemon=True)
        self.client = client
        self.view = view
        self.ready = threading.Event()
        self.settled = threading.Event()
        self.closed = threading.Event()
        self._awaiting_turn = False

    def expect(self, message: ClientMessage) -> None:
        self._awaiting_turn = isinstance(message, TextMessage)
        self.settled.clear()

    def run(self) -> None:
        try:
            for frame in self.client.frames():
                out = self.view.apply(frame)
                stream = sys.stderr if isinstance(frame, ErrorFrame) else sys.stdout
                stream.write(out)
                stream.flush()
                if isinstance(frame, AvailableModelsFrame):
                    self.ready.set()
                if isinstance(frame, EndOfMessageFrame):
                    self.settled.set()
                elif isinstance(frame, (ModelChangedFrame, ErrorFrame)) and not self._awaiting_turn:
                    # A generation error is always followed by EndOfMessage.
                    self.settled.set()
        finally:
            self.closed.set()
            self.ready.set()
            self.settled.set()


def chat_repl(*, url: str) -> int:
    client = RelayClient(url=url)
    try:
        client.connect()
    except ClientError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    view = ChatView()
    reader = _FrameReader(client, view)
    reader.start()
    try:
        reader.ready.wait()
        if reader.closed.is_set():
            print("connection closed by server", file=sys.stderr)
            return 1
        _setup_readline(view.available_models)
        print("type /help for commands")

        while not reader.closed.is_set():
            try:
                line = input(f"[{view.current_model}] > ")
            except EOFError:
                print()
                return 0
            except KeyboardInterrupt:
                print()
                return 0

            parsed = parse_repl_line(line)
            if parsed is None:
                continue
            if isinstance(parsed, ReplCommand):
                if parsed.name in {"exit", "quit"}:
                    return 0
                if parsed.name == "help":
                    _cmd_help()
                elif parsed.name == "models":
                    print(view.format_models())
                elif parsed.name == "model":
                    print("usage: /model <id>", file=sys.stderr)
                else:
                    print(f"unknown command: /{parsed.name}", file=sys.stderr)
                continue

            if isinstance(parsed, TextMessage):
                view.messages.append(ChatMessage(role=Role.USER, content=parsed.content))
            reader.expect(parsed)
            try:
                client.send(parsed)
            except ClientError as exc:
                print(str(exc), file=sys.stderr)
                return 1
            try:
                reader.settled.wait()
            except KeyboardInterrupt:
                print("\n(stopped waiting; the server finishes the turn in the background)")

        print("connection closed by server", file=sys.stderr)
        return 1
    finally:
        client.close()
