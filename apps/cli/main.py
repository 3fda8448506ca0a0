"""`chatrelay` - terminal client for the chatrelay server (WebSocket).

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from apps.cli.chat_repl import ChatView, chat_repl
from apps.cli.client import DEFAULT_URL, ClientError, RelayClient
from chatrelay.engine.chat_types import AvailableModelsFrame, HistoryFrame


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="chatrelay", description="chatrelay terminal client")
    p.add_argument(
        "--url",
        default=DEFAULT_URL,
        help="Server WebSocket URL (default: %(default)s)",
    )
    p.add_argument("--verbose", action="store_true", help="Log protocol warnings to stderr")

    sub = p.add_subparsers(dest="command")
    sub.add_parser("chat", help="Interactive chat (default)")
    sub.add_parser("models", help="List configured models and exit")
    return p


def _list_models(*, url: str) -> int:
    view = ChatView()
    try:
        with RelayClient(url=url) as client:
            for frame in client.frames():
                view.apply(frame)
                if isinstance(frame, AvailableModelsFrame):
                    break
                if not isinstance(frame, HistoryFrame):
                    break
    except ClientError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(view.format_models())
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.ERROR)

    command = args.command or "chat"
    if command == "models":
        return _list_models(url=args.url)
    return chat_repl(url=args.url)


if __name__ == "__main__":
    raise SystemExit(main())
