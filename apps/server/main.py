"""chatrelay server entrypoint (FastAPI + WebSocket relay to a local inference backend).

Example:
    python -m apps.server.main --config models.json --history chat_history.json --port 3001
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Sequence

from apps.server.app import create_app
from chatrelay.engine.config import ConfigError, load_config
from chatrelay.engine.state import ServerState

DEFAULT_CONFIG_FILE = "models.json"
DEFAULT_HISTORY_FILE = "chat_history.json"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="chatrelay server")
    p.add_argument(
        "--config",
        default=os.environ.get("CHATRELAY_CONFIG", DEFAULT_CONFIG_FILE),
        help="Model mapping JSON file (env: CHATRELAY_CONFIG, default: %(default)s)",
    )
    p.add_argument(
        "--history",
        default=os.environ.get("CHATRELAY_HISTORY", DEFAULT_HISTORY_FILE),
        help="Persisted chat history file (env: CHATRELAY_HISTORY, default: %(default)s)",
    )
    p.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=3001, help="Bind port (default: 3001)")
    p.add_argument(
        "--backend-log",
        default=None,
        help="Append backend stdout/stderr to this file (default: discard)",
    )
    p.add_argument(
        "--log-level",
        default="info",
        choices=["critical", "error", "warning", "info", "debug"],
        help="Log level (default: info)",
    )
    return p


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    state = ServerState.create(config, history_path=args.history, backend_log=args.backend_log)
    print(
        "[server] config loaded "
        f"models={config.model_ids()} default={config.default_model!r} "
        f"backend=http://{config.backend_host}:{config.backend_port}",
        flush=True,
    )

    app = create_app(state=state)

    try:
        import uvicorn
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("uvicorn is required to run the server.") from exc

    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
