"""Model mapping loader.

The server refuses to run without a usable mapping, so every problem with the
file surfaces as `ConfigError`.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from .chat_types import ModelConfig, ServerConfig

DEFAULT_EXECUTABLE = "llama-server"
DEFAULT_BACKEND_HOST = "127.0.0.1"
DEFAULT_BACKEND_PORT = 8080


class ConfigError(RuntimeError):
    pass


def _parse_model(identifier: str, raw: Any, *, source: str) -> ModelConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"Model {identifier!r} must be an object in {source}")

    path = raw.get("path")
    if not isinstance(path, str) or not path.strip():
        raise ConfigError(f"Model {identifier!r} needs a non-empty 'path' in {source}")

    args = raw.get("args", [])
    if args is None:
        args = []
    if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
        raise ConfigError(f"Model {identifier!r}: 'args' must be a list of strings in {source}")

    executable = raw.get("executable")
    if executable is not None and (not isinstance(executable, str) or not executable.strip()):
        raise ConfigError(f"Model {identifier!r}: 'executable' must be a non-empty string in {source}")

    return ModelConfig(identifier=identifier, path=path, args=tuple(args), executable=executable)


def parse_config(raw: Any, *, source: str = "<config>") -> ServerConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"Config must contain a JSON object: {source}")

    models_raw = raw.get("models")
    if not isinstance(models_raw, dict) or not models_raw:
        raise ConfigError(f"'models' must be a non-empty object in {source}")

    models: dict[str, ModelConfig] = {}
    for identifier, model_raw in models_raw.items():
        if not identifier:
            raise ConfigError(f"Model identifiers must be non-empty in {source}")
        models[identifier] = _parse_model(identifier, model_raw, source=source)

    default = raw.get("default")
    if not isinstance(default, str) or default not in models:
        raise ConfigError(f"'default' must name a configured model in {source} (got {default!r})")

    executable = raw.get("executable", DEFAULT_EXECUTABLE)
    if not isinstance(executable, str) or not executable.strip():
        raise ConfigError(f"'executable' must be a non-empty string in {source}")

    host = raw.get("host", DEFAULT_BACKEND_HOST)
    if not isinstance(host, str) or not host.strip():
        raise ConfigError(f"'host' must be a non-empty string in {source}")

    port = raw.get("port", DEFAULT_BACKEND_PORT)
    if isinstance(port, bool) or not isinstance(port, int) or not (0 < port <= 65535):
        raise ConfigError(f"'port' must be an integer in 1..65535 in {source}")

    return ServerConfig(
        models=models,
        default_model=default,
        executable=executable,
        backend_host=host,
        backend_port=port,
    )


def load_config(path: str | Path) -> ServerConfig:
    p = Path(path)
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {p}") from exc
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Failed to read config file {p}: {exc}") from exc
    return parse_config(raw, source=str(p))
