"""
chatrelay - relay chat turns between a terminal client and a local inference backend.

The server (`apps.server`) keeps one shared conversation history on disk,
manages a single child inference process (e.g. llama-server), and streams
completions to WebSocket clients. The terminal client lives in `apps.cli`.

Submodules:
    - chatrelay.engine: types, wire protocol, history store, process manager,
      streaming adapter, and shared server state
"""

from chatrelay._version import __version__

__all__ = ["__version__"]
