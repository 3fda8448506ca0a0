"""Process-wide state shared by every WebSocket session.

One instance is created at startup and handed to the app. History access goes
through `_history_lock`, which covers the in-memory update plus the synchronous
persist and is never held across network I/O. The backend process has its own
lock inside `ProcessManager`.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from .chat_types import ChatHistory, ChatMessage, ModelConfig, Role, ServerConfig
from .history import HistoryStore, PersistError
from .process import ProcessManager, SpawnError
from .streaming import ChatStreamClient

logger = logging.getLogger(__name__)


class ServerState:
    def __init__(
        self,
        *,
        config: ServerConfig,
        history_store: HistoryStore,
        process_manager: ProcessManager,
        stream_client: ChatStreamClient,
    ) -> None:
        self.config = config
        self.history_store = history_store
        self.process_manager = process_manager
        self.stream_client = stream_client

        self._history_lock = threading.Lock()

        history = history_store.load(default_model=config.default_model)
        if history.current_model not in config.models:
            logger.warning(
                "Persisted model %r is not configured; falling back to default %r",
                history.current_model,
                config.default_model,
            )
            history = history.with_model(config.default_model)
        self._history = history

    @classmethod
    def create(
        cls,
        config: ServerConfig,
        *,
        history_path: str | Path,
        backend_log: str | Path | None = None,
    ) -> ServerState:
        process_manager = ProcessManager(
            executable=config.executable,
            host=config.backend_host,
            port=config.backend_port,
            log_path=backend_log,
        )
        return cls(
            config=config,
            history_store=HistoryStore(history_path),
            process_manager=process_manager,
            stream_client=ChatStreamClient(process_manager),
        )

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def snapshot(self) -> ChatHistory:
        with self._history_lock:
            return self._history

    def available_models(self) -> list[str]:
        return self.config.model_ids()

    def model_config(self, identifier: str) -> ModelConfig | None:
        return self.config.models.get(identifier)

    def append_message(self, role: Role, content: str) -> ChatHistory:
        """Append one message, persist, and return the resulting snapshot."""
        with self._history_lock:
            self._history = self._history.appended(ChatMessage(role=role, content=content))
            self._persist_locked()
            return self._history

    def set_current_model(self, identifier: str) -> ChatHistory:
        with self._history_lock:
            self._history = self._history.with_model(identifier)
            self._persist_locked()
            return self._history

    def _persist_locked(self) -> None:
        try:
            self.history_store.save(self._history)
        except PersistError as exc:
            # Memory stays authoritative; the next successful save catches up.
            logger.error("%s", exc)

    # -------------------------------------------------------------------------
    # Backend lifecycle
    # -------------------------------------------------------------------------

    async def start_active_model(self) -> bool:
        """Spawn the backend for the persisted model; failures are logged, not raised."""
        identifier = self.snapshot().current_model
        model = self.config.models[identifier]
        try:
            await self.process_manager.start(
                model.path,
                model.args,
                executable=self.config.executable_for(model),
            )
        except SpawnError as exc:
            logger.warning("Failed to start backend for model %r: %s", identifier, exc)
            return False
        return True

    async def shutdown(self) -> None:
        await self.process_manager.stop()
